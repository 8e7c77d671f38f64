"""In-memory stand-ins for the WooCommerce and Prokip clients."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from stockbridge.domain import ChangeRecord, LineItem, Platform


def ago(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)


def make_change(platform=Platform.STORE, source_id="1001", items=(("ABC", 3),),
                occurred_at=None, origin=None, reference=None, price="10.00") -> ChangeRecord:
    return ChangeRecord(
        source_platform=platform,
        source_id=source_id,
        occurred_at=occurred_at or ago(hours=1),
        line_items=tuple(LineItem(sku=sku, quantity=qty, unit_price=Decimal(price), name=f"Item {sku}")
                         for sku, qty in items),
        total_amount=Decimal(price) * sum(q for _, q in items),
        reference=reference or source_id,
        customer_label="Jane Doe",
        origin=origin or platform,
    )


def pos_product(pid, sku, type_="single", nested=None, flat=None) -> dict:
    p = {"id": pid, "sku": sku, "name": f"POS {sku}", "type": type_}
    if nested is not None:
        p["product_variations"] = [{"variations": [{"variation_id": v} for v in group]} for group in nested]
    if flat is not None:
        p["variations"] = [{"variation_id": v} for v in flat]
    return p


def store_product(pid, sku, stock=None, type_="simple") -> dict:
    return {"id": pid, "sku": sku, "name": f"Store {sku}", "type": type_, "stock_quantity": stock}


class FakeStore:
    def __init__(self, orders=(), products=(), variations=None):
        self.orders = list(orders)
        self.products = list(products)
        self.variations = variations or {}
        self.order_calls = []
        self.product_calls = 0
        self.stock_writes = []
        self.orders_error = None
        self.orders_down = None
        self.products_error = None
        self.set_stock_errors = {}

    def list_orders(self, since, status=None):
        self.order_calls.append(since)
        if self.orders_down:
            raise self.orders_down
        if self.orders_error:
            err, self.orders_error = self.orders_error, None
            raise err
        return list(self.orders)

    def list_products(self):
        self.product_calls += 1
        if self.products_error:
            raise self.products_error
        return list(self.products)

    def list_variations(self, product_id):
        return list(self.variations.get(product_id, []))

    def set_stock(self, product_id, quantity, variation_id=None):
        err = self.set_stock_errors.get(str(product_id))
        if err:
            raise err
        self.stock_writes.append((str(product_id), quantity, variation_id))
        return {"id": product_id, "stock_quantity": quantity}


class FakePos:
    def __init__(self, sales=(), products=(), stock=None):
        self.sales = list(sales)
        self.products = list(products)
        self.stock = stock or {}
        self.sale_calls = []
        self.product_calls = 0
        self.created = []
        self.stock_updates = []
        self.sales_error = None
        self.sales_down = None
        self.sale_error = None
        self.on_sale = None

    def list_sales(self, since, location_id=None):
        self.sale_calls.append(since)
        if self.sales_down:
            raise self.sales_down
        if self.sales_error:
            err, self.sales_error = self.sales_error, None
            raise err
        return list(self.sales)

    def list_products(self, location_id=None):
        self.product_calls += 1
        return list(self.products)

    def get_stock_report(self, product_id):
        return {"quantity": self.stock.get(str(product_id), 0)}

    def create_sale_transaction(self, payload):
        if self.sale_error:
            raise self.sale_error
        self.created.append(payload)
        if self.on_sale:
            self.on_sale(payload)
        return {"id": str(5000 + len(self.created))}

    def update_product_stock(self, product_id, quantity, location_id=None, variation_id=None):
        self.stock_updates.append((str(product_id), quantity, variation_id))
        return {}


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        import json
        self.status_code = status_code
        self._body = body
        self.content = b"" if body is None else json.dumps(body).encode()
        self.text = text or (self.content.decode() if self.content else "")

    def json(self):
        return self._body
