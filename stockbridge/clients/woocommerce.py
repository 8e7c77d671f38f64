from datetime import datetime

from ..config import STORE_ORDER_STATUSES, STORE_PAGE_SIZE
from ..domain import ChangeRecord, LineItem, Platform, quantize
from ..utils.logger import warn
from .http import json_headers, parse_timestamp, request_json, unwrap_list

PLATFORM = Platform.STORE.value
POS_ORIGIN_META = "_prokip_sale_id"
POS_CREATED_VIA = "prokip"


def _came_from_pos(order: dict) -> bool:
    if (order.get("created_via") or "").lower() == POS_CREATED_VIA:
        return True
    return any(m.get("key") == POS_ORIGIN_META and m.get("value") for m in (order.get("meta_data") or []))


def parse_order(order: dict, decimals: int = 2) -> ChangeRecord:
    """Normalize a WooCommerce order payload into a ChangeRecord."""
    items = []
    for li in (order.get("line_items") or []):
        items.append(LineItem(
            sku=(li.get("sku") or "").strip(),
            quantity=int(li.get("quantity") or 0),
            unit_price=quantize(li.get("price"), decimals),
            name=li.get("name") or "",
        ))
    billing = order.get("billing") or {}
    label = " ".join(p for p in (billing.get("first_name"), billing.get("last_name")) if p) or "Customer"
    occurred = parse_timestamp(order.get("date_created_gmt") or order.get("date_created"))
    if occurred is None:
        raise ValueError(f"order {order.get('id')} has no creation date")
    return ChangeRecord(
        source_platform=Platform.STORE,
        source_id=str(order["id"]),
        occurred_at=occurred,
        line_items=tuple(items),
        total_amount=quantize(order.get("total"), decimals),
        reference=str(order.get("number") or order["id"]),
        customer_label=label,
        customer_email=billing.get("email") or None,
        origin=Platform.POS if _came_from_pos(order) else Platform.STORE,
    )


class WooCommerceClient:
    def __init__(self, url: str, key: str, secret: str, timeout: float = 15.0, price_decimals: int = 2):
        url = (url or "").strip().rstrip("/")
        if url and not url.startswith("http"):
            url = f"https://{url}"
        self.base = f"{url}/wp-json/wc/v3"
        self.auth = (key, secret)
        self.timeout = timeout
        self.price_decimals = price_decimals

    def _call(self, method: str, path: str, **kwargs):
        return request_json(PLATFORM, method, f"{self.base}/{path}", timeout=self.timeout,
                            auth=self.auth, headers=json_headers(), **kwargs)

    def _paged(self, path: str, params: dict) -> list[dict]:
        out, page = [], 1
        while True:
            batch = unwrap_list(self._call("GET", path, params={**params, "per_page": STORE_PAGE_SIZE, "page": page}))
            out.extend(batch)
            if len(batch) < STORE_PAGE_SIZE:
                return out
            page += 1

    def list_orders(self, since: datetime | None, status: str | None = None) -> list[ChangeRecord]:
        """Orders created after ``since``; ``since=None`` drops the server-side date filter."""
        params = {"orderby": "date", "order": "asc"}
        if since is not None:
            params["after"] = since.strftime("%Y-%m-%dT%H:%M:%S")
        statuses = [status] if status else list(STORE_ORDER_STATUSES)
        records = []
        for st in statuses:
            for raw in self._paged("orders", {**params, "status": st}):
                try:
                    records.append(parse_order(raw, self.price_decimals))
                except (KeyError, ValueError) as e:
                    warn(f"[STORE] skipping unreadable order {raw.get('id')}: {e}")
        return records

    def list_products(self) -> list[dict]:
        return self._paged("products", {})

    def list_variations(self, product_id) -> list[dict]:
        return self._paged(f"products/{product_id}/variations", {})

    def set_stock(self, product_id, quantity: int, variation_id=None) -> dict:
        payload = {"manage_stock": True, "stock_quantity": int(quantity)}
        path = f"products/{product_id}/variations/{variation_id}" if variation_id else f"products/{product_id}"
        return self._call("PUT", path, json=payload) or {}
