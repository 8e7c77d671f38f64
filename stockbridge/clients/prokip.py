from datetime import datetime
from decimal import Decimal, InvalidOperation

from ..config import POS_PAGE_SIZE
from ..domain import ChangeRecord, LineItem, Platform, quantize
from ..errors import PlatformError
from ..utils.logger import warn
from .http import json_headers, parse_timestamp, request_json, unwrap_list

PLATFORM = Platform.POS.value
POS_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _quantity(value) -> int:
    try:
        return int(Decimal(str(value if value not in (None, "") else "0")))
    except InvalidOperation:
        return 0


def _line_sku(line: dict) -> str:
    sku = line.get("sku") or (line.get("product") or {}).get("sku") or (line.get("variations") or {}).get("sub_sku")
    return (sku or "").strip()


def parse_sale(sale: dict, decimals: int = 4, invoice_prefix: str = "WC-") -> ChangeRecord:
    """Normalize a Prokip sell transaction into a ChangeRecord.

    Prokip returns sold lines either as ``products`` or as ``sell_lines`` with the
    product nested; both shapes are accepted. A sale whose invoice number carries
    ``invoice_prefix`` was written by this bridge and is marked as originating on
    the store.
    """
    lines = sale.get("products") or sale.get("sell_lines") or []
    items = tuple(
        LineItem(
            sku=_line_sku(line),
            quantity=_quantity(line.get("quantity")),
            unit_price=quantize(line.get("unit_price") or line.get("unit_price_inc_tax"), decimals),
            name=line.get("name") or (line.get("product") or {}).get("name") or "",
        )
        for line in lines
    )
    occurred = parse_timestamp(sale.get("transaction_date"))
    if occurred is None:
        raise ValueError(f"sale {sale.get('id')} has no transaction_date")
    invoice = str(sale.get("invoice_no") or "")
    contact = sale.get("contact") or {}
    return ChangeRecord(
        source_platform=Platform.POS,
        source_id=str(sale["id"]),
        occurred_at=occurred,
        line_items=items,
        total_amount=quantize(sale.get("final_total"), decimals),
        reference=invoice or str(sale["id"]),
        customer_label=contact.get("name") or "Prokip Customer",
        customer_email=contact.get("email") or None,
        origin=Platform.STORE if invoice_prefix and invoice.startswith(invoice_prefix) else Platform.POS,
    )


class ProkipClient:
    def __init__(self, base_url: str, token: str, location_id, timeout: float = 15.0,
                 price_decimals: int = 4, invoice_prefix: str = "WC-"):
        self.base = f"{(base_url or '').rstrip('/')}/connector/api"
        self.token = token
        self.location_id = location_id
        self.timeout = timeout
        self.price_decimals = price_decimals
        self.invoice_prefix = invoice_prefix

    def _call(self, method: str, path: str, **kwargs):
        return request_json(PLATFORM, method, f"{self.base}/{path}", timeout=self.timeout,
                            headers=json_headers(self.token), **kwargs)

    def list_sales(self, since: datetime | None, location_id=None) -> list[ChangeRecord]:
        """Sell transactions at a location; ``since=None`` drops the server-side date filter."""
        params = {"location_id": location_id or self.location_id, "per_page": POS_PAGE_SIZE}
        if since is not None:
            params["transaction_date_after"] = since.strftime(POS_DATE_FORMAT)
        raw, page = [], 1
        while True:
            payload = self._call("GET", "sell", params={**params, "page": page})
            batch = unwrap_list(payload)
            raw.extend(batch)
            meta = payload.get("meta") if isinstance(payload, dict) else None
            last_page = int((meta or {}).get("last_page") or page)
            if not batch or page >= last_page:
                break
            page += 1
        records = []
        for sale in raw:
            try:
                records.append(parse_sale(sale, self.price_decimals, self.invoice_prefix))
            except (KeyError, ValueError) as e:
                warn(f"[POS] skipping unreadable sale {sale.get('id')}: {e}")
        return records

    def list_products(self, location_id=None) -> list[dict]:
        params = {"per_page": -1}
        if location_id or self.location_id:
            params["location_id"] = location_id or self.location_id
        return unwrap_list(self._call("GET", "product", params=params))

    def get_stock_report(self, product_id) -> dict:
        rows = unwrap_list(self._call("GET", "product-stock-report", params={"product_id": product_id}))
        if not rows:
            return {"quantity": 0}
        row = rows[0]
        return {"quantity": max(0, _quantity(row.get("stock") or row.get("qty_available")))}

    def create_sale_transaction(self, payload: dict) -> dict:
        resp = self._call("POST", "sell", json={"sells": [payload]})
        created = resp[0] if isinstance(resp, list) and resp else resp
        if not isinstance(created, dict):
            raise PlatformError(PLATFORM, f"unexpected sell response: {resp!r}")
        err = created.get("error") or (created.get("original") or {}).get("error")
        if err:
            msg = err.get("message") if isinstance(err, dict) else err
            raise PlatformError(PLATFORM, f"sell rejected: {msg}")
        if not created.get("id"):
            raise PlatformError(PLATFORM, f"sell response carries no id: {created!r}")
        return {"id": str(created["id"])}

    def update_product_stock(self, product_id, quantity: int, location_id=None, variation_id=None) -> dict:
        payload = {
            "product_id": product_id,
            "quantity": int(quantity),
            "location_id": location_id or self.location_id,
        }
        if variation_id:
            payload["variation_id"] = variation_id
        return self._call("PUT", f"product/{product_id}", json=payload) or {}
