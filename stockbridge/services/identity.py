# stockbridge/services/identity.py
from typing import Optional

from ..domain import UNMATCHED, Platform, ProductIdentity, SyncContext
from ..utils.logger import debug, info, warn

# =========================================================
# POS variant selection
# ---------------------------------------------------------
# Prokip wants a variation_id on every sold line. "variable" products nest
# them under product_variations[].variations[]; older payloads expose a flat
# variations[] list. The first non-null id wins, else the parent product id.
# =========================================================

def _first_variation_id(product: dict) -> Optional[str]:
    for group in (product.get("product_variations") or []):
        for v in (group.get("variations") or []):
            if v.get("variation_id") is not None:
                return str(v["variation_id"])
    for v in (product.get("variations") or []):
        if v.get("variation_id") is not None:
            return str(v["variation_id"])
    return None


def pick_pos_variant(product: dict, overrides: dict[str, int]) -> tuple[str, str]:
    """Return ``(variant_id, how)`` for a Prokip product."""
    sku = (product.get("sku") or "").strip()
    if sku in overrides:
        return str(overrides[sku]), "override"
    if (product.get("type") or "").lower() == "variable":
        found = _first_variation_id(product)
        if found:
            return found, "first variation"
        return str(product["id"]), "parent fallback"
    return str(product["id"]), "single"


def pos_identity(product: dict, overrides: dict[str, int]) -> ProductIdentity:
    variant_id, how = pick_pos_variant(product, overrides)
    sku = (product.get("sku") or "").strip()
    info(f"[identity] POS SKU {sku}: product {product['id']} variation {variant_id} ({how})")
    return ProductIdentity(
        sku=sku,
        pos_product_id=str(product["id"]),
        pos_variant_id=variant_id,
        name=product.get("name") or "",
    )


def _stock(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return max(0, int(value))


def store_identities(product: dict, variations: list[dict]) -> list[ProductIdentity]:
    """WooCommerce product plus its variations, one identity per SKU."""
    out = []
    sku = (product.get("sku") or "").strip()
    if sku:
        out.append(ProductIdentity(
            sku=sku,
            store_product_id=str(product["id"]),
            reported_stock=_stock(product.get("stock_quantity")),
            name=product.get("name") or "",
        ))
    for v in variations:
        vsku = (v.get("sku") or "").strip()
        if not vsku or vsku == sku:
            continue
        out.append(ProductIdentity(
            sku=vsku,
            store_product_id=str(product["id"]),
            store_variant_id=str(v["id"]),
            reported_stock=_stock(v.get("stock_quantity")),
            name=product.get("name") or "",
        ))
    return out


class IdentityResolver:
    """Maps SKUs onto one target platform's catalog.

    The catalog is pulled once, on first use, and held for the lifetime of the
    resolver, which is one direction of one sync pass.
    """

    def __init__(self, ctx: SyncContext, target: Platform):
        self.ctx = ctx
        self.target = target
        self._catalog: Optional[dict[str, ProductIdentity]] = None

    def _index(self, identities) -> dict[str, ProductIdentity]:
        catalog: dict[str, ProductIdentity] = {}
        for ident in identities:
            if ident.sku in catalog:
                warn(f"[identity] duplicate SKU {ident.sku} on {self.target.value}; keeping first")
                continue
            catalog[ident.sku] = ident
        return catalog

    def load(self) -> dict[str, ProductIdentity]:
        if self._catalog is not None:
            return self._catalog
        if self.target is Platform.POS:
            overrides = self.ctx.settings.pos_variant_overrides
            products = self.ctx.pos.list_products(self.ctx.settings.pos_location_id)
            identities = [pos_identity(p, overrides) for p in products if (p.get("sku") or "").strip()]
        else:
            identities = []
            for p in self.ctx.store.list_products():
                variations = self.ctx.store.list_variations(p["id"]) if p.get("type") == "variable" else []
                identities.extend(store_identities(p, variations))
        self._catalog = self._index(identities)
        info(f"[identity] loaded {len(self._catalog)} SKUs from {self.target.value} catalog")
        return self._catalog

    def resolve(self, sku: str):
        """Return the target ProductIdentity for ``sku``, or UNMATCHED."""
        if not sku or not sku.strip():
            raise ValueError("SKU must be non-empty")
        ident = self.load().get(sku.strip())
        if ident is None:
            debug(f"[identity] SKU {sku} not found on {self.target.value}")
            return UNMATCHED
        return ident
