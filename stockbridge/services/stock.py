from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import StockLevel, utcnow
from ..domain import Platform, SyncContext
from ..utils.logger import info, warn
from .identity import store_identities


def clamp_deduction(requested: int, current: int) -> int:
    """Never deduct more than is on hand, never a negative amount."""
    return max(0, min(int(requested), int(current)))


def get_level(session: Session, connection_id: str, sku: str) -> StockLevel | None:
    return session.execute(
        select(StockLevel)
        .where(StockLevel.connection_id == connection_id)
        .where(StockLevel.sku == sku)
    ).scalar_one_or_none()


def seed_level(
    session: Session,
    connection_id: str,
    sku: str,
    quantity: int,
    source: Platform,
    name: str | None = None,
) -> StockLevel:
    level = StockLevel(
        connection_id=connection_id,
        sku=sku,
        product_name=name or None,
        quantity=max(0, int(quantity or 0)),
        seeded_from=source.value,
        last_synced_at=utcnow(),
    )
    session.add(level)
    info(f"[stock] seeded mirror {sku} = {level.quantity} from {source.value}")
    return level


def deduct(level: StockLevel, requested: int) -> int:
    """Apply a clamped deduction to ``level`` in place and return the amount taken."""
    taken = clamp_deduction(requested, level.quantity)
    level.quantity = level.quantity - taken
    level.last_synced_at = utcnow()
    return taken


def restore(level: StockLevel, amount: int):
    level.quantity = level.quantity + amount


def seed_stock_mirror(ctx: SyncContext, overwrite: bool = False) -> dict:
    """Full catalog pull from the store into the mirror.

    Only SKUs the store tracks stock for are written. Existing rows are kept
    unless ``overwrite`` is set.
    """
    counts = {"created": 0, "updated": 0, "unchanged": 0, "untracked": 0}
    for product in ctx.store.list_products():
        variations = ctx.store.list_variations(product["id"]) if product.get("type") == "variable" else []
        for ident in store_identities(product, variations):
            if ident.reported_stock is None:
                counts["untracked"] += 1
                continue
            level = get_level(ctx.session, ctx.connection_id, ident.sku)
            if level is None:
                seed_level(ctx.session, ctx.connection_id, ident.sku, ident.reported_stock, Platform.STORE, ident.name)
                counts["created"] += 1
            elif overwrite and level.quantity != ident.reported_stock:
                warn(f"[stock] overwriting mirror {ident.sku}: {level.quantity} -> {ident.reported_stock}")
                level.quantity = ident.reported_stock
                level.seeded_from = Platform.STORE.value
                level.last_synced_at = utcnow()
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1
    ctx.session.commit()
    info(f"[stock] mirror seeded for {ctx.connection_id}: {counts}")
    return counts
