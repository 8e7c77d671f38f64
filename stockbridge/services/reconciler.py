# stockbridge/services/reconciler.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..db import StockLevel
from ..domain import (
    UNMATCHED,
    ChangeRecord,
    Direction,
    LineItem,
    Platform,
    ProductIdentity,
    ReconcileResult,
    SyncContext,
)
from ..errors import PlatformError, PlatformUnavailable
from ..clients.prokip import POS_DATE_FORMAT
from ..utils.logger import debug, error, info, warn
from . import ledger, stock
from .identity import IdentityResolver


@dataclass
class Move:
    item: LineItem
    identity: ProductIdentity
    level: StockLevel
    deduction: int
    new_quantity: int


@dataclass
class WriteOutcome:
    accepted: list[Move] = field(default_factory=list)
    rejected: list[tuple[Move, str]] = field(default_factory=list)
    reference: Optional[str] = None


# =========================================================
# Target writers (one strategy per platform, picked from config)
# =========================================================

class StoreStockWriter:
    """Set absolute stock on the store product or variation from the mirror."""

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def apply(self, change: ChangeRecord, moves: list[Move]) -> WriteOutcome:
        out = WriteOutcome()
        for m in moves:
            if m.deduction == 0:
                out.accepted.append(m)
                continue
            try:
                self.ctx.store.set_stock(m.identity.store_product_id, m.new_quantity, m.identity.store_variant_id)
            except PlatformUnavailable:
                raise
            except PlatformError as e:
                out.rejected.append((m, str(e)))
                continue
            info(f"[orders] STORE set {m.item.sku} = {m.new_quantity} (-{m.deduction})")
            out.accepted.append(m)
        return out


class PosStockWriter:
    """Overwrite the POS product or variation quantity with the mirror value."""

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def apply(self, change: ChangeRecord, moves: list[Move]) -> WriteOutcome:
        out = WriteOutcome()
        for m in moves:
            if m.deduction == 0:
                out.accepted.append(m)
                continue
            ident = m.identity
            variation_id = ident.pos_variant_id if ident.pos_variant_id != ident.pos_product_id else None
            try:
                self.ctx.pos.update_product_stock(ident.pos_product_id, m.new_quantity,
                                                  self.ctx.settings.pos_location_id, variation_id)
            except PlatformUnavailable:
                raise
            except PlatformError as e:
                out.rejected.append((m, str(e)))
                continue
            info(f"[orders] POS set {m.item.sku} = {m.new_quantity} (-{m.deduction})")
            out.accepted.append(m)
        return out


def _duplicate_invoice(err: PlatformError) -> bool:
    msg = str(err).lower()
    return "invoice" in msg and any(w in msg for w in ("already", "exists", "taken", "duplicate"))


class PosSaleWriter:
    """Record one POS sale per store order; the POS deducts its own stock from it.

    The invoice number is derived from the store order id so a replay after a
    crash collides with the sale already on file instead of selling twice.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def invoice_no(self, change: ChangeRecord) -> str:
        return f"{self.ctx.settings.pos_invoice_prefix}{change.source_id}"

    def sale_payload(self, change: ChangeRecord, moves: list[Move]) -> dict:
        settings = self.ctx.settings
        lines = [{
            "product_id": int(m.identity.pos_product_id),
            "variation_id": int(m.identity.pos_variant_id or m.identity.pos_product_id),
            "quantity": m.deduction,
            "unit_price": float(m.item.unit_price),
        } for m in moves]
        total = float(sum(m.item.unit_price * m.deduction for m in moves))
        stamp = change.occurred_at.strftime(POS_DATE_FORMAT)
        return {
            "location_id": int(settings.pos_location_id),
            "contact_id": settings.pos_contact_id,
            "transaction_date": stamp,
            "invoice_no": self.invoice_no(change),
            "status": "final",
            "type": "sell",
            "payment_status": "paid",
            "final_total": total,
            "discount_amount": 0,
            "discount_type": "fixed",
            "products": lines,
            "payments": [{"method": "cash", "amount": total, "paid_on": stamp}],
        }

    def apply(self, change: ChangeRecord, moves: list[Move]) -> WriteOutcome:
        moving = [m for m in moves if m.deduction > 0]
        if not moving:
            return WriteOutcome(accepted=list(moves))
        payload = self.sale_payload(change, moving)
        try:
            created = self.ctx.pos.create_sale_transaction(payload)
        except PlatformUnavailable:
            raise
        except PlatformError as e:
            if _duplicate_invoice(e):
                warn(f"[orders] POS already holds invoice {payload['invoice_no']}; treating as applied")
                return WriteOutcome(accepted=list(moves), reference=payload["invoice_no"])
            return WriteOutcome(rejected=[(m, str(e)) for m in moves])
        info(f"[orders] POS sale {created['id']} ({payload['invoice_no']}) for {len(moving)} item(s)")
        return WriteOutcome(accepted=list(moves), reference=created["id"])


def make_writer(ctx: SyncContext, target: Platform):
    if target is Platform.STORE:
        return StoreStockWriter(ctx)
    if ctx.settings.pos_stock_write_mode == "stock":
        return PosStockWriter(ctx)
    return PosSaleWriter(ctx)


# =========================================================
# Reconciler
# =========================================================

class Reconciler:
    def __init__(self, ctx: SyncContext, resolver: IdentityResolver, writer):
        self.ctx = ctx
        self.resolver = resolver
        self.writer = writer

    @property
    def target(self) -> Platform:
        return self.resolver.target

    def _seed(self, ident: ProductIdentity) -> StockLevel:
        # First sync wins: the target has not applied this sale yet, so its own
        # figure is the pre-sale quantity.
        if self.target is Platform.STORE:
            qty = ident.reported_stock or 0
        else:
            qty = self.ctx.pos.get_stock_report(ident.pos_product_id)["quantity"]
        return stock.seed_level(self.ctx.session, self.ctx.connection_id, ident.sku, qty, self.target, ident.name)

    def _plan(self, change: ChangeRecord, res: ReconcileResult, label: str) -> list[Move]:
        moves: list[Move] = []
        levels: dict[str, StockLevel] = {}
        for item in change.line_items:
            if not item.sku:
                res.errors.append(f"{label}: line item '{item.name or '?'}' has no SKU")
                continue
            if item.quantity <= 0:
                res.errors.append(f"{label}: SKU {item.sku} has non-positive quantity {item.quantity}")
                continue
            ident = self.resolver.resolve(item.sku)
            if ident is UNMATCHED:
                warn(f"[identity] {label}: SKU {item.sku} not found on {self.target.value}")
                res.errors.append(f"{label}: SKU {item.sku} not found on {self.target.value}")
                continue

            level = levels.get(item.sku) or stock.get_level(self.ctx.session, self.ctx.connection_id, item.sku)
            if level is None:
                level = self._seed(ident)
            levels[item.sku] = level

            before = level.quantity
            taken = stock.deduct(level, item.quantity)
            if taken == 0:
                res.warnings.append(f"{label}: insufficient stock for {item.sku} (have {before}, sold {item.quantity})")
                warn(f"[stock] insufficient stock for {item.sku}: have {before}, sold {item.quantity}")
            elif taken < item.quantity:
                res.warnings.append(f"{label}: deduction for {item.sku} clamped to {taken} (sold {item.quantity})")
                warn(f"[stock] clamped {item.sku}: {before} on hand, sold {item.quantity}")
            debug(f"[stock] {item.sku}: {before} -> {level.quantity}")
            moves.append(Move(item, ident, level, taken, level.quantity))
        return moves

    def reconcile(self, change: ChangeRecord, direction: Direction) -> ReconcileResult:
        """Apply one change record to the target platform, at most once."""
        res = ReconcileResult()
        label = f"{change.source_platform.value} {change.source_id}"
        session = self.ctx.session

        if ledger.has_processed(session, change.source_platform, change.source_id):
            debug(f"{direction.tag} {label} already processed, skipping")
            res.skipped = 1
            return res

        try:
            moves = self._plan(change, res, label)
            if not moves:
                # item errors already explain an all-unmatched record
                if not res.errors:
                    res.errors.append(f"{label}: no line items")
                session.rollback()
                return res

            outcome = self.writer.apply(change, moves)
            for m, why in outcome.rejected:
                stock.restore(m.level, m.deduction)
                res.errors.append(f"{label}: stock write failed for {m.item.sku}: {why}")
            if not outcome.accepted:
                session.rollback()
                return res

            moved = sum(m.deduction for m in outcome.accepted)
            ledger.record(session, ledger.entry_for(
                self.ctx.connection_id, change, direction,
                stock_moved=moved, target_reference=outcome.reference,
            ))
            session.commit()
        except PlatformUnavailable:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            error(f"{direction.tag} {label}: {e}")
            res.errors.append(f"{label}: {e}")
            return res

        res.success = 1
        res.stock_moved = moved
        info(f"{direction.tag} {label} ({change.reference}) done, moved {moved}")
        return res
