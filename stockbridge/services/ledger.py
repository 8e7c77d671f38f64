"""
Ledger invariants

- One row per (source_platform, source_id); the unique index enforces it.
- Looked up before any stock mutation for a change record.
- Written only after the target platform accepted the write, inside the same
  DB transaction as the stock mirror update.
- Never updated or deleted by the sync engine.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import LedgerEntry, utcnow
from ..domain import ChangeRecord, Direction, Platform
from ..errors import DuplicateChangeError


def has_processed(session: Session, source_platform: Platform, source_id: str) -> bool:
    row = session.execute(
        select(LedgerEntry.id)
        .where(LedgerEntry.source_platform == Platform(source_platform).value)
        .where(LedgerEntry.source_id == str(source_id))
        .limit(1)
    ).first()
    return row is not None


def entry_for(
    connection_id: str,
    change: ChangeRecord,
    direction: Direction,
    *,
    stock_moved: int,
    target_reference: str | None = None,
) -> LedgerEntry:
    return LedgerEntry(
        connection_id=connection_id,
        source_platform=change.source_platform.value,
        source_id=change.source_id,
        direction=direction.value,
        reference=change.reference or change.source_id,
        target_reference=target_reference,
        customer_label=change.customer_label or None,
        customer_email=change.customer_email,
        total_amount=change.total_amount,
        stock_moved=stock_moved,
        occurred_at=change.occurred_at,
        processed_at=utcnow(),
    )


def record(session: Session, entry: LedgerEntry) -> LedgerEntry:
    """Add ``entry`` to the caller's transaction and flush it.

    Raises DuplicateChangeError when the source transaction is already journaled;
    the caller must roll back.
    """
    session.add(entry)
    try:
        session.flush()
    except IntegrityError as e:
        raise DuplicateChangeError(
            f"{entry.source_platform} {entry.source_id} already in ledger"
        ) from e
    return entry


def recent_entries(session: Session, connection_id: str, limit: int = 20) -> list[LedgerEntry]:
    return list(
        session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.connection_id == connection_id)
            .order_by(LedgerEntry.processed_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        ).scalars()
    )
