# stockbridge/services/sync.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..clients.prokip import ProkipClient
from ..clients.woocommerce import WooCommerceClient
from ..config import Settings, require_credentials
from ..db import SyncLock, SyncRun, utcnow
from ..domain import Direction, DirectionAggregate, SyncContext
from ..errors import PlatformUnavailable, SyncError, SyncInProgressError
from ..utils.logger import error, info, warn
from .fetcher import fetch_changes, window_start
from .identity import IdentityResolver
from .reconciler import Reconciler, make_writer

# =========================================================
# Locks (one pass per connection pair at a time)
# =========================================================

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()

def _lock_for(connection_id: str) -> threading.Lock:
    with _locks_guard:
        if connection_id not in _locks:
            _locks[connection_id] = threading.Lock()
        return _locks[connection_id]

# The thread lock only covers this process. gunicorn workers and the
# `flask sync run --interval` scheduler share the database, so the pass is
# also guarded by a sync_locks row keyed on the connection.

def _claim(session: Session, connection_id: str, holder: str, stale_after: float) -> bool:
    now = utcnow()
    try:
        session.execute(insert(SyncLock).values(connection_id=connection_id, holder=holder, acquired_at=now))
        session.commit()
        return True
    except IntegrityError:
        session.rollback()

    # A holder that died without releasing leaves its row behind.
    taken = session.execute(
        update(SyncLock)
        .where(SyncLock.connection_id == connection_id)
        .where(SyncLock.acquired_at < now - timedelta(seconds=stale_after))
        .values(holder=holder, acquired_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if taken.rowcount == 1:
        warn(f"[sync] {connection_id}: took over a lock older than {stale_after:.0f}s")
        return True
    return False


def acquire_run_lock(session: Session, connection_id: str, timeout: float, stale_after: float) -> str:
    """Claim the cross-process lock for ``connection_id``; returns the holder token."""
    holder = uuid.uuid4().hex
    deadline = time.monotonic() + timeout
    while not _claim(session, connection_id, holder, stale_after):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SyncInProgressError(f"sync already running for connection {connection_id}")
        time.sleep(min(0.25, remaining))
    return holder


def release_run_lock(session: Session, connection_id: str, holder: str):
    session.execute(
        delete(SyncLock)
        .where(SyncLock.connection_id == connection_id)
        .where(SyncLock.holder == holder)
        .execution_options(synchronize_session=False)
    )
    session.commit()

# =========================================================
# States
# =========================================================

IDLE = "IDLE"
DONE = "DONE"
CANCELLED = "CANCELLED"

PASS_ORDER = (Direction.STORE_TO_POS, Direction.POS_TO_STORE)
_PHASE = {Direction.STORE_TO_POS: "A", Direction.POS_TO_STORE: "B"}


@dataclass
class SyncResult:
    connection_id: str
    store_to_pos: DirectionAggregate = field(default_factory=lambda: DirectionAggregate(Direction.STORE_TO_POS))
    pos_to_store: DirectionAggregate = field(default_factory=lambda: DirectionAggregate(Direction.POS_TO_STORE))
    state: str = IDLE
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def aggregate(self, direction: Direction) -> DirectionAggregate:
        return self.store_to_pos if direction is Direction.STORE_TO_POS else self.pos_to_store

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": "Bidirectional sync cancelled" if self.cancelled else "Bidirectional sync completed",
            "state": self.state,
            "connectionId": self.connection_id,
            "results": {
                Direction.STORE_TO_POS.value: self.store_to_pos.to_dict(),
                Direction.POS_TO_STORE.value: self.pos_to_store.to_dict(),
            },
        }


def build_context(settings: Settings, session: Session) -> SyncContext:
    """Wire API clients for both platforms; fails before any network call if config is missing."""
    require_credentials(settings)
    store = WooCommerceClient(
        settings.store_url, settings.store_consumer_key, settings.store_consumer_secret,
        timeout=settings.http_timeout, price_decimals=settings.store_price_decimals,
    )
    pos = ProkipClient(
        settings.pos_api_url, settings.pos_token, settings.pos_location_id,
        timeout=settings.http_timeout, price_decimals=settings.pos_price_decimals,
        invoice_prefix=settings.pos_invoice_prefix,
    )
    return SyncContext(connection_id=settings.connection_id, settings=settings, session=session, store=store, pos=pos)


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _run_direction(ctx: SyncContext, direction: Direction, since: datetime,
                   result: SyncResult, cancel_event: Optional[threading.Event]):
    agg = result.aggregate(direction)
    phase = _PHASE[direction]
    src, dst = direction.source.value, direction.target.value

    result.state = f"FETCHING_{phase}"
    try:
        changes = fetch_changes(ctx, direction.source, since)
    except SyncError as e:
        error(f"{direction.tag} fetch failed: {e}")
        agg.errors.append(f"{src} API error: {e}")
        agg.aborted = True
        return
    except Exception as e:
        error(f"{direction.tag} fetch failed unexpectedly: {e!r}")
        agg.errors.append(f"{src} fetch failed: {e!r}")
        agg.aborted = True
        return

    result.state = f"RECONCILING_{phase}"
    if not changes:
        return

    resolver = IdentityResolver(ctx, direction.target)
    try:
        resolver.load()
    except Exception as e:
        error(f"{direction.tag} catalog unavailable: {e!r}")
        agg.errors.append(f"{dst} catalog unavailable: {e!r}")
        agg.aborted = True
        return

    reconciler = Reconciler(ctx, resolver, make_writer(ctx, direction.target))
    for change in changes:
        if _cancelled(cancel_event):
            warn(f"{direction.tag} cancellation requested, stopping before {change.source_id}")
            result.cancelled = True
            return
        try:
            agg.add(reconciler.reconcile(change, direction))
        except PlatformUnavailable as e:
            error(f"{direction.tag} {dst} unavailable, aborting direction: {e}")
            agg.processed += 1
            agg.errors.append(f"{dst} API error: {e}")
            agg.aborted = True
            return


def run_sync(ctx: SyncContext, cancel_event: Optional[threading.Event] = None) -> SyncResult:
    """One full bidirectional pass: store->POS, then POS->store.

    Raises ConfigurationError before any fetching when credentials are missing,
    and SyncInProgressError when another pass holds this connection's lock.
    Everything else ends up in the returned result.
    """
    require_credentials(ctx.settings)

    lock = _lock_for(ctx.connection_id)
    if not lock.acquire(timeout=ctx.settings.lock_timeout):
        raise SyncInProgressError(f"sync already running for connection {ctx.connection_id}")

    try:
        holder = acquire_run_lock(ctx.session, ctx.connection_id,
                                  ctx.settings.lock_timeout, ctx.settings.lock_stale_after)
    except BaseException:
        lock.release()
        raise

    try:
        result = SyncResult(connection_id=ctx.connection_id)
        run = SyncRun(connection_id=ctx.connection_id, status="running", started_at=result.started_at)
        ctx.session.add(run)
        ctx.session.commit()

        since = window_start(ctx.settings.window_days)
        info(f"[sync] {ctx.connection_id}: starting bidirectional pass (window {ctx.settings.window_days}d)")

        try:
            for direction in PASS_ORDER:
                if _cancelled(cancel_event):
                    result.cancelled = True
                if result.cancelled:
                    break
                _run_direction(ctx, direction, since, result, cancel_event)
        except Exception:
            ctx.session.rollback()
            run.status = "failed"
            run.finished_at = utcnow()
            ctx.session.commit()
            raise

        result.state = CANCELLED if result.cancelled else DONE
        result.finished_at = utcnow()

        for agg in (result.store_to_pos, result.pos_to_store):
            info(f"[sync] {agg.direction.value}: {agg.success}/{agg.processed} successful, "
                 f"{agg.skipped} skipped, {len(agg.errors)} errors, {agg.stock_moved} units moved")

        run.status = "cancelled" if result.cancelled else "done"
        run.finished_at = result.finished_at
        run.result = result.to_dict()
        ctx.session.commit()
        return result
    finally:
        try:
            release_run_lock(ctx.session, ctx.connection_id, holder)
        finally:
            lock.release()
