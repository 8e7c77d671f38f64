from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ..domain import ChangeRecord, Platform, SyncContext
from ..errors import PlatformError
from ..utils.logger import debug, info, warn


def window_start(days: int, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=days)


def _query(ctx: SyncContext, platform: Platform, since: datetime | None) -> list[ChangeRecord]:
    if platform is Platform.STORE:
        return ctx.store.list_orders(since)
    return ctx.pos.list_sales(since, ctx.settings.pos_location_id)


def fetch_changes(ctx: SyncContext, platform: Platform, since: datetime) -> list[ChangeRecord]:
    """Orders/sales on ``platform`` that occurred at or after ``since``.

    A failed date-filtered query is retried once unfiltered and the cutoff is
    applied here instead; a second failure propagates. Records the bridge
    itself pushed onto ``platform`` from the other side are dropped.
    """
    try:
        records = _query(ctx, platform, since)
    except PlatformError as e:
        warn(f"[fetch] {platform.value} date filter failed ({e}); retrying without it")
        records = _query(ctx, platform, None)

    out: dict[str, ChangeRecord] = {}
    for rec in records:
        if rec.occurred_at < since:
            debug(f"[fetch] {platform.value} {rec.source_id} from {rec.occurred_at:%Y-%m-%d %H:%M} is outside the window")
            continue
        if rec.from_other_platform:
            debug(f"[fetch] {platform.value} {rec.source_id} ({rec.reference}) came from {rec.origin.value}, skipping")
            continue
        out.setdefault(rec.source_id, rec)

    changes = sorted(out.values(), key=lambda r: r.occurred_at)
    info(f"[fetch] {platform.value}: {len(changes)} changes since {since:%Y-%m-%d %H:%M} ({len(records)} fetched)")
    return changes
