# stockbridge/routes/sync.py
from flask import Blueprint, jsonify
from sqlalchemy import select

from ..config import load_settings
from ..db import SessionLocal, SyncRun
from ..errors import ConfigurationError, SyncInProgressError
from ..services.ledger import recent_entries
from ..services.sync import build_context, run_sync
from ..utils.logger import error, info

bp = Blueprint("sync", __name__)


@bp.post("/run")
def run():
    info("[sync] run requested over HTTP")
    session = SessionLocal()
    try:
        ctx = build_context(load_settings(), session)
        result = run_sync(ctx)
        return jsonify(result.to_dict()), 200
    except ConfigurationError as e:
        error(f"[sync] configuration error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except SyncInProgressError as e:
        return jsonify({"success": False, "error": str(e)}), 409
    finally:
        session.close()


@bp.get("/status")
def status():
    try:
        settings = load_settings()
    except ConfigurationError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    session = SessionLocal()
    try:
        last = session.execute(
            select(SyncRun)
            .where(SyncRun.connection_id == settings.connection_id)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        entries = recent_entries(session, settings.connection_id)
        return jsonify({
            "connectionId": settings.connection_id,
            "lastRun": None if last is None else {
                "status": last.status,
                "startedAt": last.started_at.isoformat(),
                "finishedAt": last.finished_at.isoformat() if last.finished_at else None,
                "result": last.result,
            },
            "recent": [{
                "sourcePlatform": e.source_platform,
                "sourceId": e.source_id,
                "reference": e.reference,
                "customer": e.customer_label,
                "totalAmount": str(e.total_amount),
                "stockMoved": e.stock_moved,
                "processedAt": e.processed_at.isoformat(),
            } for e in entries],
        }), 200
    finally:
        session.close()
