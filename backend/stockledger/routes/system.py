# backend/stockledger/routes/system.py
"""
System health endpoint.

Reports database connectivity and ledger lock usage. A database failure is
"unhealthy" (503). Replay consistency is checked by the replay-check report,
not here.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import HistoryEntry, StockRecord
from stockledger.services.concurrency import get_lock_registry
from stockledger.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        stock_rows = db.session.query(StockRecord).count()
        history_entries = db.session.query(HistoryEntry).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stock_rows": stock_rows,
                "history_entries": history_entries,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_ledger_health() -> dict:
    """
    Ledger locks currently held or awaited.

    The full history replay is too heavy for a probe endpoint; it lives at
    /api/reports/replay-check and `flask ledger verify-replay`.
    """
    return {"status": "healthy", "details": {"keys_in_use": len(get_lock_registry())}}


@system_bp.get("/health")
def health():
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "ledger": check_ledger_health(),
    }
    statuses = [check["status"] for check in checks.values()]

    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
