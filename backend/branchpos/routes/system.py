# backend/branchpos/routes/system.py
"""
System health and version endpoints.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db, change_feed
from ..models import TenantDocument, OperatorDocument
from branchpos.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check the document store: both tables readable.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        tenant_count = db.session.query(func.count(TenantDocument.id)).scalar()
        operator_count = db.session.query(func.count(OperatorDocument.id)).scalar()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "tenant_documents": tenant_count,
                "operator_documents": operator_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sync_health() -> dict:
    """Live change feed state. A closed feed is degraded: sync falls back to polling."""
    transport = current_app.config.get("SYNC_TRANSPORT", "live")
    if transport == "live" and change_feed.closed:
        return {"status": "degraded", "transport": transport, "warning": "Change feed closed; clients poll"}
    return {
        "status": "healthy",
        "transport": transport,
        "details": {"listeners": change_feed.listener_count()},
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (degraded is still operational)
    - 503: document store unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    sync_health = check_sync_health()

    all_checks = [database_health, sync_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "sync": sync_health,
        }
    }
    return response, http_status
