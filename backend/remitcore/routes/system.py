# backend/remitcore/routes/system.py
"""
System health and version endpoints.

/health probes the database and the lease table so an operator can see
whether remittance operations would be able to take a lock.
"""

import sys
import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Organization, Transaction, Remittance, ProcessLock
from remitcore.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def check_database_health() -> dict:
    """Count the core tables; any failure means the database is unusable."""
    start_time = time.time()
    try:
        details = {
            "organizations": db.session.query(Organization).count(),
            "transactions": db.session.query(Transaction).count(),
            "remittances": db.session.query(Remittance).count(),
        }
        return {"status": "healthy", "latency_ms": _elapsed_ms(start_time), "details": details}
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Database error"}


def check_lease_health() -> dict:
    """
    Report live and expired leases.

    Expired leases are harmless (the next acquisition takes them over) but
    a growing number means handlers are dying mid-operation.
    """
    start_time = time.time()
    try:
        now = utcnow()
        live = db.session.query(ProcessLock).filter(ProcessLock.expires_at > now).count()
        expired = db.session.query(ProcessLock).filter(ProcessLock.expires_at <= now).count()
        return {
            "status": "degraded" if expired else "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {"live_leases": live, "expired_pending_cleanup": expired},
        }
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Lease health check failed")
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Lease table error"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: a dependency is unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    lease_health = check_lease_health()

    all_checks = [database_health, lease_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": _elapsed_ms(start_time),
        "checks": {
            "database": database_health,
            "leases": lease_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info."""
    return {
        "api_version": current_app.config.get("API_VERSION", "1.0.0"),
        "environment": "development" if current_app.debug else "production",
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
