# backend/possettle/routes/system.py
"""
System health endpoint.

Reports database reachability and whether a verification gateway is
configured, for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import CashSession
from ..constants import SESSION_OPEN
from possettle.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        open_sessions = db.session.query(CashSession).filter_by(status=SESSION_OPEN).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "open_sessions": open_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_gateway_config() -> dict:
    """No gateway is degraded, not down: cash, card and manual verification still work."""
    coordinator = current_app.extensions.get("settlement_coordinator")
    if coordinator is None or coordinator.gateway is None:
        return {
            "status": "degraded",
            "warning": "No verification gateway configured",
        }
    return {
        "status": "healthy",
        "details": {
            "gateway": type(coordinator.gateway).__name__,
            "timeout_seconds": coordinator.timeout_seconds,
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_gateway_config()

    all_checks = [database_health, gateway_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "verification_gateway": gateway_health,
        }
    }

    return response, http_status
