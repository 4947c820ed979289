# backend/storefront/routes/system.py
"""
System health endpoint.

Checks database connectivity and whether the payment gateway client is
configured. The gateway itself is not called.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from storefront.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_gateway_config() -> dict:
    client = current_app.extensions.get("qpay")
    if client is None or not (client.client_id and client.client_secret and client.invoice_code):
        return {"status": "degraded", "warning": "QPay credentials not configured"}
    return {
        "status": "healthy",
        "details": {"token_cached": client.access_token is not None},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (gateway unconfigured)
    - 503: database unreachable
    """
    database_health = check_database_health()
    gateway_health = check_gateway_config()

    if database_health["status"] == "unhealthy":
        overall_status, http_status = "unhealthy", 503
    elif gateway_health["status"] == "degraded":
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
            "payment_gateway": gateway_health,
        }
    }, http_status
