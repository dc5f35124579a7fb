# backend/taja/routes/system.py
"""
System health endpoint.

Reports database reachability and payments gateway configuration.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..integrations.payments.factory import payment_health
from ..models import Order, Shop
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        shop_count = db.session.query(Shop).count()
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"shops": shop_count, "orders": order_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy, or degraded (payments gateway misconfigured)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    payments = payment_health(current_app.config)

    if database_health["status"] == "unhealthy":
        overall_status, http_status = "unhealthy", 503
    elif payments["status"] == "misconfigured":
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "payments": payments,
        },
    }
    return response, http_status
