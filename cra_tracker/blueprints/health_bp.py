"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database, notification outbox backlog, workflow volume
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from cra_tracker.models import db
from cra_tracker.models.notification import NotificationOutbox
from cra_tracker.models.request import CraRequest

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

# Failed outbox rows above this mark the service as degraded
OUTBOX_FAILED_WARN = 25


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe: 200 whenever the process is serving."""
    return jsonify({"status": "ok"}), 200


def _check_database() -> dict:
    t0 = time.perf_counter()
    db.session.execute(db.text("SELECT 1"))
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}


def _check_outbox() -> dict:
    counts = dict(
        db.session.query(NotificationOutbox.status, func.count(NotificationOutbox.id))
        .group_by(NotificationOutbox.status)
        .all()
    )
    failed = counts.get("failed", 0)
    return {
        "status": "warning" if failed > OUTBOX_FAILED_WARN else "ok",
        "pending": counts.get("pending", 0),
        "failed": failed,
    }


def _workflow_volume() -> dict:
    rows = (
        db.session.query(CraRequest.status, func.count(CraRequest.id))
        .group_by(CraRequest.status)
        .all()
    )
    by_status = {status: count for status, count in rows}
    return {"total": sum(by_status.values()), "by_status": by_status}


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    healthy = True

    try:
        checks["database"] = _check_database()
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        healthy = False
        logger.error("Health check: database failed: %s", exc)

    if healthy:
        try:
            checks["outbox"] = _check_outbox()
            checks["requests"] = _workflow_volume()
        except SQLAlchemyError as exc:
            db.session.rollback()
            checks["outbox"] = {"status": "error", "detail": str(exc)}
            healthy = False

    settings = current_app.extensions.get("cra_notifications")
    checks["app"] = {
        "name": "CRA Request Tracker",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "notifications_enabled": bool(settings and settings.enabled),
        "notifications_test_mode": bool(settings and settings.test_mode),
    }

    degraded = not healthy or checks.get("outbox", {}).get("status") == "warning"
    return jsonify({
        "status": "degraded" if degraded else "healthy",
        "checks": checks,
    }), 200 if healthy else 503
