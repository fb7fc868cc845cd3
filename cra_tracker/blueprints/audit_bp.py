"""
CRA Request Tracker
Audit blueprint.

Endpoints:
    GET  /api/v1/audit                      — list / filter audit logs (admin)
    GET  /api/v1/audit/<int:log_id>         — single audit entry (admin)
    GET  /api/v1/requests/<id>/audit        — one request's trail, oldest first
"""

from datetime import datetime, time, timezone

from flask import Blueprint, g, jsonify, request

from cra_tracker.auth import require_actor, require_admin
from cra_tracker.core.exceptions import ValidationError
from cra_tracker.models.audit import AuditLog
from cra_tracker.models.request import CraRequest
from cra_tracker.utils.errors import register_error_handlers
from cra_tracker.utils.helpers import get_or_404, parse_date_input

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")
register_error_handlers(audit_bp)


def _day_bound(param: str, end_of_day: bool):
    raw = request.args.get(param)
    try:
        day = parse_date_input(raw)
    except ValueError as e:
        raise ValidationError(str(e), {param: raw}) from e
    if day is None:
        return None
    return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)


def _filtered_query():
    """AuditLog query narrowed by the list endpoint's query params."""
    q = AuditLog.query

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor")
    if actor:
        q = q.filter(AuditLog.actor == actor)

    since = _day_bound("since", end_of_day=False)
    if since:
        q = q.filter(AuditLog.timestamp >= since)

    until = _day_bound("until", end_of_day=True)
    if until:
        q = q.filter(AuditLog.timestamp <= until)

    return q


@audit_bp.route("/audit", methods=["GET"])
@require_actor
@require_admin
def list_audit_logs():
    """
    Return paginated audit logs, newest first.

    Query params:
        entity_type  — request | notification
        entity_id    — CRA id
        action       — action prefix (e.g. "request.status")
        actor        — actor id
        since/until  — inclusive date range (YYYY-MM-DD)
        page         — page number (default 1)
        per_page     — items per page (default 50, max 200)
    """
    q = _filtered_query().order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())

    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(200, max(1, request.args.get("per_page", 50, type=int)))
    paginated = q.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
@require_actor
@require_admin
def get_audit_log(log_id):
    log, err = get_or_404(AuditLog, log_id, "Audit log")
    if err:
        return err
    return jsonify(log.to_dict())


@audit_bp.route("/requests/<request_id>/audit", methods=["GET"])
@require_actor
def request_audit_trail(request_id):
    """Audit trail of one request; notification resends are listed for admins only."""
    req, err = get_or_404(CraRequest, request_id, "Request")
    if err:
        return err
    logs = AuditLog.trail(req.id, include_notify=g.actor.is_admin)
    return jsonify({"request_id": req.id, "audit_logs": [log.to_dict() for log in logs]})
