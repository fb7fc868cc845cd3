"""
CRA Request Tracker
Dashboard blueprint.

Endpoints:
    GET /api/v1/dashboard/kpis             — role KPI cards (?ownership=all|mine, ?filter=)
    GET /api/v1/performance/overview       — throughput / WIP / lead time (?from=&to=&groupBy=)
    GET /api/v1/admin/status-integrity     — stored-status diagnostics (admin, ?limit=)
"""

from flask import Blueprint, g, jsonify, request

from cra_tracker.auth import require_actor, require_admin
from cra_tracker.services import dashboard_service
from cra_tracker.services.request_repository import RequestRepository
from cra_tracker.services.status_integrity import DEFAULT_LIMIT, generate_status_integrity_report
from cra_tracker.utils.errors import register_error_handlers

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/v1")
register_error_handlers(dashboard_bp)


@dashboard_bp.route("/dashboard/kpis", methods=["GET"])
@require_actor
def dashboard_kpis():
    actor = g.actor
    ownership = request.args.get("ownership", "all")
    requests_ = RequestRepository().list_requests()

    kpis = dashboard_service.aggregate(requests_, actor.role, ownership, actor.id)
    body = {
        "role": actor.role.value,
        "ownership": ownership,
        "kpis": [k.to_dict() for k in kpis],
    }

    filter_key = request.args.get("filter")
    if filter_key:
        base = dashboard_service.filter_by_ownership(requests_, ownership, actor.id)
        matched = dashboard_service.filter_requests(base, filter_key)
        body["filter"] = filter_key
        body["items"] = [r.to_summary() for r in matched]
    return jsonify(body)


@dashboard_bp.route("/performance/overview", methods=["GET"])
@require_actor
def performance_overview():
    result = dashboard_service.performance_overview(
        RequestRepository().list_requests(),
        request.args.get("from", "").strip() or None,
        request.args.get("to", "").strip() or None,
        request.args.get("groupBy", "day").strip(),
    )
    return jsonify(result)


@dashboard_bp.route("/admin/status-integrity", methods=["GET"])
@require_actor
@require_admin
def status_integrity():
    limit = request.args.get("limit", DEFAULT_LIMIT)
    return jsonify(generate_status_integrity_report(limit=limit))
