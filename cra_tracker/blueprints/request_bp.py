"""
CRA Request Tracker
Request workflow blueprint.

Endpoints:
    GET    /api/v1/requests                     — full requests, newest first (?status=, ?ownership=)
    GET    /api/v1/requests/summary             — lightweight list for dashboards
    POST   /api/v1/requests                     — create (draft); {"submit": true} submits at once,
                                                  a repeated draftSessionKey returns the open draft (200)
    GET    /api/v1/requests/<id>                — one request with history
    PUT    /api/v1/requests/<id>                — edit content, appends an "edited" entry
    DELETE /api/v1/requests/<id>                — delete (admin)
    POST   /api/v1/requests/<id>/status         — status transition
    GET    /api/v1/requests/<id>/history        — lifecycle history (?raw=true unfiltered)
    GET    /api/v1/requests/<id>/transitions    — targets available to the caller
    POST   /api/v1/requests/<id>/notify         — re-enqueue a notification
    POST   /api/v1/requests/status/batch        — batch transition, partial success
"""

import logging

from flask import Blueprint, g, jsonify, request

from cra_tracker.auth import require_actor, require_admin
from cra_tracker.core.exceptions import ValidationError
from cra_tracker.models.request import CraRequest
from cra_tracker.services import dashboard_service, request_lifecycle
from cra_tracker.services.request_history import filter_lifecycle_history
from cra_tracker.services.request_repository import RequestRepository
from cra_tracker.services.transition_rules import editable_fields
from cra_tracker.utils.errors import E, api_error, register_error_handlers
from cra_tracker.utils.helpers import get_or_404, parse_bool

logger = logging.getLogger(__name__)

request_bp = Blueprint("request", __name__, url_prefix="/api/v1")
register_error_handlers(request_bp)

MAX_BATCH = 100


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _ownership_filter(requests_):
    return dashboard_service.filter_by_ownership(
        requests_, request.args.get("ownership", "all"), g.actor.id,
    )


# ── Read ─────────────────────────────────────────────────────────────────────

@request_bp.route("/requests", methods=["GET"])
@require_actor
def list_requests():
    items = RequestRepository().list_requests(status=request.args.get("status") or None)
    items = _ownership_filter(items)
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})


@request_bp.route("/requests/summary", methods=["GET"])
@require_actor
def list_request_summaries():
    items = RequestRepository().list_requests(status=request.args.get("status") or None)
    items = _ownership_filter(items)
    return jsonify({"items": [r.to_summary() for r in items], "total": len(items)})


@request_bp.route("/requests/<request_id>", methods=["GET"])
@require_actor
def get_request(request_id):
    req, err = get_or_404(CraRequest, request_id, "Request")
    if err:
        return err
    return jsonify(req.to_dict())


@request_bp.route("/requests/<request_id>/history", methods=["GET"])
@require_actor
def get_request_history(request_id):
    req, err = get_or_404(CraRequest, request_id, "Request")
    if err:
        return err
    history = [h.to_dict() for h in req.history]
    if not parse_bool(request.args.get("raw")):
        history = filter_lifecycle_history(history)
    return jsonify({"request_id": req.id, "status": req.status, "history": history})


@request_bp.route("/requests/<request_id>/transitions", methods=["GET"])
@require_actor
def get_request_transitions(request_id):
    req, err = get_or_404(CraRequest, request_id, "Request")
    if err:
        return err
    actor = g.actor
    fields = editable_fields(req.status, actor.role, actor.edit_mode)
    return jsonify({
        "request_id": req.id,
        "current_status": req.status,
        "available": request_lifecycle.get_available_transitions(req, actor),
        "can_edit": bool(fields),
        "editable_fields": sorted(
            CraRequest.CONTENT_FIELDS.get(c) or CraRequest.SIDE_EFFECT_FIELDS[c] for c in fields
        ),
    })


# ── Write ────────────────────────────────────────────────────────────────────

@request_bp.route("/requests", methods=["POST"])
@require_actor
def create_request():
    data = _json_body()
    result = request_lifecycle.create_request(data, g.actor, submit=parse_bool(data.get("submit")))
    return jsonify(result), 201 if result["created"] else 200


@request_bp.route("/requests/<request_id>", methods=["PUT"])
@require_actor
def update_request(request_id):
    data = _json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required")
    return jsonify(request_lifecycle.record_edit(request_id, data, g.actor))


@request_bp.route("/requests/<request_id>", methods=["DELETE"])
@require_actor
@require_admin
def delete_request(request_id):
    repo = RequestRepository()
    req = repo.load_request(request_id)
    repo.delete_request(req, actor=g.actor)
    logger.info("Request %s deleted by %s", request_id, g.actor.id, extra={"cra_id": request_id})
    return jsonify({"deleted": True, "request_id": request_id})


@request_bp.route("/requests/<request_id>/status", methods=["POST"])
@require_actor
def transition_status(request_id):
    data = _json_body()
    target = (data.get("status") or "").strip() if isinstance(data.get("status"), str) else ""
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = request_lifecycle.transition_request(request_id, target, g.actor, data)
    return jsonify(result)


@request_bp.route("/requests/<request_id>/notify", methods=["POST"])
@require_actor
def notify_request(request_id):
    data = _json_body()
    result = request_lifecycle.resend_notification(request_id, g.actor, data.get("event"))
    return jsonify(result)


@request_bp.route("/requests/status/batch", methods=["POST"])
@require_actor
def batch_transition_status():
    data = _json_body()
    ids = data.get("ids")
    target = data.get("status")
    if not isinstance(ids, list) or not ids:
        return api_error(E.VALIDATION_REQUIRED, "ids must be a non-empty list")
    if not isinstance(target, str) or not target.strip():
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    if len(ids) > MAX_BATCH:
        return api_error(E.VALIDATION_INVALID, f"At most {MAX_BATCH} requests per batch")

    payload = {k: v for k, v in data.items() if k not in ("ids", "status")}
    result = request_lifecycle.batch_transition([str(i) for i in ids], target.strip(), g.actor, payload)
    return jsonify(result)
