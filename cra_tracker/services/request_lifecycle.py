"""
CRA Request Tracker
Request Lifecycle Service.

Orchestrates every write to a request:
  1. authorize   (transition_rules)
  2. resolve     (side_effects)
  3. commit      status + fields + history row + audit row, atomically
  4. notify      outbox enqueue; failure is a warning, never a rollback

Usage:
    from cra_tracker.services.request_lifecycle import transition_request

    result = transition_request(
        "CRA25031401",
        "clarification_needed",
        actor,
        {"comment": "need torque spec"},
    )
"""

import logging

from flask import current_app, has_app_context

from cra_tracker.core.exceptions import (
    NOTIFY_FAILURE,
    ROLE_NOT_PERMITTED,
    NotFoundError,
    PersistenceError,
    TransitionDeniedError,
    ValidationError,
    WorkflowError,
)
from cra_tracker.models.request import CraRequest, Role, Status, parse_role
from cra_tracker.services.notification import NotificationService, NotifyOutcome
from cra_tracker.services.request_history import build_event
from cra_tracker.services.request_repository import RequestRepository
from cra_tracker.services.side_effects import REQUEST_STATUS_CHANGED, TransitionInput, check_text, resolve
from cra_tracker.services.transition_rules import authorize, available_transitions, editable_fields
from cra_tracker.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

CREATOR_ROLES = frozenset({Role.SALES, Role.ADMIN})
DRAFT_SESSION_KEY_MAX = 64

# API (camelCase) name → column, for every field a plain edit may write
_API_TO_COLUMN = {
    api: column
    for column, api in {**CraRequest.CONTENT_FIELDS, **CraRequest.SIDE_EFFECT_FIELDS}.items()
}


def _repository(repository):
    return repository or RequestRepository()


def _notifier(notifier):
    if notifier is not None:
        return notifier
    settings = current_app.extensions.get("cra_notifications") if has_app_context() else None
    return NotificationService(settings)


def _edit_mode(actor) -> bool:
    return bool(getattr(actor, "edit_mode", False))


def _coerce_field(column: str, value):
    if column == "expected_qty":
        if value in (None, ""):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError("expectedQty must be an integer", {"expectedQty": value}) from None
    if column == "expected_design_reply_date":
        try:
            return parse_date_input(value)
        except ValueError as e:
            raise ValidationError(str(e), {"expectedDesignReplyDate": value}) from e
    if column == "payload":
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValidationError("payload must be an object", {"payload": "expected object"})
        return value
    if column == "design_result_attachments":
        if value is None:
            return None
        if not isinstance(value, list):
            raise ValidationError("designResultAttachments must be a list", {"designResultAttachments": "expected list"})
        return value
    if value is None:
        return None
    return str(value)


def _field_updates(data: dict, columns) -> dict:
    """Map API keys (camelCase or column names) in *data* onto *columns*."""
    updates = {}
    for key, value in (data or {}).items():
        column = _API_TO_COLUMN.get(key, key)
        if column in columns:
            updates[column] = _coerce_field(column, value)
    return updates


def _draft_session_key(data) -> str | None:
    data = data or {}
    key = data.get("draftSessionKey", data.get("draft_session_key"))
    check_text("draftSessionKey", key)
    key = (key or "").strip()
    if len(key) > DRAFT_SESSION_KEY_MAX:
        raise ValidationError(
            f"draftSessionKey is longer than {DRAFT_SESSION_KEY_MAX} characters",
            {"draftSessionKey": "too long"},
        )
    return key or None


def _has_prior_submission(req: CraRequest) -> bool:
    return any(h.status == Status.SUBMITTED.value for h in req.history)


def _notify(notifier, event_name, req, extra) -> tuple[NotifyOutcome | None, list]:
    outcome = notifier.notify(event_name, req, extra)
    warnings = []
    if outcome.failed:
        logger.warning(
            "Notification %s for %s failed: %s", event_name, req.id, outcome.error,
            extra={"cra_id": req.id, "event_type": event_name},
        )
        warnings.append({"code": NOTIFY_FAILURE, "message": outcome.error or "notification enqueue failed"})
    return outcome, warnings


# ── Create ───────────────────────────────────────────────────────────────────

def create_request(
    data: dict,
    actor,
    *,
    submit: bool = False,
    repository: RequestRepository | None = None,
    notifier: NotificationService | None = None,
) -> dict:
    """
    Create a request in ``draft``; with ``submit=True`` follow up with the
    ``draft → submitted`` transition (history length 1, ``request_created``).

    A ``draftSessionKey`` makes creation idempotent: while the creator's
    draft opened under that key is still a draft, it is returned again
    (``created`` False) instead of a new request.

    Raises:
        WorkflowError(ROLE_NOT_PERMITTED), TransitionDeniedError,
        ValidationError, PersistenceError
    """
    repo = _repository(repository)
    role = parse_role(actor.role)
    if role not in CREATOR_ROLES:
        raise WorkflowError(
            f"Role '{role.value}' cannot create requests",
            code=ROLE_NOT_PERMITTED,
            details={"role": role.value},
        )

    if submit:
        decision = authorize(Status.DRAFT, role, _edit_mode(actor), Status.SUBMITTED)
        if not decision:
            raise TransitionDeniedError(None, Status.DRAFT.value, Status.SUBMITTED.value, role.value, decision.reason)

    session_key = _draft_session_key(data)
    req = repo.find_open_draft(actor.id, session_key) if session_key else None
    created = req is None
    if created:
        content = _field_updates(data, CraRequest.CONTENT_FIELDS)
        req = CraRequest(
            id=repo.next_request_id(),
            status=Status.DRAFT.value,
            created_by=str(actor.id),
            created_by_name=getattr(actor, "name", "") or "",
            draft_session_key=session_key,
            **content,
        )
        try:
            repo.add_request(req, actor=actor)
        except PersistenceError:
            # A concurrent retry may have won the unique draft-session index
            req = repo.find_open_draft(actor.id, session_key) if session_key else None
            if req is None:
                raise
            created = False

    if created:
        logger.info(
            "Request %s created by %s", req.id, actor.id,
            extra={"cra_id": req.id, "actor_role": role.value},
        )
    else:
        logger.info(
            "Request %s reused for draft session %s", req.id, session_key,
            extra={"cra_id": req.id, "actor_role": role.value},
        )

    if submit:
        result = transition_request(req.id, Status.SUBMITTED, actor, data, repository=repo, notifier=notifier)
        result["created"] = created
        return result

    return {
        "request_id": req.id,
        "previous_status": None,
        "new_status": req.status,
        "history_status": None,
        "notify_event": None,
        "notification": None,
        "warnings": [],
        "created": created,
        "request": req.to_dict(),
    }


# ── Transition ───────────────────────────────────────────────────────────────

def transition_request(
    request_id: str,
    requested_status,
    actor,
    payload: dict | None = None,
    *,
    repository: RequestRepository | None = None,
    notifier: NotificationService | None = None,
) -> dict:
    """
    Execute one status transition.

    Args:
        request_id: CRA id.
        requested_status: Target status (wire string or Status).
        actor: Caller (``id``, ``role``, ``name``, ``edit_mode``).
        payload: ``comment`` plus any side-effect inputs
            (acceptanceMessage, expectedDesignReplyDate, ...).

    Returns:
        {"request_id", "previous_status", "new_status", "history_status",
         "notify_event", "notification", "warnings", "request"}

    Raises:
        NotFoundError, TransitionDeniedError, MissingRequiredFieldError,
        ValidationError, PersistenceError
    """
    repo = _repository(repository)
    payload = payload or {}
    req = repo.load_request(request_id)
    previous_status = req.status
    role = parse_role(actor.role)
    edit_mode = _edit_mode(actor)
    requested = getattr(requested_status, "value", requested_status)

    # 1. Authorize
    decision = authorize(previous_status, role, edit_mode, requested)
    if not decision:
        logger.info(
            "Transition denied: %s %s → %s as %s (%s)",
            req.id, previous_status, requested, role.value, decision.reason,
            extra={"cra_id": req.id, "from_status": previous_status,
                   "to_status": requested, "actor_role": role.value},
        )
        raise TransitionDeniedError(req.id, previous_status, str(requested), role.value, decision.reason)

    # 2. Resolve side effects
    transition = TransitionInput.from_payload(
        previous_status, requested, role, payload,
        edit_mode=edit_mode,
        has_prior_submission=_has_prior_submission(req),
    )
    resolution = resolve(transition)

    # 3. Commit status + fields + history (+ audit)
    history_status = Status.EDITED if transition.is_noop else transition.requested_status
    event = build_event(history_status, actor, comment=transition.comment)
    repo.commit_request_update(
        req,
        None if transition.is_noop else transition.requested_status,
        resolution.field_updates,
        event,
        actor=actor,
        audit_action="request.updated" if transition.is_noop else "request.status_changed",
    )
    logger.info(
        "Request %s: %s → %s by %s", req.id, previous_status, req.status, role.value,
        extra={"cra_id": req.id, "from_status": previous_status,
               "to_status": req.status, "actor_role": role.value},
    )

    # 4. Notify (non-fatal)
    outcome, warnings = None, []
    if resolution.notify_event:
        outcome, warnings = _notify(
            _notifier(notifier), resolution.notify_event, req,
            {
                "previous_status": previous_status,
                "actor_name": getattr(actor, "name", "") or str(actor.id),
                "comment": event.comment,
            },
        )

    return {
        "request_id": req.id,
        "previous_status": previous_status,
        "new_status": req.status,
        "history_status": event.status,
        "notify_event": resolution.notify_event,
        "notification": outcome.to_dict() if outcome else None,
        "warnings": warnings,
        "request": req.to_dict(),
    }


def batch_transition(
    request_ids: list[str],
    requested_status,
    actor,
    payload: dict | None = None,
    *,
    repository: RequestRepository | None = None,
    notifier: NotificationService | None = None,
) -> dict:
    """
    Batch transition for multiple requests. Partial success allowed.

    Returns:
        {"success": [...], "errors": [...]}
    """
    results = {"success": [], "errors": []}

    for request_id in request_ids:
        try:
            result = transition_request(
                request_id, requested_status, actor, payload,
                repository=repository, notifier=notifier,
            )
            result.pop("request", None)
            results["success"].append(result)
        except (WorkflowError, NotFoundError, ValidationError) as e:
            results["errors"].append({
                "request_id": request_id,
                "error": str(e),
                "code": getattr(e, "code", "ERR_NOT_FOUND" if isinstance(e, NotFoundError) else "ERR_VALIDATION_INVALID"),
                "error_type": type(e).__name__,
            })

    return results


def get_available_transitions(req: CraRequest, actor) -> list[str]:
    """Statuses *actor* may move *req* to right now."""
    return available_transitions(req.status, actor.role, _edit_mode(actor))


# ── Edit ─────────────────────────────────────────────────────────────────────

def record_edit(
    request_id: str,
    changes: dict,
    actor,
    *,
    repository: RequestRepository | None = None,
) -> dict:
    """
    Edit request content without changing status; appends an ``edited``
    history entry.

    Raises:
        NotFoundError, WorkflowError(ROLE_NOT_PERMITTED), ValidationError,
        PersistenceError
    """
    repo = _repository(repository)
    req = repo.load_request(request_id)
    role = parse_role(actor.role)
    allowed = editable_fields(req.status, role, _edit_mode(actor))
    if not allowed:
        raise WorkflowError(
            f"Role '{role.value}' cannot edit request {req.id} at status '{req.status}'",
            code=ROLE_NOT_PERMITTED,
            details={"current_status": req.status, "role": role.value},
        )

    known = set(_API_TO_COLUMN) | set(_API_TO_COLUMN.values())
    requested = {k for k in (changes or {}) if k in known}
    forbidden = sorted(
        CraRequest.CONTENT_FIELDS.get(_API_TO_COLUMN.get(k, k))
        or CraRequest.SIDE_EFFECT_FIELDS.get(_API_TO_COLUMN.get(k, k))
        for k in requested
        if _API_TO_COLUMN.get(k, k) not in allowed
    )
    if forbidden:
        raise WorkflowError(
            f"Role '{role.value}' cannot edit {', '.join(forbidden)} at status '{req.status}'",
            code=ROLE_NOT_PERMITTED,
            details={"current_status": req.status, "role": role.value, "fields": forbidden},
        )

    updates = _field_updates(changes, allowed)
    if not updates:
        raise ValidationError("No editable fields supplied", {"editable": sorted(allowed)})

    comment = (changes or {}).get("comment")
    check_text("comment", comment)
    event = build_event(Status.EDITED, actor, comment=comment)
    repo.commit_request_update(req, None, updates, event, actor=actor, audit_action="request.updated")
    logger.info(
        "Request %s edited by %s (%s)", req.id, actor.id, ", ".join(sorted(updates)),
        extra={"cra_id": req.id, "actor_role": role.value},
    )
    return {
        "request_id": req.id,
        "updated_fields": sorted(CraRequest.CONTENT_FIELDS.get(c) or CraRequest.SIDE_EFFECT_FIELDS[c] for c in updates),
        "history_status": event.status,
        "request": req.to_dict(),
    }


# ── Manual notification ──────────────────────────────────────────────────────

def resend_notification(
    request_id: str,
    actor,
    event_name: str | None = None,
    *,
    repository: RequestRepository | None = None,
    notifier: NotificationService | None = None,
) -> dict:
    """Enqueue a notification for the current status without changing it."""
    repo = _repository(repository)
    req = repo.load_request(request_id)
    event_name = event_name or REQUEST_STATUS_CHANGED
    if event_name not in ("request_created", "request_status_changed"):
        raise ValidationError(f"Unknown notification event: {event_name}", {"event": event_name})
    if req.status == Status.DRAFT.value:
        return {"request_id": req.id, "notification": NotifyOutcome(enqueued=False, reason="draft").to_dict(), "warnings": []}

    repo.record_audit(req.id, "request.notify", actor, {"event": event_name, "status": req.status})
    outcome, warnings = _notify(
        _notifier(notifier), event_name, req,
        {"actor_name": getattr(actor, "name", "") or str(actor.id)},
    )
    return {"request_id": req.id, "notification": outcome.to_dict(), "warnings": warnings}
