"""
CRA Request Tracker
Persistence collaborator for the request workflow.

The one place that commits request changes. A status change, its field
updates, the new history row and the audit row go out in a single
``db.session.commit()``; any SQLAlchemy failure rolls the whole unit back
and surfaces as ``PersistenceError``.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from cra_tracker.core.exceptions import NotFoundError, PersistenceError
from cra_tracker.models import db
from cra_tracker.models.audit import write_audit
from cra_tracker.models.request import CraRequest, RequestCounter, RequestHistoryEntry, Status

logger = logging.getLogger(__name__)

REQUEST_ID_PREFIX = "CRA"


def format_request_id(day: date, seq: int) -> str:
    """``CRA<yymmdd><NN>`` (NN grows past two digits after 99)."""
    return f"{REQUEST_ID_PREFIX}{day:%y%m%d}{seq:02d}"


class RequestRepository:
    """Flask-SQLAlchemy backed store for CRA requests."""

    def load_request(self, request_id) -> CraRequest:
        req = db.session.get(CraRequest, request_id)
        if req is None:
            raise NotFoundError(resource="Request", resource_id=request_id)
        return req

    def list_requests(self, status=None, created_by=None):
        q = CraRequest.query
        if status:
            q = q.filter(CraRequest.status == status)
        if created_by:
            q = q.filter(CraRequest.created_by == created_by)
        return q.order_by(CraRequest.created_at.desc(), CraRequest.id.desc()).all()

    def find_open_draft(self, created_by, draft_session_key) -> CraRequest | None:
        """The creator's draft opened under *draft_session_key*, if still a draft."""
        return CraRequest.query.filter_by(
            created_by=str(created_by),
            draft_session_key=draft_session_key,
            status=Status.DRAFT.value,
        ).first()

    def next_request_id(self, today: date | None = None) -> str:
        """Bump the per-day counter and return the next free id.

        The counter row is flushed, not committed: it rides along with the
        insert of the request that uses it.
        """
        today = today or datetime.now(timezone.utc).date()
        name = f"request_{today:%y%m%d}"
        counter = db.session.get(RequestCounter, name)
        if counter is None:
            counter = RequestCounter(name=name, value=0)
            db.session.add(counter)

        while True:
            counter.value = (counter.value or 0) + 1
            candidate = format_request_id(today, counter.value)
            if db.session.get(CraRequest, candidate) is None:
                break
        db.session.flush()
        return candidate

    # ── Writes ────────────────────────────────────────────────────────────

    def add_request(self, req: CraRequest, *, actor=None):
        """Insert a new request (plus its audit row) and commit."""
        db.session.add(req)
        self._audit(req.id, "request.created", actor, {"status": {"old": None, "new": req.status}})
        self._commit(f"create request {req.id}")
        return req

    def commit_request_update(
        self,
        req: CraRequest,
        status,
        field_updates: dict,
        history_event,
        *,
        actor=None,
        audit_action="request.status_changed",
    ) -> RequestHistoryEntry:
        """Apply status + fields + one history row atomically.

        Args:
            status: New status, or None to leave it unchanged (no-op / edit).
            field_updates: Column name → value.
            history_event: HistoryEvent to persist at ``seq = len(history)``.
        """
        previous_status = req.status
        diff = {}
        if status is not None:
            new_status = getattr(status, "value", status)
            if new_status != previous_status:
                diff["status"] = {"old": previous_status, "new": new_status}
            req.status = new_status

        for column, value in (field_updates or {}).items():
            old = getattr(req, column)
            if old != value:
                diff[column] = {"old": old, "new": value}
            setattr(req, column, value)

        entry = RequestHistoryEntry(
            request_id=req.id,
            seq=len(req.history),
            status=history_event.status,
            actor_id=history_event.actor_id,
            actor_role=history_event.actor_role,
            actor_name=history_event.actor_name,
            comment=history_event.comment,
            timestamp=history_event.timestamp,
        )
        req.history.append(entry)
        req.updated_at = history_event.timestamp or datetime.now(timezone.utc)

        self._audit(req.id, audit_action, actor, diff)
        self._commit(f"update request {req.id}")
        return entry

    def delete_request(self, req: CraRequest, *, actor=None):
        request_id = req.id
        db.session.delete(req)
        self._audit(request_id, "request.deleted", actor, {"status": {"old": req.status, "new": None}})
        self._commit(f"delete request {request_id}")

    def record_audit(self, request_id, action, actor=None, diff=None):
        """Write a standalone audit row (events that change no request data)."""
        self._audit(request_id, action, actor, diff or {})
        self._commit(f"audit {action} for {request_id}")

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _audit(request_id, action, actor, diff):
        """Audit rows share the caller's transaction; a failure here is logged only."""
        try:
            write_audit(
                entity_type="request",
                entity_id=request_id,
                action=action,
                actor=str(getattr(actor, "id", None) or "system"),
                actor_role=getattr(getattr(actor, "role", None), "value", getattr(actor, "role", None)),
                diff=diff,
            )
        except SQLAlchemyError:
            logger.warning("Audit write failed for %s %s", action, request_id, exc_info=True)

    @staticmethod
    def _commit(what: str):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Commit failed: %s", what)
            raise PersistenceError(f"Could not {what}: {e.__class__.__name__}") from e
