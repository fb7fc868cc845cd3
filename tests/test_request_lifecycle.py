"""
Tests — request lifecycle service (authorize → resolve → commit → notify).

Covers:
    1. The four reference scenarios
    2. Append-only history across a full run
    3. Missing required fields / denials leave no trace
    4. No-op transitions and plain edits ("edited" entries)
    5. Batch transitions
    6. Notification outcomes and NOTIFY_FAILURE warnings
    7. Persistence failures
    8. Audit rows
    9. Draft session keys (idempotent creation)
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from cra_tracker.core.exceptions import (
    INVALID_TRANSITION,
    MISSING_REQUIRED_FIELD,
    NOTIFY_FAILURE,
    PERSISTENCE_FAILURE,
    ROLE_NOT_PERMITTED,
    MissingRequiredFieldError,
    NotFoundError,
    PersistenceError,
    TransitionDeniedError,
    ValidationError,
    WorkflowError,
)
from cra_tracker.models import db
from cra_tracker.models.audit import AuditLog, write_audit
from cra_tracker.models.notification import NotificationOutbox
from cra_tracker.models.request import CraRequest
from cra_tracker.services.request_repository import RequestRepository
from cra_tracker.services.notification import NotifyOutcome
from cra_tracker.services.request_lifecycle import (
    batch_transition,
    create_request,
    record_edit,
    resend_notification,
    transition_request,
)


class FailingNotifier:
    """Notifier double that always reports an enqueue error."""

    def __init__(self):
        self.calls = []

    def notify(self, event_name, request, extra=None):
        self.calls.append((event_name, request.id))
        return NotifyOutcome(enqueued=False, reason="error", error="outbox unavailable")


def _draft(make_actor, **data):
    data.setdefault("clientName", "Acme Trucks")
    return create_request(data, make_actor("sales"))["request_id"]


def _walk(request_id, make_actor, *steps):
    for role, status, payload in steps:
        transition_request(request_id, status, make_actor(role), payload)


FEASIBLE = {"acceptanceMessage": "Feasible", "expectedDesignReplyDate": "2025-04-01"}


# ═══════════════════════════════════════════════════════════════════════════
#  Reference scenarios
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarios:
    def test_sales_submits_draft(self, make_actor):
        rid = _draft(make_actor)
        result = transition_request(rid, "submitted", make_actor("sales"))
        assert result["new_status"] == "submitted"
        assert result["notify_event"] == "request_created"
        req = db.session.get(CraRequest, rid)
        assert len(req.history) == 1
        assert req.history[0].status == "submitted"

    def test_create_with_submit(self, make_actor):
        result = create_request({"clientName": "Acme"}, make_actor("sales"), submit=True)
        assert result["created"] is True
        assert result["new_status"] == "submitted"
        assert result["notify_event"] == "request_created"
        assert len(result["request"]["history"]) == 1

    def test_design_requests_clarification(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        result = transition_request(rid, "clarification_needed", make_actor("design"), {"comment": "need torque spec"})
        req = db.session.get(CraRequest, rid)
        assert req.status == "clarification_needed"
        assert req.clarification_comment == "need torque spec"
        assert len(req.history) == 2
        assert req.history[1].comment == "need torque spec"
        assert result["notify_event"] == "request_status_changed"

    def test_costing_denied_at_clarification(self, make_actor):
        rid = _draft(make_actor)
        _walk(rid, make_actor,
              ("sales", "submitted", {}),
              ("design", "clarification_needed", {"comment": "need torque spec"}))
        with pytest.raises(TransitionDeniedError) as exc:
            transition_request(rid, "in_costing", make_actor("costing"))
        assert exc.value.code == ROLE_NOT_PERMITTED
        req = db.session.get(CraRequest, rid)
        assert req.status == "clarification_needed"
        assert len(req.history) == 2

    def test_admin_edit_mode_closes_final_request(self, make_actor):
        rid = _draft(make_actor)
        _walk(rid, make_actor, ("sales", "submitted", {}))
        # Reaching gm_approved needs the admin override too
        transition_request(rid, "gm_approved", make_actor("admin", edit_mode=True))
        result = transition_request(rid, "closed", make_actor("admin", edit_mode=True))
        assert result["previous_status"] == "gm_approved"
        assert result["new_status"] == "closed"

    def test_final_status_locked_without_edit_mode(self, make_actor):
        rid = _draft(make_actor)
        _walk(rid, make_actor, ("sales", "submitted", {}))
        transition_request(rid, "gm_approved", make_actor("admin", edit_mode=True))
        with pytest.raises(TransitionDeniedError):
            transition_request(rid, "closed", make_actor("admin"))


# ═══════════════════════════════════════════════════════════════════════════
#  History
# ═══════════════════════════════════════════════════════════════════════════

class TestAppendOnlyHistory:
    def test_prefix_preserved_through_full_flow(self, make_actor):
        rid = _draft(make_actor)
        steps = [
            ("sales", "submitted", {}),
            ("design", "under_review", {}),
            ("design", "feasibility_confirmed", FEASIBLE),
            ("design", "design_result", {"designResultComments": "rev B drawing"}),
            ("costing", "in_costing", {}),
            ("costing", "costing_complete", {"costingNotes": "EUR 12/unit"}),
            ("sales", "sales_followup", {"salesFeedbackComment": "waiting on customer"}),
            ("sales", "gm_approval_pending", {}),
        ]
        snapshots = []
        for n, (role, status, payload) in enumerate(steps, start=1):
            transition_request(rid, status, make_actor(role), payload)
            history = [h.to_dict() for h in db.session.get(CraRequest, rid).history]
            assert len(history) == n
            snapshots.append(history)

        final = snapshots[-1]
        for snap in snapshots:
            assert final[: len(snap)] == snap

        req = db.session.get(CraRequest, rid)
        assert req.status == "gm_approval_pending"
        assert req.costing_notes == "EUR 12/unit"
        assert req.design_result_comments == "rev B drawing"
        assert [h.seq for h in req.history] == list(range(len(steps)))

    def test_gm_rejection_returns_to_sales_followup(self, make_actor):
        rid = _draft(make_actor)
        _walk(rid, make_actor,
              ("sales", "submitted", {}),
              ("design", "feasibility_confirmed", FEASIBLE),
              ("costing", "costing_complete", {}),
              ("sales", "gm_approval_pending", {}),
              ("sales", "sales_followup", {"comment": "GM rejected: price too high"}))
        req = db.session.get(CraRequest, rid)
        assert req.status == "sales_followup"
        assert "gm_rejected" not in [h.status for h in req.history]


# ═══════════════════════════════════════════════════════════════════════════
#  Failures leave no trace
# ═══════════════════════════════════════════════════════════════════════════

class TestFailures:
    def test_missing_comment(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        with pytest.raises(MissingRequiredFieldError) as exc:
            transition_request(rid, "clarification_needed", make_actor("design"))
        assert exc.value.code == MISSING_REQUIRED_FIELD
        req = db.session.get(CraRequest, rid)
        assert req.status == "submitted"
        assert len(req.history) == 1

    def test_non_text_comment(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        with pytest.raises(ValidationError):
            transition_request(rid, "clarification_needed", make_actor("design"), {"comment": 42})
        req = db.session.get(CraRequest, rid)
        assert req.status == "submitted"
        assert len(req.history) == 1

    def test_missing_feasibility_date(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        with pytest.raises(MissingRequiredFieldError) as exc:
            transition_request(rid, "feasibility_confirmed", make_actor("design"), {"acceptanceMessage": "ok"})
        assert exc.value.details["missing_fields"] == ["expectedDesignReplyDate"]

    def test_invalid_transition(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        with pytest.raises(TransitionDeniedError) as exc:
            transition_request(rid, "gm_approved", make_actor("design"))
        assert exc.value.code == INVALID_TRANSITION

    def test_unknown_request(self, make_actor):
        with pytest.raises(NotFoundError):
            transition_request("CRA00000000", "submitted", make_actor("sales"))

    def test_design_cannot_create(self, make_actor):
        with pytest.raises(WorkflowError) as exc:
            create_request({"clientName": "x"}, make_actor("design"))
        assert exc.value.code == ROLE_NOT_PERMITTED

    def test_bad_expected_qty(self, make_actor):
        with pytest.raises(ValidationError):
            create_request({"expectedQty": "lots"}, make_actor("sales"))

    def test_commit_failure_surfaces_persistence_error(self, make_actor):
        rid = _draft(make_actor)
        with patch.object(db.session, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk full"))):
            with pytest.raises(PersistenceError) as exc:
                transition_request(rid, "submitted", make_actor("sales"))
        assert exc.value.code == PERSISTENCE_FAILURE
        req = db.session.get(CraRequest, rid)
        assert req.status == "draft"
        assert req.history == []


# ═══════════════════════════════════════════════════════════════════════════
#  No-ops and edits
# ═══════════════════════════════════════════════════════════════════════════

class TestNoopAndEdit:
    def test_same_status_records_edited(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        result = transition_request(rid, "submitted", make_actor("design"), {"comment": "looked at it"})
        assert result["new_status"] == "submitted"
        assert result["history_status"] == "edited"
        assert result["notify_event"] is None
        assert len(db.session.get(CraRequest, rid).history) == 2

    def test_record_edit_by_sales_on_draft(self, make_actor):
        rid = _draft(make_actor)
        result = record_edit(rid, {"clientName": "Acme GmbH", "expectedQty": "250"}, make_actor("sales"))
        assert result["updated_fields"] == ["clientName", "expectedQty"]
        req = db.session.get(CraRequest, rid)
        assert req.client_name == "Acme GmbH"
        assert req.expected_qty == 250
        assert req.status == "draft"
        assert [h.status for h in req.history] == ["edited"]
        assert AuditLog.query.filter_by(entity_id=rid, action="request.updated").count() == 1

    def test_record_edit_forbidden_field(self, make_actor):
        rid = _draft(make_actor)
        with pytest.raises(WorkflowError) as exc:
            record_edit(rid, {"costingNotes": "cheap"}, make_actor("sales"))
        assert exc.value.code == ROLE_NOT_PERMITTED
        assert exc.value.details["fields"] == ["costingNotes"]

    def test_record_edit_locked_after_submit(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        with pytest.raises(WorkflowError):
            record_edit(rid, {"clientName": "late change"}, make_actor("sales"))

    def test_record_edit_needs_fields(self, make_actor):
        rid = _draft(make_actor)
        with pytest.raises(ValidationError):
            record_edit(rid, {"unknown": 1}, make_actor("sales"))


# ═══════════════════════════════════════════════════════════════════════════
#  Batch
# ═══════════════════════════════════════════════════════════════════════════

class TestBatch:
    def test_partial_success(self, make_actor):
        ok = _draft(make_actor)
        done = _draft(make_actor)
        transition_request(done, "submitted", make_actor("sales"))
        transition_request(done, "gm_approved", make_actor("admin", edit_mode=True))

        result = batch_transition([ok, done, "CRA00000000"], "submitted", make_actor("sales"))
        assert [s["request_id"] for s in result["success"]] == [ok]
        assert "request" not in result["success"][0]
        codes = {e["request_id"]: e["code"] for e in result["errors"]}
        assert codes == {done: ROLE_NOT_PERMITTED, "CRA00000000": "ERR_NOT_FOUND"}


# ═══════════════════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════════════════

class TestNotifications:
    def test_outbox_row_on_submit(self, make_actor):
        rid = _draft(make_actor)
        result = transition_request(rid, "submitted", make_actor("sales"))
        assert result["notification"]["enqueued"] is True
        row = NotificationOutbox.query.filter_by(request_id=rid).one()
        assert row.event_type == "request_created"
        assert row.recipients == ["design@example.com", "admin@example.com"]

    def test_notify_failure_is_a_warning(self, make_actor):
        rid = _draft(make_actor)
        notifier = FailingNotifier()
        result = transition_request(rid, "submitted", make_actor("sales"), notifier=notifier)
        assert notifier.calls == [("request_created", rid)]
        assert result["new_status"] == "submitted"
        assert result["warnings"][0]["code"] == NOTIFY_FAILURE
        assert db.session.get(CraRequest, rid).status == "submitted"

    def test_noop_does_not_notify(self, make_actor):
        rid = _draft(make_actor)
        notifier = FailingNotifier()
        transition_request(rid, "draft", make_actor("sales"), notifier=notifier)
        assert notifier.calls == []

    def test_resend_on_draft_is_skipped(self, make_actor):
        rid = _draft(make_actor)
        result = resend_notification(rid, make_actor("admin"))
        assert result["notification"]["reason"] == "draft"
        assert NotificationOutbox.query.count() == 0

    def test_resend_enqueues_and_audits(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        result = resend_notification(rid, make_actor("admin"))
        assert result["notification"]["enqueued"] is True
        assert NotificationOutbox.query.filter_by(request_id=rid).count() == 2
        assert AuditLog.query.filter_by(entity_id=rid, action="request.notify").count() == 1

    def test_resend_unknown_event(self, make_actor):
        rid = _draft(make_actor)
        with pytest.raises(ValidationError):
            resend_notification(rid, make_actor("admin"), "request_deleted")


class TestAudit:
    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            write_audit(entity_type="request", entity_id="CRA1", action="request.archived")

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValueError):
            write_audit(entity_type="invoice", entity_id="CRA1", action="request.created")

    def test_trail_is_oldest_first(self, make_actor):
        rid = _draft(make_actor)
        transition_request(rid, "submitted", make_actor("sales"))
        resend_notification(rid, make_actor("admin"))
        actions = [log.action for log in AuditLog.trail(rid)]
        assert actions == ["request.created", "request.status_changed", "request.notify"]
        assert "request.notify" not in [log.action for log in AuditLog.trail(rid, include_notify=False)]


class TestDraftSessionKey:
    def test_retry_returns_same_draft(self, make_actor):
        sales = make_actor("sales")
        first = create_request({"clientName": "Acme", "draftSessionKey": "tab-1"}, sales)
        again = create_request({"clientName": "Acme", "draftSessionKey": "tab-1"}, sales)
        assert first["created"] is True
        assert again["created"] is False
        assert again["request_id"] == first["request_id"]
        assert CraRequest.query.count() == 1
        assert again["request"]["draftSessionKey"] == "tab-1"

    def test_key_is_scoped_per_creator(self, make_actor):
        create_request({"draftSessionKey": "tab-1"}, make_actor("sales"))
        other = create_request({"draftSessionKey": "tab-1"}, make_actor("sales", actor_id="sales-2"))
        assert other["created"] is True
        assert CraRequest.query.count() == 2

    def test_key_released_after_submit(self, make_actor):
        sales = make_actor("sales")
        first = create_request({"draftSessionKey": "tab-1"}, sales)
        transition_request(first["request_id"], "submitted", sales)
        second = create_request({"draftSessionKey": "tab-1"}, sales)
        assert second["created"] is True
        assert second["request_id"] != first["request_id"]

    def test_retry_with_submit_submits_existing_draft(self, make_actor):
        sales = make_actor("sales")
        first = create_request({"draftSessionKey": "tab-1"}, sales)
        result = create_request({"draftSessionKey": "tab-1"}, sales, submit=True)
        assert result["created"] is False
        assert result["request_id"] == first["request_id"]
        assert result["new_status"] == "submitted"

    def test_blank_key_is_ignored(self, make_actor):
        sales = make_actor("sales")
        create_request({"draftSessionKey": "  "}, sales)
        create_request({"draftSessionKey": "  "}, sales)
        assert CraRequest.query.count() == 2

    @pytest.mark.parametrize("key", [12, "k" * 65])
    def test_bad_key(self, make_actor, key):
        with pytest.raises(ValidationError):
            create_request({"draftSessionKey": key}, make_actor("sales"))
        assert CraRequest.query.count() == 0

    def test_unique_index_blocks_second_open_draft(self):
        for rid in ("CRA26101801", "CRA26101802"):
            db.session.add(CraRequest(id=rid, status="draft", created_by="sales-1", draft_session_key="tab-1"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_concurrent_retry_returns_winner(self, make_actor):
        sales = make_actor("sales")
        first = create_request({"draftSessionKey": "tab-1"}, sales)
        winner = db.session.get(CraRequest, first["request_id"])
        with patch.object(RequestRepository, "find_open_draft", side_effect=[None, winner]):
            result = create_request({"draftSessionKey": "tab-1"}, sales)
        assert result["created"] is False
        assert result["request_id"] == first["request_id"]
        assert CraRequest.query.count() == 1
