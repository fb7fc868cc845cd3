"""
Tests — side-effect resolver.

Covers required inputs per target, optional fields, no-op handling and
notify event selection.
"""

from datetime import date

import pytest

from cra_tracker.core.exceptions import MISSING_REQUIRED_FIELD, MissingRequiredFieldError, ValidationError
from cra_tracker.models.request import Role, Status
from cra_tracker.services.side_effects import (
    REQUEST_CREATED,
    REQUEST_STATUS_CHANGED,
    TransitionInput,
    resolve,
)


def _t(current, requested, role=Role.DESIGN, **kw):
    return TransitionInput(current_status=current, requested_status=requested, actor_role=role, **kw)


# ═══════════════════════════════════════════════════════════════════════════
#  Required inputs
# ═══════════════════════════════════════════════════════════════════════════

class TestClarificationNeeded:
    def test_requires_comment(self):
        with pytest.raises(MissingRequiredFieldError) as exc:
            resolve(_t(Status.SUBMITTED, Status.CLARIFICATION_NEEDED))
        assert exc.value.code == MISSING_REQUIRED_FIELD
        assert exc.value.missing == ["comment"]

    def test_blank_comment_counts_as_missing(self):
        with pytest.raises(MissingRequiredFieldError):
            resolve(_t(Status.SUBMITTED, Status.CLARIFICATION_NEEDED, comment="   "))

    def test_with_comment(self):
        res = resolve(_t(Status.SUBMITTED, Status.CLARIFICATION_NEEDED, comment="need torque spec"))
        assert res.field_updates == {"clarification_comment": "need torque spec"}
        assert res.notify_event == REQUEST_STATUS_CHANGED


class TestFeasibilityConfirmed:
    def test_requires_both(self):
        with pytest.raises(MissingRequiredFieldError) as exc:
            resolve(_t(Status.UNDER_REVIEW, Status.FEASIBILITY_CONFIRMED))
        assert exc.value.missing == ["acceptanceMessage", "expectedDesignReplyDate"]

    def test_missing_date(self):
        with pytest.raises(MissingRequiredFieldError) as exc:
            resolve(_t(Status.UNDER_REVIEW, Status.FEASIBILITY_CONFIRMED, acceptance_message="ok"))
        assert exc.value.missing == ["expectedDesignReplyDate"]

    def test_missing_message(self):
        with pytest.raises(MissingRequiredFieldError):
            resolve(_t(Status.UNDER_REVIEW, Status.FEASIBILITY_CONFIRMED,
                       expected_design_reply_date=date(2025, 4, 1)))

    def test_with_both(self):
        res = resolve(_t(Status.UNDER_REVIEW, Status.FEASIBILITY_CONFIRMED,
                         acceptance_message="Feasible", expected_design_reply_date=date(2025, 4, 1)))
        assert res.field_updates == {
            "acceptance_message": "Feasible",
            "expected_design_reply_date": date(2025, 4, 1),
        }

    def test_admin_edit_mode_does_not_waive(self):
        with pytest.raises(MissingRequiredFieldError):
            resolve(_t(Status.CLOSED, Status.FEASIBILITY_CONFIRMED, role=Role.ADMIN, edit_mode=True))


class TestDesignResult:
    def test_requires_comments_or_attachments(self):
        with pytest.raises(MissingRequiredFieldError) as exc:
            resolve(_t(Status.FEASIBILITY_CONFIRMED, Status.DESIGN_RESULT))
        assert exc.value.missing == ["designResultComments|designResultAttachments"]

    def test_attachments_alone(self):
        res = resolve(_t(Status.FEASIBILITY_CONFIRMED, Status.DESIGN_RESULT,
                         design_result_attachments=({"name": "drawing.pdf"},)))
        assert res.field_updates == {"design_result_attachments": [{"name": "drawing.pdf"}]}

    def test_comments_alone(self):
        res = resolve(_t(Status.FEASIBILITY_CONFIRMED, Status.DESIGN_RESULT, design_result_comments="see rev B"))
        assert res.field_updates == {"design_result_comments": "see rev B"}


# ═══════════════════════════════════════════════════════════════════════════
#  Optional inputs
# ═══════════════════════════════════════════════════════════════════════════

class TestOptionalFields:
    def test_costing_notes_optional(self):
        assert resolve(_t(Status.IN_COSTING, Status.COSTING_COMPLETE, role=Role.COSTING)).field_updates == {}
        res = resolve(_t(Status.IN_COSTING, Status.COSTING_COMPLETE, role=Role.COSTING, costing_notes="EUR 12/unit"))
        assert res.field_updates == {"costing_notes": "EUR 12/unit"}

    def test_clarification_response_only_on_resubmit(self):
        res = resolve(_t(Status.CLARIFICATION_NEEDED, Status.SUBMITTED, role=Role.SALES,
                         clarification_response="120 Nm", has_prior_submission=True))
        assert res.field_updates == {"clarification_response": "120 Nm"}
        res = resolve(_t(Status.DRAFT, Status.SUBMITTED, role=Role.SALES, clarification_response="x"))
        assert res.field_updates == {}

    def test_sales_feedback(self):
        res = resolve(_t(Status.COSTING_COMPLETE, Status.SALES_FOLLOWUP, role=Role.SALES,
                         sales_feedback_comment="customer wants a discount"))
        assert res.field_updates == {"sales_feedback_comment": "customer wants a discount"}


# ═══════════════════════════════════════════════════════════════════════════
#  No-ops and notify events
# ═══════════════════════════════════════════════════════════════════════════

class TestNoop:
    def test_noop_skips_required_checks(self):
        res = resolve(_t(Status.CLARIFICATION_NEEDED, Status.CLARIFICATION_NEEDED))
        assert res.field_updates == {}
        assert res.notify_event is None

    def test_noop_still_writes_given_fields(self):
        res = resolve(_t(Status.CLARIFICATION_NEEDED, Status.CLARIFICATION_NEEDED, comment="updated question"))
        assert res.field_updates == {"clarification_comment": "updated question"}


class TestNotifyEvent:
    def test_first_submit_is_request_created(self):
        res = resolve(_t(Status.DRAFT, Status.SUBMITTED, role=Role.SALES))
        assert res.notify_event == REQUEST_CREATED

    def test_resubmit_after_reopen_is_status_changed(self):
        res = resolve(_t(Status.DRAFT, Status.SUBMITTED, role=Role.SALES, has_prior_submission=True))
        assert res.notify_event == REQUEST_STATUS_CHANGED

    def test_into_draft_never_notifies(self):
        res = resolve(_t(Status.SUBMITTED, Status.DRAFT, role=Role.ADMIN, edit_mode=True))
        assert res.notify_event is None


# ═══════════════════════════════════════════════════════════════════════════
#  Payload parsing
# ═══════════════════════════════════════════════════════════════════════════

class TestFromPayload:
    def test_camel_case_keys(self):
        t = TransitionInput.from_payload(
            "under_review", "feasibility_confirmed", "design",
            {"acceptanceMessage": "ok", "expectedDesignReplyDate": "2025-04-01"},
        )
        assert t.acceptance_message == "ok"
        assert t.expected_design_reply_date == date(2025, 4, 1)
        assert t.requested_status is Status.FEASIBILITY_CONFIRMED

    def test_snake_case_keys_and_dotted_date(self):
        t = TransitionInput.from_payload(
            "under_review", "feasibility_confirmed", "design",
            {"expected_design_reply_date": "01.04.2025"},
        )
        assert t.expected_design_reply_date == date(2025, 4, 1)

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            TransitionInput.from_payload("under_review", "feasibility_confirmed", "design",
                                         {"expectedDesignReplyDate": "next week"})

    def test_attachments_must_be_list(self):
        with pytest.raises(ValidationError):
            TransitionInput.from_payload("feasibility_confirmed", "design_result", "design",
                                         {"designResultAttachments": "drawing.pdf"})

    def test_is_noop(self):
        assert TransitionInput.from_payload("submitted", "submitted", "design", None).is_noop

    def test_text_fields_must_be_strings(self):
        with pytest.raises(ValidationError) as exc_info:
            TransitionInput.from_payload("under_review", "feasibility_confirmed", "design",
                                         {"acceptanceMessage": 7})
        assert exc_info.value.details == {"acceptanceMessage": "expected string"}

    def test_null_text_field_is_accepted(self):
        t = TransitionInput.from_payload("submitted", "clarification_needed", "design", {"comment": None})
        assert t.comment is None
