"""
CRA Request Tracker
Side-Effect Resolver.

Given an authorized transition, works out which auxiliary request fields
are written together with the status and which notification event (if
any) should fire. Pure: no session access, no clock.

Required inputs per target:
    clarification_needed   comment                                → clarification_comment
    feasibility_confirmed  acceptance_message + expected date     → both fields
    design_result          design_result_comments or attachments  → the given fields

Optional inputs (written only when given):
    submitted (from clarification_needed)  clarification_response
    in_costing / costing_complete          costing_notes
    sales_followup / gm_approval_pending   sales_feedback_comment

Admin edit mode does not waive required inputs.
"""

from dataclasses import dataclass, field
from datetime import date

from cra_tracker.core.exceptions import MissingRequiredFieldError, ValidationError
from cra_tracker.models.request import Role, Status, parse_role, parse_status
from cra_tracker.utils.helpers import parse_date_input

REQUEST_CREATED = "request_created"
REQUEST_STATUS_CHANGED = "request_status_changed"

# Payload key (API camelCase) → TransitionInput attribute
PAYLOAD_KEYS = {
    "comment": "comment",
    "acceptanceMessage": "acceptance_message",
    "expectedDesignReplyDate": "expected_design_reply_date",
    "designResultComments": "design_result_comments",
    "designResultAttachments": "design_result_attachments",
    "costingNotes": "costing_notes",
    "clarificationResponse": "clarification_response",
    "salesFeedbackComment": "sales_feedback_comment",
}

TEXT_ATTRS = frozenset(PAYLOAD_KEYS.values()) - {"expected_design_reply_date", "design_result_attachments"}


@dataclass(frozen=True)
class TransitionInput:
    """Everything the resolver needs to know about one transition."""

    current_status: Status
    requested_status: Status
    actor_role: Role
    edit_mode: bool = False
    has_prior_submission: bool = False

    comment: str | None = None
    acceptance_message: str | None = None
    expected_design_reply_date: date | None = None
    design_result_comments: str | None = None
    design_result_attachments: tuple | None = None
    costing_notes: str | None = None
    clarification_response: str | None = None
    sales_feedback_comment: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.current_status == self.requested_status

    @classmethod
    def from_payload(cls, current_status, requested_status, actor_role, payload: dict | None,
                     *, edit_mode=False, has_prior_submission=False) -> "TransitionInput":
        """Build from an API body; accepts camelCase or snake_case keys.

        Raises:
            ValidationError: bad date, attachment list or non-text comment.
        """
        payload = payload or {}
        values = {}
        for key, attr in PAYLOAD_KEYS.items():
            if key in payload:
                values[attr] = payload[key]
            elif attr in payload:
                values[attr] = payload[attr]

        for attr, value in values.items():
            if attr in TEXT_ATTRS:
                check_text(attr, value)

        if "expected_design_reply_date" in values:
            try:
                values["expected_design_reply_date"] = parse_date_input(values["expected_design_reply_date"])
            except ValueError as e:
                raise ValidationError(str(e), {"expectedDesignReplyDate": "invalid date"}) from e

        attachments = values.get("design_result_attachments")
        if attachments is not None:
            if not isinstance(attachments, (list, tuple)):
                raise ValidationError(
                    "designResultAttachments must be a list",
                    {"designResultAttachments": "expected list"},
                )
            values["design_result_attachments"] = tuple(attachments)

        return cls(
            current_status=parse_status(current_status),
            requested_status=parse_status(requested_status),
            actor_role=parse_role(actor_role),
            edit_mode=bool(edit_mode),
            has_prior_submission=bool(has_prior_submission),
            **values,
        )


@dataclass(frozen=True)
class Resolution:
    field_updates: dict = field(default_factory=dict)
    notify_event: str | None = None


def check_text(name: str, value):
    """Free-text inputs must be JSON strings (or null)."""
    if value is not None and not isinstance(value, str):
        key = next((k for k, v in PAYLOAD_KEYS.items() if v == name), name)
        raise ValidationError(f"{key} must be a string", {key: "expected string"})


def _text(value) -> str | None:
    """Stripped text, or None when blank."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _notify_event(t: TransitionInput) -> str | None:
    if t.is_noop or t.requested_status == Status.DRAFT:
        return None
    if (
        t.current_status == Status.DRAFT
        and t.requested_status == Status.SUBMITTED
        and not t.has_prior_submission
    ):
        return REQUEST_CREATED
    return REQUEST_STATUS_CHANGED


def resolve(t: TransitionInput) -> Resolution:
    """Compute field updates and notify event for *t*.

    No-op writes (requested == current) skip required-field checks but still
    carry any optional field the caller sent for that status.

    Raises:
        MissingRequiredFieldError: a required input is missing or blank.
    """
    target = t.requested_status
    updates = {}
    missing = []

    if target == Status.CLARIFICATION_NEEDED:
        comment = _text(t.comment)
        if comment:
            updates["clarification_comment"] = comment
        elif not t.is_noop:
            missing.append("comment")

    elif target == Status.FEASIBILITY_CONFIRMED:
        message = _text(t.acceptance_message)
        reply_date = t.expected_design_reply_date
        if message:
            updates["acceptance_message"] = message
        elif not t.is_noop:
            missing.append("acceptanceMessage")
        if reply_date:
            updates["expected_design_reply_date"] = reply_date
        elif not t.is_noop:
            missing.append("expectedDesignReplyDate")

    elif target == Status.DESIGN_RESULT:
        comments = _text(t.design_result_comments)
        attachments = list(t.design_result_attachments or ())
        if comments:
            updates["design_result_comments"] = comments
        if attachments:
            updates["design_result_attachments"] = attachments
        if not updates and not t.is_noop:
            missing.append("designResultComments|designResultAttachments")

    elif target in (Status.IN_COSTING, Status.COSTING_COMPLETE):
        notes = _text(t.costing_notes)
        if notes:
            updates["costing_notes"] = notes

    elif target == Status.SUBMITTED:
        response = _text(t.clarification_response)
        if response and t.current_status == Status.CLARIFICATION_NEEDED:
            updates["clarification_response"] = response

    elif target in (Status.SALES_FOLLOWUP, Status.GM_APPROVAL_PENDING):
        feedback = _text(t.sales_feedback_comment)
        if feedback:
            updates["sales_feedback_comment"] = feedback

    if missing:
        raise MissingRequiredFieldError(target.value, missing)

    return Resolution(field_updates=updates, notify_event=_notify_event(t))
