"""
CRA Request Tracker
Transition Authorizer.

Every role/status gate of the workflow lives in ``ROLE_RULES``. Nothing
else in the code base decides who may move a request where.

Evaluation order for ``authorize``:
    1. admin in edit mode            → allowed (only way out of a FINAL status)
    2. no rule for (role, current)   → ROLE_NOT_PERMITTED
    3. requested == current          → allowed (no-op, recorded as "edited")
    4. requested in the rule targets → allowed
    5. another role could do it      → ROLE_NOT_PERMITTED, else INVALID_TRANSITION

Usage:
    from cra_tracker.services.transition_rules import authorize

    decision = authorize("submitted", "design", False, "clarification_needed")
    if not decision.allowed:
        ...  # decision.reason is ROLE_NOT_PERMITTED | INVALID_TRANSITION
"""

from dataclasses import dataclass

from cra_tracker.core.exceptions import INVALID_TRANSITION, ROLE_NOT_PERMITTED
from cra_tracker.models.request import (
    COSTING_PROCESSED_STATUSES,
    WORKFLOW_STATUS_ORDER,
    CraRequest,
    Role,
    Status,
    parse_role,
    parse_status,
)


@dataclass(frozen=True)
class Rule:
    role: Role
    from_statuses: frozenset
    targets: frozenset
    editable_fields: frozenset = frozenset()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def __bool__(self):
        return self.allowed


ALLOWED = Decision(True)


_SALES_CONTENT = frozenset(CraRequest.CONTENT_FIELDS) | {"clarification_response"}
_SALES_FOLLOWUP = frozenset({"sales_feedback_comment"})
_DESIGN_FIELDS = frozenset({
    "acceptance_message",
    "expected_design_reply_date",
    "design_result_comments",
    "design_result_attachments",
})

ROLE_RULES = (
    Rule(
        role=Role.SALES,
        from_statuses=frozenset({Status.DRAFT, Status.CLARIFICATION_NEEDED}),
        targets=frozenset({Status.SUBMITTED}),
        editable_fields=_SALES_CONTENT,
    ),
    Rule(
        role=Role.SALES,
        from_statuses=COSTING_PROCESSED_STATUSES - {Status.GM_APPROVED},
        targets=frozenset({Status.SALES_FOLLOWUP, Status.GM_APPROVAL_PENDING}),
        editable_fields=_SALES_FOLLOWUP,
    ),
    Rule(
        role=Role.DESIGN,
        from_statuses=frozenset({
            Status.SUBMITTED,
            Status.UNDER_REVIEW,
            Status.FEASIBILITY_CONFIRMED,
            Status.DESIGN_RESULT,
        }),
        targets=frozenset({
            Status.UNDER_REVIEW,
            Status.CLARIFICATION_NEEDED,
            Status.FEASIBILITY_CONFIRMED,
            Status.DESIGN_RESULT,
        }),
        editable_fields=_DESIGN_FIELDS,
    ),
    Rule(
        role=Role.COSTING,
        from_statuses=frozenset({Status.FEASIBILITY_CONFIRMED, Status.DESIGN_RESULT, Status.IN_COSTING}),
        targets=frozenset({Status.IN_COSTING, Status.COSTING_COMPLETE}),
    ),
)

# Statuses a transition may write. "edited" is a history marker and
# "gm_rejected" only survives on legacy rows.
WRITABLE_STATUSES = frozenset(Status) - {Status.EDITED, Status.GM_REJECTED}

# Design may only touch the result fields once feasibility is settled.
_DESIGN_EDIT_STATUSES = frozenset({Status.FEASIBILITY_CONFIRMED, Status.DESIGN_RESULT})


def _coerce_status(value):
    try:
        return parse_status(value)
    except ValueError:
        return None


def _coerce_role(value):
    try:
        return parse_role(value)
    except ValueError:
        return None


def find_rule(current_status, actor_role) -> Rule | None:
    """Return the rule that lets *actor_role* act on *current_status*, if any."""
    current = _coerce_status(current_status)
    role = _coerce_role(actor_role)
    if current is None or role is None:
        return None
    for rule in ROLE_RULES:
        if rule.role == role and current in rule.from_statuses:
            return rule
    return None


def _reachable_by_any_role(current: Status, requested: Status) -> bool:
    return any(
        current in rule.from_statuses and requested in rule.targets
        for rule in ROLE_RULES
    )


def _is_edit_mode(actor_role, is_admin_edit_mode) -> bool:
    return bool(is_admin_edit_mode) and _coerce_role(actor_role) == Role.ADMIN


def authorize(current_status, actor_role, is_admin_edit_mode, requested_status) -> Decision:
    """Decide whether *actor_role* may move a request from *current_status*
    to *requested_status*. Pure; accepts enum members or wire strings."""
    current = _coerce_status(current_status)
    requested = _coerce_status(requested_status)

    if _is_edit_mode(actor_role, is_admin_edit_mode):
        if requested is None:
            return Decision(False, INVALID_TRANSITION)
        if requested != current and requested not in WRITABLE_STATUSES:
            return Decision(False, INVALID_TRANSITION)
        return ALLOWED

    rule = find_rule(current, actor_role)
    if rule is None:
        return Decision(False, ROLE_NOT_PERMITTED)

    if requested is None:
        return Decision(False, INVALID_TRANSITION)

    if requested == current:
        return ALLOWED

    if requested in rule.targets:
        return ALLOWED

    if _reachable_by_any_role(current, requested):
        return Decision(False, ROLE_NOT_PERMITTED)
    return Decision(False, INVALID_TRANSITION)


def available_transitions(current_status, actor_role, is_admin_edit_mode=False) -> list[str]:
    """Targets the actor could request right now, in workflow order (no-op excluded)."""
    current = _coerce_status(current_status)
    if _is_edit_mode(actor_role, is_admin_edit_mode):
        targets = WRITABLE_STATUSES
    else:
        rule = find_rule(current, actor_role)
        targets = rule.targets if rule else frozenset()
    return [s.value for s in WORKFLOW_STATUS_ORDER if s in targets and s != current]


def editable_fields(current_status, actor_role, is_admin_edit_mode=False) -> frozenset:
    """Column names the actor may write through a plain edit at *current_status*."""
    if _is_edit_mode(actor_role, is_admin_edit_mode):
        return frozenset(CraRequest.CONTENT_FIELDS) | frozenset(CraRequest.SIDE_EFFECT_FIELDS)
    rule = find_rule(current_status, actor_role)
    if rule is None:
        return frozenset()
    if rule.role == Role.DESIGN and _coerce_status(current_status) not in _DESIGN_EDIT_STATUSES:
        return frozenset()
    return rule.editable_fields


def can_edit_content(current_status, actor_role, is_admin_edit_mode=False) -> bool:
    return bool(editable_fields(current_status, actor_role, is_admin_edit_mode))
