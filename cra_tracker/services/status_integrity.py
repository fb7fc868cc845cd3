"""
CRA Request Tracker
Status integrity diagnostics.

Audits stored data rather than gating writes:
  - the graph of status changes that have historically been legitimate
    (includes legacy edges such as gm_approval_pending → gm_rejected)
  - a snapshot of every request's current vs. last recorded status
  - a report of mismatches and repeated clarification → resubmit loops

Usage:
    from cra_tracker.services.status_integrity import generate_status_integrity_report

    report = generate_status_integrity_report(limit=50)
"""

import logging
from datetime import datetime, timezone

from cra_tracker.models.request import WORKFLOW_STATUS_ORDER, CraRequest, Status
from cra_tracker.utils.helpers import clamp_int

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 500

_S = Status
REQUEST_STATUS_TRANSITIONS = {
    _S.DRAFT: frozenset({_S.SUBMITTED}),
    _S.SUBMITTED: frozenset({_S.UNDER_REVIEW, _S.CLARIFICATION_NEEDED}),
    _S.UNDER_REVIEW: frozenset({_S.FEASIBILITY_CONFIRMED, _S.DESIGN_RESULT, _S.CLARIFICATION_NEEDED}),
    _S.CLARIFICATION_NEEDED: frozenset({_S.SUBMITTED}),
    _S.FEASIBILITY_CONFIRMED: frozenset({_S.DESIGN_RESULT, _S.IN_COSTING}),
    _S.DESIGN_RESULT: frozenset({_S.IN_COSTING, _S.COSTING_COMPLETE}),
    _S.IN_COSTING: frozenset({_S.COSTING_COMPLETE, _S.CLARIFICATION_NEEDED}),
    _S.COSTING_COMPLETE: frozenset({_S.SALES_FOLLOWUP, _S.GM_APPROVAL_PENDING, _S.CLOSED}),
    _S.SALES_FOLLOWUP: frozenset({_S.GM_APPROVAL_PENDING, _S.GM_APPROVED, _S.CLOSED}),
    _S.GM_APPROVAL_PENDING: frozenset({_S.GM_APPROVED, _S.GM_REJECTED}),
    _S.GM_APPROVED: frozenset({_S.CLOSED}),
    _S.GM_REJECTED: frozenset({_S.SALES_FOLLOWUP, _S.GM_APPROVAL_PENDING}),
    _S.CLOSED: frozenset(),
}

_KNOWN = {s.value for s in WORKFLOW_STATUS_ORDER}
_RANK = {s.value: i for i, s in enumerate(WORKFLOW_STATUS_ORDER)}


def _norm(status) -> str:
    return str(getattr(status, "value", status) or "").strip()


def get_status_rank(status) -> int:
    return _RANK.get(_norm(status), -1)


def is_known_request_status(status) -> bool:
    return _norm(status) in _KNOWN


def is_allowed_status_transition(from_status, to_status) -> bool:
    """Whether a stored history could legitimately go *from_status* → *to_status*."""
    src, dst = _norm(from_status), _norm(to_status)
    if not is_known_request_status(src) or not is_known_request_status(dst):
        return False
    if src == dst:
        return True
    return Status(dst) in REQUEST_STATUS_TRANSITIONS.get(Status(src), frozenset())


def get_allowed_status_transitions(status) -> list[str]:
    if not is_known_request_status(status):
        return []
    allowed = REQUEST_STATUS_TRANSITIONS.get(Status(_norm(status)), frozenset())
    return [s.value for s in WORKFLOW_STATUS_ORDER if s in allowed]


# ── Snapshot ─────────────────────────────────────────────────────────────────

def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _history_pairs(req) -> list[tuple]:
    pairs = [
        (h.status, h.timestamp, h.seq)
        for h in req.history
        if (h.status or "").strip() and h.timestamp is not None
    ]
    # seq breaks timestamp ties (same-second writes)
    pairs.sort(key=lambda p: (p[1].replace(tzinfo=None), p[2]))
    return pairs


def submit_after_clarification_count(statuses) -> int:
    """How many times a request was resubmitted after a clarification request."""
    clarification_seen = 0
    resubmitted = 0
    for status in statuses:
        if status == Status.CLARIFICATION_NEEDED.value:
            clarification_seen += 1
        elif status == Status.SUBMITTED.value and clarification_seen:
            resubmitted += 1
    return resubmitted


def build_snapshot_entry(req) -> dict:
    history = _history_pairs(req)
    latest = next((p for p in reversed(history) if p[0] != Status.EDITED.value), None)
    return {
        "id": req.id,
        "currentStatus": (req.status or "").strip(),
        "updatedAt": _iso(req.updated_at),
        "latestHistoryStatus": latest[0] if latest else None,
        "latestHistoryAt": _iso(latest[1]) if latest else None,
        "submitAfterClarificationCount": submit_after_clarification_count(p[0] for p in history),
    }


def generate_status_snapshot(requests=None) -> dict:
    """Current vs. last recorded status for every request, newest first."""
    if requests is None:
        requests = CraRequest.query.order_by(CraRequest.updated_at.desc()).all()
    items = [build_snapshot_entry(r) for r in requests if r.id]
    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "count": len(items),
        "items": items,
    }


def generate_status_integrity_report(limit=DEFAULT_LIMIT, requests=None) -> dict:
    """
    Requests whose stored status disagrees with their last non-"edited"
    history entry, plus requests resubmitted after clarification more
    than once. Each list is truncated to *limit* (clamped to 1..500);
    the counts are not.
    """
    snapshot = generate_status_snapshot(requests)
    max_rows = clamp_int(limit, DEFAULT_LIMIT, 1, MAX_LIMIT)
    mismatches = []
    loops = []

    for entry in snapshot["items"]:
        if entry["latestHistoryStatus"] and entry["latestHistoryStatus"] != entry["currentStatus"]:
            mismatches.append({
                "id": entry["id"],
                "currentStatus": entry["currentStatus"],
                "latestHistoryStatus": entry["latestHistoryStatus"],
                "latestHistoryAt": entry["latestHistoryAt"],
                "updatedAt": entry["updatedAt"],
            })
        if entry["submitAfterClarificationCount"] > 1:
            loops.append({
                "id": entry["id"],
                "submitAfterClarificationCount": entry["submitAfterClarificationCount"],
                "currentStatus": entry["currentStatus"],
                "updatedAt": entry["updatedAt"],
            })

    if mismatches:
        logger.warning("Status integrity: %d mismatch(es) across %d request(s)",
                       len(mismatches), snapshot["count"])

    return {
        "generatedAt": snapshot["generatedAt"],
        "totalRequests": snapshot["count"],
        "mismatchCount": len(mismatches),
        "repeatedSubmitLoopCount": len(loops),
        "mismatches": mismatches[:max_rows],
        "repeatedSubmitLoops": loops[:max_rows],
    }
