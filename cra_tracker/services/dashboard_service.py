"""
CRA Request Tracker
Dashboard & Performance Metrics Service.

Read-side projections over a snapshot of requests:
  - Per-role KPI cards (aggregate) and the matching list filter
  - Workflow performance overview (throughput, WIP, end-to-end time)

Everything here is pure: callers load the requests, these functions count.
Inputs may be ORM rows, dicts (API shape) or RequestSnapshot objects.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cra_tracker.core.exceptions import ValidationError
from cra_tracker.models.request import (
    COSTING_PROCESSED_STATUSES,
    FINAL_STATUSES,
    IN_PROGRESS_STATUSES,
    NEEDS_ATTENTION_STATUSES,
    Role,
    Status,
    parse_role,
)

logger = logging.getLogger(__name__)

OWNERSHIP_FILTERS = ("all", "mine")
GROUP_BY_VALUES = ("day", "week", "month")

# Upper bound on series length (a little over a year of days)
MAX_INTERVALS = 400

# Compound filter keys → status set; anything else is a single status.
COMPOUND_FILTERS = {
    "in_progress": IN_PROGRESS_STATUSES,
    "completed": FINAL_STATUSES,
    "needs_attention": NEEDS_ATTENTION_STATUSES,
    "costing_processed": COSTING_PROCESSED_STATUSES,
}


@dataclass(frozen=True)
class Kpi:
    label: str
    count: int
    filter_key: str

    def to_dict(self):
        return {"label": self.label, "count": self.count, "filterKey": self.filter_key}


@dataclass(frozen=True)
class RequestSnapshot:
    id: str
    status: str
    created_by: str = ""
    history: tuple = field(default_factory=tuple)  # ((status, datetime), ...)


# (label, filter_key) per role, in card order
ROLE_KPIS = {
    Role.SALES: (
        ("Total Requests", "all"),
        ("Drafts", Status.DRAFT.value),
        ("Pending Review", "in_progress"),
        ("Clarification Needed", Status.CLARIFICATION_NEEDED.value),
    ),
    Role.DESIGN: (
        ("To Review", Status.SUBMITTED.value),
        ("Under Review", Status.UNDER_REVIEW.value),
        ("Awaiting Clarification", Status.CLARIFICATION_NEEDED.value),
        # "Approved" for design means the design result is out (ready for costing).
        ("Approved", Status.DESIGN_RESULT.value),
    ),
    Role.COSTING: (
        ("Ready for Costing", Status.DESIGN_RESULT.value),
        ("In Costing", Status.IN_COSTING.value),
        ("Completed", Status.COSTING_COMPLETE.value),
        ("Total Processed", "costing_processed"),
    ),
    Role.ADMIN: (
        ("Total Requests", "all"),
        ("In Progress", "in_progress"),
        ("Completed", "completed"),
        ("Needs Attention", "needs_attention"),
    ),
}


def _get(obj, name, default=None):
    if isinstance(obj, dict):
        camel = "".join(p if i == 0 else p.title() for i, p in enumerate(name.split("_")))
        return obj.get(name, obj.get(camel, default))
    return getattr(obj, name, default)


def _status_value(obj) -> str:
    status = _get(obj, "status", "")
    return getattr(status, "value", status) or ""


# ── KPI aggregation ──────────────────────────────────────────────────────────

def matches_filter(obj, filter_key: str) -> bool:
    if filter_key == "all":
        return True
    statuses = COMPOUND_FILTERS.get(filter_key)
    status = _status_value(obj)
    if statuses is not None:
        return status in {s.value for s in statuses}
    return status == filter_key


def filter_by_ownership(requests, ownership_filter: str = "all", actor_id=None) -> list:
    if ownership_filter not in OWNERSHIP_FILTERS:
        raise ValidationError(
            f"Unknown ownership filter: {ownership_filter}",
            {"ownership": f"expected one of {', '.join(OWNERSHIP_FILTERS)}"},
        )
    requests = list(requests or ())
    if ownership_filter == "mine":
        return [r for r in requests if str(_get(r, "created_by", "")) == str(actor_id)]
    return requests


def filter_requests(requests, filter_key: str = "all") -> list:
    """Requests matching a KPI filter key (compound key or single status)."""
    return [r for r in requests or () if matches_filter(r, filter_key)]


def aggregate(requests, role, ownership_filter: str = "all", actor_id=None) -> list[Kpi]:
    """Role-specific KPI cards for a snapshot of *requests*.

    Ownership is applied first ("mine" keeps requests created by
    *actor_id*), then each card counts its filter over that base.
    """
    base = filter_by_ownership(requests, ownership_filter, actor_id)
    try:
        role = parse_role(role)
    except ValueError:
        return []
    return [
        Kpi(label=label, count=len(filter_requests(base, key)), filter_key=key)
        for label, key in ROLE_KPIS.get(role, ())
    ]


# ── Performance overview ─────────────────────────────────────────────────────

COMPLETED_STATUSES = frozenset({s.value for s in FINAL_STATUSES})


def _as_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def snapshot(obj) -> RequestSnapshot:
    """Normalise an ORM row / dict into a RequestSnapshot with sorted history."""
    if isinstance(obj, RequestSnapshot):
        return obj
    parsed = []
    for h in _get(obj, "history", None) or ():
        status = _get(h, "status")
        ts = _as_utc(_get(h, "timestamp"))
        if isinstance(status, str) and ts is not None:
            parsed.append((status, ts))
    parsed.sort(key=lambda x: x[1])
    return RequestSnapshot(
        id=str(_get(obj, "id", "")),
        status=_status_value(obj),
        created_by=str(_get(obj, "created_by", "") or ""),
        history=tuple(parsed),
    )


def quantile(values, p: float) -> float:
    """Linear-interpolation quantile; 0 for an empty sample."""
    if not values:
        return 0
    ordered = sorted(values)
    idx = (len(ordered) - 1) * p
    lo, hi = int(idx), min(int(idx) + 1, len(ordered) - 1)
    if lo == hi or idx == lo:
        return ordered[lo]
    w = idx - lo
    return ordered[lo] * (1 - w) + ordered[hi] * w


def _first_time(history, statuses) -> datetime | None:
    for status, ts in history:
        if status in statuses:
            return ts
    return None


def _status_at(history, at: datetime):
    status = None
    for s, ts in history:
        if ts > at:
            break
        status = s
    return status


def _add_months(value: datetime, months: int) -> datetime:
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _step(value: datetime, group_by: str) -> datetime | None:
    """Start of the next interval, or None past the last representable date."""
    try:
        if group_by == "week":
            return value + timedelta(days=7)
        if group_by == "month":
            return _add_months(value, 1)
        return value + timedelta(days=1)
    except (OverflowError, ValueError):
        return None


def _interval_count(start: datetime, end: datetime, group_by: str) -> int:
    if group_by == "month":
        return (end.year - start.year) * 12 + end.month - start.month + 1
    days = 7 if group_by == "week" else 1
    return (end - start) // timedelta(days=days) + 1


def _in_range(ts, start, end) -> bool:
    return ts is not None and start <= ts <= end


def performance_overview(requests, start, end, group_by: str = "day") -> dict:
    """
    Throughput and lead-time metrics for [start, end].

    - submitted: first ``submitted`` entry falls in range
    - completed: first ``gm_approved``/``closed`` entry falls in range
    - wip: current status neither draft nor completed
    - e2e: hours from first submitted to first completed, for requests
      completed in range (median, p90, sample size)

    Series are per interval (day / week / month); the wip series is a
    snapshot of the status each request held at the interval end.

    Raises:
        ValidationError: missing or inverted range, or more than
            MAX_INTERVALS intervals.
    """
    start, end = _as_utc(start), _as_utc(end)
    if start is None or end is None or start > end:
        raise ValidationError(
            "Invalid query: expected from/to ISO dates (from <= to)",
            {"from": "required", "to": "required"},
        )
    if group_by not in GROUP_BY_VALUES:
        group_by = "day"
    if _interval_count(start, end, group_by) > MAX_INTERVALS:
        raise ValidationError(
            f"Range too wide: more than {MAX_INTERVALS} {group_by} intervals",
            {"groupBy": group_by, "max_intervals": MAX_INTERVALS},
        )

    snaps = [snapshot(r) for r in requests or ()]
    submitted_set = {Status.SUBMITTED.value}

    first_submitted = {s.id: _first_time(s.history, submitted_set) for s in snaps}
    first_completed = {s.id: _first_time(s.history, COMPLETED_STATUSES) for s in snaps}

    e2e_by_end = []
    for s in snaps:
        begin, finish = first_submitted[s.id], first_completed[s.id]
        if begin is None or finish is None:
            continue
        hours = (finish - begin).total_seconds() / 3600
        if hours >= 0:
            e2e_by_end.append((finish, hours))

    e2e_in_range = [h for ts, h in e2e_by_end if _in_range(ts, start, end)]

    overview = {
        "submittedCount": sum(1 for s in snaps if _in_range(first_submitted[s.id], start, end)),
        "completedCount": sum(1 for s in snaps if _in_range(first_completed[s.id], start, end)),
        "wipCount": sum(
            1 for s in snaps
            if s.status != Status.DRAFT.value and s.status not in COMPLETED_STATUSES
        ),
        "e2eMedian": round(quantile(e2e_in_range, 0.5), 1),
        "e2eP90": round(quantile(e2e_in_range, 0.9), 1),
        "e2eSamples": len(e2e_in_range),
    }

    starts = []
    cursor = start
    while cursor is not None and cursor <= end:
        starts.append(cursor)
        cursor = _step(cursor, group_by)

    series = {"labels": [], "submitted": [], "wip": [], "completed": [], "e2eMedian": []}
    for i, interval_start in enumerate(starts):
        if i + 1 < len(starts):
            interval_end = min(starts[i + 1] - timedelta(milliseconds=1), end)
        else:
            interval_end = end

        wip = 0
        for s in snaps:
            status_at = _status_at(s.history, interval_end)
            if status_at and status_at != Status.DRAFT.value and status_at not in COMPLETED_STATUSES:
                wip += 1

        series["labels"].append(interval_start.date().isoformat())
        series["submitted"].append(
            sum(1 for s in snaps if _in_range(first_submitted[s.id], interval_start, interval_end))
        )
        series["completed"].append(
            sum(1 for s in snaps if _in_range(first_completed[s.id], interval_start, interval_end))
        )
        series["wip"].append(wip)
        series["e2eMedian"].append(round(quantile(
            [h for ts, h in e2e_by_end if _in_range(ts, interval_start, interval_end)], 0.5,
        ), 1))

    logger.debug(
        "Performance overview %s..%s by %s over %d request(s)",
        start.isoformat(), end.isoformat(), group_by, len(snaps),
    )
    return {"overview": overview, "series": series, "groupBy": group_by}
