"""
CRA Request Tracker
History Appender.

A request's history is an append-only sequence of transition events.
``append`` never touches the sequence it is given; persistence (one new
``RequestHistoryEntry`` row per event) is done by the repository.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from cra_tracker.models.request import Status


@dataclass(frozen=True)
class HistoryEvent:
    status: str
    actor_role: str
    actor_id: str
    actor_name: str = ""
    timestamp: datetime | None = None
    comment: str | None = None

    @classmethod
    def from_entry(cls, entry) -> "HistoryEvent":
        return cls(
            status=entry.status,
            actor_role=entry.actor_role,
            actor_id=entry.actor_id,
            actor_name=entry.actor_name or "",
            timestamp=entry.timestamp,
            comment=entry.comment,
        )


def build_event(status, actor, comment=None, timestamp=None) -> HistoryEvent:
    """Create the event recorded for one accepted transition or edit."""
    role = getattr(actor, "role", actor)
    return HistoryEvent(
        status=getattr(status, "value", status),
        actor_role=getattr(role, "value", role),
        actor_id=str(getattr(actor, "id", "") or ""),
        actor_name=getattr(actor, "name", "") or "",
        timestamp=timestamp or datetime.now(timezone.utc),
        comment=(comment or "").strip() or None,
    )


def append(history, event: HistoryEvent) -> tuple:
    """Return ``history + (event,)`` as a new tuple."""
    return tuple(history) + (event,)


def _status_of(entry):
    if isinstance(entry, dict):
        return entry.get("status")
    return getattr(entry, "status", None)


def filter_lifecycle_history(history) -> list:
    """Drop "edited" entries recorded before the first submission.

    Draft-time saves are noise on the lifecycle timeline; everything from
    the first "submitted" entry on is kept as-is.
    """
    out = []
    submitted_seen = False
    for entry in history or ():
        status = _status_of(entry)
        if status == Status.SUBMITTED.value:
            submitted_seen = True
        if status == Status.EDITED.value and not submitted_seen:
            continue
        out.append(entry)
    return out
