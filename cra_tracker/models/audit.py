"""
CRA Request Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for request events.
"""

import json
from datetime import datetime, timezone

from cra_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"request", "notification"}

AUDIT_ACTIONS = {
    "request.created",
    "request.updated",
    "request.status_changed",
    "request.deleted",
    "request.notify",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every request event.

    One row per action. ``diff_json`` carries the old→new snapshot
    (``{"status": {"old": ..., "new": ...}}``) or event metadata.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, comment="request | notification")
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(60), nullable=False, comment="request.status_changed | request.created | …")
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_role = db.Column(db.String(20), nullable=True)

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def trail(cls, request_id, *, include_notify=True):
        """Audit rows for one request, oldest first."""
        q = cls.query.filter_by(entity_type="request", entity_id=str(request_id))
        if not include_notify:
            q = q.filter(cls.action != "request.notify")
        return q.order_by(cls.timestamp.asc(), cls.id.asc()).all()

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    actor_role: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row and flush; the caller owns the commit.

    Raises:
        ValueError: unknown entity type or action.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        actor_role=actor_role,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
