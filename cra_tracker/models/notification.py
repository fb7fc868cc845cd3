"""
CRA Request Tracker
Notification domain model.

Models:
    - NotificationOutbox: one queued email per (event, language group).
      Delivery (Microsoft 365 / SMTP) is done by an external worker that
      reads pending rows and marks them sent or failed.
"""

from datetime import datetime, timezone

from cra_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENTS = {"request_created", "request_status_changed"}
OUTBOX_STATUSES = {"pending", "sent", "failed"}


class NotificationOutbox(db.Model):
    """Queued notification email."""

    __tablename__ = "notification_outbox"
    __table_args__ = (
        db.Index("idx_outbox_status", "status"),
        db.Index("idx_outbox_request", "request_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(40), nullable=False)
    request_id = db.Column(db.String(20), nullable=False)
    request_status = db.Column(db.String(40), nullable=True)
    to_emails = db.Column(db.Text, nullable=False, comment="Comma-separated recipient list")
    subject = db.Column(db.String(300), nullable=False)
    body_text = db.Column(db.Text, default="")

    status = db.Column(db.String(20), nullable=False, default="pending")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def recipients(self) -> list[str]:
        return [e.strip() for e in (self.to_emails or "").split(",") if e.strip()]

    def mark_sent(self):
        self.status = "sent"
        self.attempts = (self.attempts or 0) + 1
        self.sent_at = datetime.now(timezone.utc)
        self.last_error = None

    def mark_failed(self, error: str):
        self.status = "failed"
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "request_id": self.request_id,
            "request_status": self.request_status,
            "to": self.recipients,
            "subject": self.subject,
            "body_text": self.body_text,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<NotificationOutbox {self.id}: {self.event_type} {self.request_id}>"
