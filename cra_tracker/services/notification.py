"""
CRA Request Tracker
Notification Service.

Turns workflow events into ``NotificationOutbox`` rows. Actual delivery
(Microsoft 365 Graph / SMTP) is done elsewhere; this module only decides
who gets what and queues it.

Settings (flow map, recipient groups, subject templates, test mode) are
merged once at app start by ``build_notification_settings`` and handed to
``NotificationService``; nothing here reads module-level mutable state.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import SQLAlchemyError

from cra_tracker.models import db
from cra_tracker.models.notification import NotificationOutbox
from cra_tracker.models.request import Status, status_label

logger = logging.getLogger(__name__)

RECIPIENT_GROUPS = ("sales", "design", "costing", "admin")

DEFAULT_FLOW_MAP = MappingProxyType({
    Status.SUBMITTED.value: ("design", "admin"),
    Status.UNDER_REVIEW.value: ("design", "admin"),
    Status.CLARIFICATION_NEEDED.value: ("sales", "admin"),
    Status.FEASIBILITY_CONFIRMED.value: ("costing", "sales", "admin"),
    Status.DESIGN_RESULT.value: ("costing", "sales", "admin"),
    Status.IN_COSTING.value: ("costing", "admin"),
    Status.COSTING_COMPLETE.value: ("sales", "admin"),
    Status.SALES_FOLLOWUP.value: ("sales", "admin"),
    Status.GM_APPROVAL_PENDING.value: ("sales", "admin"),
    Status.GM_APPROVED.value: ("sales", "admin"),
    Status.GM_REJECTED.value: ("sales", "admin"),
    Status.CLOSED.value: ("sales",),
})
FALLBACK_GROUPS = ("admin",)

DEFAULT_SUBJECTS = MappingProxyType({
    "request_created": "[CRA] Request {{requestId}} submitted",
    "request_status_changed": "[CRA] Request {{requestId}} status changed to {{status}}",
})

_EMAIL_SPLIT = re.compile(r"[,;\s]+")
_TEMPLATE_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = False
    test_mode: bool = False
    test_email: str = ""
    sender: str = ""
    app_base_url: str = ""
    recipients: dict = field(default_factory=dict)
    flow_map: dict = field(default_factory=dict)
    subjects: dict = field(default_factory=lambda: dict(DEFAULT_SUBJECTS))


@dataclass(frozen=True)
class NotifyOutcome:
    enqueued: bool
    reason: str | None = None
    outbox_ids: tuple = ()
    recipients: tuple = ()
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.reason == "error"

    def to_dict(self) -> dict:
        data = {
            "enqueued": self.enqueued,
            "outbox_ids": list(self.outbox_ids),
            "recipients": list(self.recipients),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        return data


# ── Settings ─────────────────────────────────────────────────────────────────

def parse_email_list(value) -> list[str]:
    """Split and validate a recipient list.

    Accepts a string (comma/semicolon/whitespace separated) or an iterable.
    Invalid addresses are dropped with a warning; duplicates are removed
    case-insensitively, first spelling wins.
    """
    if not value:
        return []
    if isinstance(value, str):
        raw = _EMAIL_SPLIT.split(value)
    else:
        raw = [str(v) for v in value]

    out = []
    seen = set()
    for candidate in raw:
        candidate = candidate.strip()
        if not candidate:
            continue
        try:
            email = validate_email(candidate, check_deliverability=False).normalized
        except EmailNotValidError as e:
            logger.warning("Dropping invalid recipient %r: %s", candidate, e)
            continue
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(email)
    return out


def _parse_flow_map(raw) -> dict:
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring malformed CRA_NOTIFY_FLOW_MAP: %s", e)
            return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring CRA_NOTIFY_FLOW_MAP: expected an object, got %s", type(raw).__name__)
        return {}

    flow_map = {}
    for status, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        flow_map[str(status)] = tuple(g for g in RECIPIENT_GROUPS if entry.get(g))
    return flow_map


def build_notification_settings(config) -> NotificationSettings:
    """Merge defaults with app config overrides. Called once per app."""
    subjects = dict(DEFAULT_SUBJECTS)
    subjects.update(config.get("CRA_NOTIFY_SUBJECTS") or {})

    flow_map = dict(DEFAULT_FLOW_MAP)
    flow_map.update(_parse_flow_map(config.get("CRA_NOTIFY_FLOW_MAP")))

    return NotificationSettings(
        enabled=bool(config.get("CRA_NOTIFY_ENABLED")),
        test_mode=bool(config.get("CRA_NOTIFY_TEST_MODE")),
        test_email=(config.get("CRA_NOTIFY_TEST_EMAIL") or "").strip(),
        sender=(config.get("CRA_NOTIFY_SENDER") or "").strip(),
        app_base_url=(config.get("CRA_APP_BASE_URL") or "").strip().rstrip("/"),
        recipients={
            group: tuple(parse_email_list(config.get(f"CRA_RECIPIENTS_{group.upper()}")))
            for group in RECIPIENT_GROUPS
        },
        flow_map=flow_map,
        subjects=subjects,
    )


# ── Rendering ────────────────────────────────────────────────────────────────

def resolve_recipients(settings: NotificationSettings, status) -> list[str]:
    """Recipient addresses for a request that just entered *status*."""
    if settings.test_mode:
        # No explicit test address: fall back to the sender mailbox.
        return parse_email_list(settings.test_email or settings.sender)

    status = getattr(status, "value", status)
    groups = settings.flow_map.get(str(status or ""), FALLBACK_GROUPS)
    emails = []
    for group in groups:
        emails.extend(settings.recipients.get(group, ()))
    return parse_email_list(emails)


def render_template(template: str, variables: dict) -> str:
    return _TEMPLATE_VAR.sub(lambda m: str(variables.get(m.group(1), "") or ""), template or "")


def request_link(settings: NotificationSettings, request_id: str) -> str:
    if not settings.app_base_url:
        return ""
    return f"{settings.app_base_url}/requests/{request_id}"


def _template_vars(request, extra: dict) -> dict:
    previous = extra.get("previous_status") or ""
    return {
        "requestId": request.id,
        "status": status_label(request.status),
        "previousStatus": status_label(previous) if previous else "",
        "actor": extra.get("actor_name") or "",
        "clientName": request.client_name or "",
    }


def _render_body(settings, request, variables: dict, extra: dict) -> str:
    lines = [f"Request {variables['requestId']}"]
    if variables["clientName"]:
        lines.append(f"Client: {variables['clientName']}")
    lines.append(f"Status: {variables['status']}")
    if variables["previousStatus"]:
        lines.append(f"Previous status: {variables['previousStatus']}")
    if variables["actor"]:
        lines.append(f"Changed by: {variables['actor']}")
    if extra.get("comment"):
        lines.append(f"Comment: {extra['comment']}")
    link = request_link(settings, request.id)
    if link:
        lines.append("")
        lines.append(f"Open request: {link}")
    return "\n".join(lines)


# ── Service ──────────────────────────────────────────────────────────────────

class NotificationService:
    """Queues workflow notifications for one settings snapshot."""

    def __init__(self, settings: NotificationSettings | None = None):
        self.settings = settings or NotificationSettings()

    def notify(self, event_name: str, request, extra: dict | None = None) -> NotifyOutcome:
        """Enqueue one outbox row for *event_name* on *request*.

        Never raises for datastore problems: the session is rolled back and
        a ``reason="error"`` outcome is returned instead, so a status change
        that is already committed stays committed.
        """
        extra = extra or {}
        if not self.settings.enabled:
            logger.debug("Notifications disabled, skipping %s for %s", event_name, request.id)
            return NotifyOutcome(enqueued=False, reason="disabled")

        recipients = resolve_recipients(self.settings, request.status)
        if not recipients:
            logger.info(
                "No recipients for %s on %s (status=%s)", event_name, request.id, request.status,
                extra={"cra_id": request.id, "event_type": event_name},
            )
            return NotifyOutcome(enqueued=False, reason="no_recipients")

        variables = _template_vars(request, extra)
        template = self.settings.subjects.get(event_name) or DEFAULT_SUBJECTS.get(event_name, "[CRA] {{requestId}}")
        row = NotificationOutbox(
            event_type=event_name,
            request_id=request.id,
            request_status=request.status,
            to_emails=", ".join(recipients),
            subject=render_template(template, variables),
            body_text=_render_body(self.settings, request, variables, extra),
            status="pending",
        )
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(
                "Failed to enqueue %s for %s: %s", event_name, request.id, e,
                extra={"cra_id": request.id, "event_type": event_name},
            )
            return NotifyOutcome(enqueued=False, reason="error", error=str(e))

        logger.info(
            "Enqueued %s for %s to %d recipient(s)", event_name, request.id, len(recipients),
            extra={"cra_id": request.id, "event_type": event_name, "outbox_id": row.id},
        )
        return NotifyOutcome(enqueued=True, outbox_ids=(row.id,), recipients=tuple(recipients))

    # ── Outbox queries ────────────────────────────────────────────────────

    @staticmethod
    def list_pending(limit=50):
        """Pending outbox rows, oldest first."""
        return (
            NotificationOutbox.query
            .filter_by(status="pending")
            .order_by(NotificationOutbox.created_at.asc(), NotificationOutbox.id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list_for_request(request_id):
        return (
            NotificationOutbox.query
            .filter_by(request_id=request_id)
            .order_by(NotificationOutbox.id.asc())
            .all()
        )

    @staticmethod
    def mark_sent(outbox_id):
        row = db.session.get(NotificationOutbox, outbox_id)
        if row:
            row.mark_sent()
            db.session.commit()
        return row

    @staticmethod
    def mark_failed(outbox_id, error):
        row = db.session.get(NotificationOutbox, outbox_id)
        if row:
            row.mark_failed(str(error))
            db.session.commit()
        return row
