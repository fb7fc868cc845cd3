"""
CRA Request Tracker
Request domain model.

Status registry (pure data):
    - Status / Role enumerations (wire-format strings)
    - FINAL / NEEDS_ATTENTION / IN_PROGRESS / COSTING_PROCESSED sets
    - is_final, is_in_progress, is_costing_processed, needs_attention

Models:
    - CraRequest: the workflow subject, current status + side-effect fields
    - RequestHistoryEntry: immutable, append-only transition log
    - RequestCounter: per-day sequence backing CRA<yymmdd><NN> ids
"""

from datetime import datetime, timezone
from enum import Enum

from cra_tracker.models import db


# ── Status registry ──────────────────────────────────────────────────────────

class Status(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    EDITED = "edited"
    UNDER_REVIEW = "under_review"
    FEASIBILITY_CONFIRMED = "feasibility_confirmed"
    CLARIFICATION_NEEDED = "clarification_needed"
    DESIGN_RESULT = "design_result"
    IN_COSTING = "in_costing"
    COSTING_COMPLETE = "costing_complete"
    SALES_FOLLOWUP = "sales_followup"
    GM_APPROVAL_PENDING = "gm_approval_pending"
    GM_APPROVED = "gm_approved"
    GM_REJECTED = "gm_rejected"        # legacy, readable but never written
    CLOSED = "closed"


class Role(str, Enum):
    SALES = "sales"
    DESIGN = "design"
    COSTING = "costing"
    ADMIN = "admin"


# Completed means approved or closed. A GM rejection returns to sales follow-up.
FINAL_STATUSES = frozenset({Status.GM_APPROVED, Status.CLOSED})

NEEDS_ATTENTION_STATUSES = frozenset({Status.CLARIFICATION_NEEDED})

IN_PROGRESS_STATUSES = frozenset({
    Status.SUBMITTED,
    Status.EDITED,
    Status.UNDER_REVIEW,
    Status.FEASIBILITY_CONFIRMED,
    Status.DESIGN_RESULT,
    Status.IN_COSTING,
    Status.COSTING_COMPLETE,
    Status.SALES_FOLLOWUP,
    Status.GM_APPROVAL_PENDING,
    Status.GM_REJECTED,
})

# "Processed" means costing is complete (or later), not just started.
COSTING_PROCESSED_STATUSES = frozenset({
    Status.COSTING_COMPLETE,
    Status.SALES_FOLLOWUP,
    Status.GM_APPROVAL_PENDING,
    Status.GM_APPROVED,
    Status.GM_REJECTED,
})

WORKFLOW_STATUS_ORDER = (
    Status.DRAFT,
    Status.SUBMITTED,
    Status.UNDER_REVIEW,
    Status.CLARIFICATION_NEEDED,
    Status.FEASIBILITY_CONFIRMED,
    Status.DESIGN_RESULT,
    Status.IN_COSTING,
    Status.COSTING_COMPLETE,
    Status.SALES_FOLLOWUP,
    Status.GM_APPROVAL_PENDING,
    Status.GM_REJECTED,
    Status.GM_APPROVED,
    Status.CLOSED,
)

STATUS_LABELS = {
    Status.DRAFT: "Draft",
    Status.SUBMITTED: "Submitted",
    Status.EDITED: "Edited",
    Status.UNDER_REVIEW: "Under Review",
    Status.FEASIBILITY_CONFIRMED: "Feasibility Confirmed",
    Status.CLARIFICATION_NEEDED: "Clarification Needed",
    Status.DESIGN_RESULT: "Design Result",
    Status.IN_COSTING: "In Costing",
    Status.COSTING_COMPLETE: "Costing Complete",
    Status.SALES_FOLLOWUP: "Sales Follow-up",
    Status.GM_APPROVAL_PENDING: "GM Approval Pending",
    Status.GM_APPROVED: "Approved",
    Status.GM_REJECTED: "Rejected by GM",
    Status.CLOSED: "Closed",
}


def parse_status(value) -> Status:
    """Coerce a wire string (or Status) into a Status.

    Raises:
        ValueError: for strings outside the closed enumeration.
    """
    if isinstance(value, Status):
        return value
    try:
        return Status(str(value or "").strip())
    except ValueError:
        raise ValueError(f"Unknown status: {value!r}") from None


def parse_role(value) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value or "").strip().lower())
    except ValueError:
        raise ValueError(f"Unknown role: {value!r}") from None


def is_final(status) -> bool:
    return parse_status(status) in FINAL_STATUSES


def is_in_progress(status) -> bool:
    return parse_status(status) in IN_PROGRESS_STATUSES


def is_costing_processed(status) -> bool:
    return parse_status(status) in COSTING_PROCESSED_STATUSES


def needs_attention(status) -> bool:
    return parse_status(status) in NEEDS_ATTENTION_STATUSES


def status_label(status) -> str:
    """Human label for a status; unknown strings are title-cased."""
    try:
        return STATUS_LABELS[parse_status(status)]
    except ValueError:
        return " ".join(str(status or "").replace("_", " ").split()).title()


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Models ───────────────────────────────────────────────────────────────────

class CraRequest(db.Model):
    """
    A customer request moving through the sales / design / costing workflow.

    ``status`` is only written through request_lifecycle; the side-effect
    columns below it are only written by the side-effect resolver.
    """

    __tablename__ = "requests"
    __table_args__ = (
        db.Index("idx_requests_status", "status"),
        db.Index("idx_requests_created_by", "created_by"),
        db.Index("idx_requests_updated_at", "updated_at"),
        # One open draft per creator and client session key
        db.Index(
            "uq_requests_draft_session", "created_by", "draft_session_key",
            unique=True,
            sqlite_where=db.text("status = 'draft' AND draft_session_key IS NOT NULL"),
            postgresql_where=db.text("status = 'draft' AND draft_session_key IS NOT NULL"),
        ),
    )

    id = db.Column(db.String(20), primary_key=True)
    status = db.Column(db.String(40), nullable=False, default=Status.DRAFT.value)

    created_by = db.Column(db.String(64), nullable=False)
    created_by_name = db.Column(db.String(150), default="")
    draft_session_key = db.Column(db.String(64), nullable=True, comment="Client retry key for draft creation")

    # General information
    client_name = db.Column(db.String(255), default="")
    client_contact = db.Column(db.String(255), default="")
    application_vehicle = db.Column(db.String(255), default="")
    country = db.Column(db.String(100), default="")
    city = db.Column(db.String(100), default="")
    expected_qty = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.JSON, default=dict, comment="Remaining form sections (products, application, ...)")

    # Side-effect fields
    clarification_comment = db.Column(db.Text, nullable=True)
    clarification_response = db.Column(db.Text, nullable=True)
    acceptance_message = db.Column(db.Text, nullable=True)
    expected_design_reply_date = db.Column(db.Date, nullable=True)
    design_result_comments = db.Column(db.Text, nullable=True)
    design_result_attachments = db.Column(db.JSON, nullable=True)
    costing_notes = db.Column(db.Text, nullable=True)
    sales_feedback_comment = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    history = db.relationship(
        "RequestHistoryEntry",
        back_populates="request",
        order_by="RequestHistoryEntry.seq",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # Column name → API (camelCase) name for every writable content field.
    CONTENT_FIELDS = {
        "client_name": "clientName",
        "client_contact": "clientContact",
        "application_vehicle": "applicationVehicle",
        "country": "country",
        "city": "city",
        "expected_qty": "expectedQty",
        "payload": "payload",
    }

    SIDE_EFFECT_FIELDS = {
        "clarification_comment": "clarificationComment",
        "clarification_response": "clarificationResponse",
        "acceptance_message": "acceptanceMessage",
        "expected_design_reply_date": "expectedDesignReplyDate",
        "design_result_comments": "designResultComments",
        "design_result_attachments": "designResultAttachments",
        "costing_notes": "costingNotes",
        "sales_feedback_comment": "salesFeedbackComment",
    }

    @property
    def status_enum(self) -> Status:
        return parse_status(self.status)

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "clientName": self.client_name or "",
            "applicationVehicle": self.application_vehicle or "",
            "country": self.country or "",
            "createdBy": self.created_by,
            "createdByName": self.created_by_name or "",
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def to_dict(self, include_history=True) -> dict:
        data = self.to_summary()
        data["clientContact"] = self.client_contact or ""
        data["city"] = self.city or ""
        data["expectedQty"] = self.expected_qty
        data["payload"] = self.payload or {}
        if self.draft_session_key:
            data["draftSessionKey"] = self.draft_session_key
        for column, key in self.SIDE_EFFECT_FIELDS.items():
            value = getattr(self, column)
            if column == "expected_design_reply_date":
                value = _iso(value)
            data[key] = value
        if include_history:
            data["history"] = [h.to_dict() for h in self.history]
        return data

    def __repr__(self):
        return f"<CraRequest {self.id}: {self.status}>"


class RequestHistoryEntry(db.Model):
    """
    Immutable transition log.

    One row per accepted transition, never updated or deleted.
    ``seq`` is the 0-based position within the request's history.
    """

    __tablename__ = "request_history"
    __table_args__ = (
        db.UniqueConstraint("request_id", "seq", name="uq_request_history_seq"),
        db.Index("idx_request_history_request", "request_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.String(20), db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False,
    )
    seq = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(40), nullable=False, comment="Post-transition status or 'edited'")
    actor_id = db.Column(db.String(64), nullable=False, default="")
    actor_role = db.Column(db.String(20), nullable=False)
    actor_name = db.Column(db.String(150), default="")
    comment = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    request = db.relationship("CraRequest", back_populates="history")

    def to_dict(self) -> dict:
        data = {
            "id": f"h-{self.request_id}-{self.seq}",
            "status": self.status,
            "timestamp": _iso(self.timestamp),
            "userId": self.actor_id,
            "userName": self.actor_name or "",
            "actorRole": self.actor_role,
        }
        if self.comment:
            data["comment"] = self.comment
        return data

    def __repr__(self):
        return f"<RequestHistoryEntry {self.request_id}#{self.seq}: {self.status}>"


class RequestCounter(db.Model):
    """Named monotonic counters (one per calendar day for request ids)."""

    __tablename__ = "request_counters"

    name = db.Column(db.String(40), primary_key=True)
    value = db.Column(db.Integer, nullable=False, default=0)
