"""cra_request_workflow

Creates the request workflow tables:
  - requests             — CRA requests, current status + side-effect fields
  - request_history      — append-only transition log (one row per event)
  - request_counters     — per-day sequence behind CRA<yymmdd><NN> ids
  - notification_outbox  — queued notification emails
  - audit_logs           — append-only audit trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: 3f1c9a7e2b10
Revises:
Create Date: 2026-10-18 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '3f1c9a7e2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Requests ──────────────────────────────────────────────────────────
    if "requests" not in existing:
        op.create_table(
            "requests",
            sa.Column("id", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="draft"),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            sa.Column("created_by_name", sa.String(length=150), nullable=True),
            sa.Column("client_name", sa.String(length=255), nullable=True),
            sa.Column("client_contact", sa.String(length=255), nullable=True),
            sa.Column("application_vehicle", sa.String(length=255), nullable=True),
            sa.Column("country", sa.String(length=100), nullable=True),
            sa.Column("city", sa.String(length=100), nullable=True),
            sa.Column("expected_qty", sa.Integer(), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True,
                      comment="Remaining form sections (products, application, ...)"),
            sa.Column("clarification_comment", sa.Text(), nullable=True),
            sa.Column("clarification_response", sa.Text(), nullable=True),
            sa.Column("acceptance_message", sa.Text(), nullable=True),
            sa.Column("expected_design_reply_date", sa.Date(), nullable=True),
            sa.Column("design_result_comments", sa.Text(), nullable=True),
            sa.Column("design_result_attachments", sa.JSON(), nullable=True),
            sa.Column("costing_notes", sa.Text(), nullable=True),
            sa.Column("sales_feedback_comment", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_requests_status", "requests", ["status"])
        op.create_index("idx_requests_created_by", "requests", ["created_by"])
        op.create_index("idx_requests_updated_at", "requests", ["updated_at"])

    # ── Request history ───────────────────────────────────────────────────
    if "request_history" not in existing:
        op.create_table(
            "request_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.String(length=20), nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=40), nullable=False,
                      comment="Post-transition status or 'edited'"),
            sa.Column("actor_id", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("actor_role", sa.String(length=20), nullable=False),
            sa.Column("actor_name", sa.String(length=150), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "seq", name="uq_request_history_seq"),
        )
        op.create_index("idx_request_history_request", "request_history", ["request_id"])

    # ── Request id counters ───────────────────────────────────────────────
    if "request_counters" not in existing:
        op.create_table(
            "request_counters",
            sa.Column("name", sa.String(length=40), nullable=False),
            sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("name"),
        )

    # ── Notification outbox ───────────────────────────────────────────────
    if "notification_outbox" not in existing:
        op.create_table(
            "notification_outbox",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("request_id", sa.String(length=20), nullable=False),
            sa.Column("request_status", sa.String(length=40), nullable=True),
            sa.Column("to_emails", sa.Text(), nullable=False, comment="Comma-separated recipient list"),
            sa.Column("subject", sa.String(length=300), nullable=False),
            sa.Column("body_text", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_outbox_status", "notification_outbox", ["status"])
        op.create_index("idx_outbox_request", "notification_outbox", ["request_id"])

    # ── Audit log ─────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_role", sa.String(length=20), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    for table in ("audit_logs", "notification_outbox", "request_counters",
                  "request_history", "requests"):
        if table in existing:
            op.drop_table(table)
