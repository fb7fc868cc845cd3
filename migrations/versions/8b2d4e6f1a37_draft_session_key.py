"""Draft session key for idempotent draft creation

Adds requests.draft_session_key plus a partial unique index so a client
retry cannot open a second draft for the same creator and session key.
Skipped when the column already exists (db.create_all() databases).

Revision ID: 8b2d4e6f1a37
Revises: 3f1c9a7e2b10
Create Date: 2026-10-18 15:40:07.503112
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '8b2d4e6f1a37'
down_revision = '3f1c9a7e2b10'
branch_labels = None
depends_on = None

_DRAFT_ONLY = "status = 'draft' AND draft_session_key IS NOT NULL"


def upgrade():
    inspector = sa_inspect(op.get_bind())
    columns = {c["name"] for c in inspector.get_columns("requests")}
    if "draft_session_key" in columns:
        return

    op.add_column(
        "requests",
        sa.Column("draft_session_key", sa.String(length=64), nullable=True,
                  comment="Client retry key for draft creation"),
    )
    op.create_index(
        "uq_requests_draft_session",
        "requests",
        ["created_by", "draft_session_key"],
        unique=True,
        sqlite_where=sa.text(_DRAFT_ONLY),
        postgresql_where=sa.text(_DRAFT_ONLY),
    )


def downgrade():
    op.drop_index("uq_requests_draft_session", table_name="requests")
    with op.batch_alter_table("requests") as batch_op:
        batch_op.drop_column("draft_session_key")
