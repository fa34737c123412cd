"""Trigger engine tables

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_COMPATIBLE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

outbound_message_status = sa.Enum("queued", "sent", "failed", name="outbound_message_status")


def upgrade() -> None:
    """Create triggers, firing ledger, and notification outbox tables."""
    op.create_table(
        "triggers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=250), nullable=False),
        sa.Column("condition", JSON_COMPATIBLE, nullable=False),
        sa.Column("perform", JSON_COMPATIBLE, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.String(length=64), nullable=True),
        sa.Column("note", sa.String(length=500), nullable=True),
        sa.Column("last_fired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index(op.f("ix_triggers_active"), "triggers", ["active"], unique=False)
    op.create_index(op.f("ix_triggers_group_id"), "triggers", ["group_id"], unique=False)

    op.create_table(
        "trigger_firings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("trigger_id", sa.Uuid(), nullable=False),
        sa.Column("record_key", sa.String(length=200), nullable=False),
        sa.Column("commit_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("outcomes", JSON_COMPATIBLE, nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["trigger_id"], ["triggers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trigger_id", "record_key", "commit_id", name="uq_trigger_firings_tuple"),
    )
    op.create_index(op.f("ix_trigger_firings_trigger_id"), "trigger_firings", ["trigger_id"], unique=False)
    op.create_index(op.f("ix_trigger_firings_commit_id"), "trigger_firings", ["commit_id"], unique=False)

    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("dedup_key", sa.String(length=300), nullable=False),
        sa.Column("trigger_id", sa.String(length=64), nullable=True),
        sa.Column("record_key", sa.String(length=200), nullable=False),
        sa.Column("sender", sa.String(length=320), nullable=True),
        sa.Column("recipients", JSON_COMPATIBLE, nullable=False),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(length=64), nullable=False),
        sa.Column("internal", sa.Boolean(), nullable=False),
        sa.Column("security", JSON_COMPATIBLE, nullable=True),
        sa.Column("mime_message", sa.LargeBinary(), nullable=True),
        sa.Column("status", outbound_message_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index(op.f("ix_outbound_messages_trigger_id"), "outbound_messages", ["trigger_id"], unique=False)
    op.create_index(op.f("ix_outbound_messages_record_key"), "outbound_messages", ["record_key"], unique=False)


def downgrade() -> None:
    """Drop the trigger engine tables."""
    op.drop_index(op.f("ix_outbound_messages_record_key"), table_name="outbound_messages")
    op.drop_index(op.f("ix_outbound_messages_trigger_id"), table_name="outbound_messages")
    op.drop_table("outbound_messages")
    outbound_message_status.drop(op.get_bind(), checkfirst=True)
    op.drop_index(op.f("ix_trigger_firings_commit_id"), table_name="trigger_firings")
    op.drop_index(op.f("ix_trigger_firings_trigger_id"), table_name="trigger_firings")
    op.drop_table("trigger_firings")
    op.drop_index(op.f("ix_triggers_group_id"), table_name="triggers")
    op.drop_index(op.f("ix_triggers_active"), table_name="triggers")
    op.drop_table("triggers")
