"""Ledger of trigger firings, one row per (trigger, record, commit)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ticket_triggers.db.base_class import JSON_COMPATIBLE, Base


class TriggerFiring(Base):
    """Claim that a trigger fired for a record within one commit."""

    __tablename__ = "trigger_firings"
    __table_args__ = (
        UniqueConstraint("trigger_id", "record_key", "commit_id", name="uq_trigger_firings_tuple"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trigger_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("triggers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    record_key: Mapped[str] = mapped_column(String(200), nullable=False)
    commit_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default="claimed", nullable=False)
    outcomes: Mapped[list | None] = mapped_column(JSON_COMPATIBLE)
    last_error: Mapped[str | None] = mapped_column(String(500))
    fired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    trigger = relationship("Trigger", back_populates="firings")
