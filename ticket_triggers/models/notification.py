"""Outbox of notification messages produced by trigger actions."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, Integer, LargeBinary, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ticket_triggers.db.base_class import JSON_COMPATIBLE, Base

SUBJECT_MAX_LENGTH = 500


class OutboundMessageStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class OutboundMessageRecord(Base):
    """Rendered notification awaiting or after delivery."""

    __tablename__ = "outbound_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dedup_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    trigger_id: Mapped[str | None] = mapped_column(String(64), index=True)
    record_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    sender: Mapped[str | None] = mapped_column(String(320))
    recipients: Mapped[list] = mapped_column(JSON_COMPATIBLE, nullable=False)
    subject: Mapped[str] = mapped_column(String(SUBJECT_MAX_LENGTH), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(64), default="text/html", nullable=False)
    internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    security: Mapped[dict | None] = mapped_column(JSON_COMPATIBLE)
    mime_message: Mapped[bytes | None] = mapped_column(LargeBinary)
    status: Mapped[OutboundMessageStatus] = mapped_column(
        Enum(
            OutboundMessageStatus,
            name="outbound_message_status",
            values_callable=lambda enum_cls: [e.value for e in enum_cls],
        ),
        default=OutboundMessageStatus.QUEUED,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
