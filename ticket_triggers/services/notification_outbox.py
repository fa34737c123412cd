"""Outbound message capability backed by a deduplicating outbox table.

Invariants:
- One row per dedup key; resending a key returns the existing receipt.
- Delivery is fire-and-forget relative to the commit; retries belong to the queue.
- Signed or encrypted messages are stored in wire form and sent verbatim.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import DeliveryError
from ticket_triggers.models.notification import SUBJECT_MAX_LENGTH, OutboundMessageRecord, OutboundMessageStatus
from ticket_triggers.services.context import _utcnow
from ticket_triggers.services.interfaces import DeliveryReceipt, OutboundMessage
from ticket_triggers.services.mail_transport import MailEnvelope, MailTransport, build_email, get_transport
from ticket_triggers.services.secure_mailing import SecurityBackend, security_succeeded
from ticket_triggers.services.task_queue import TaskQueue, task_queue
from ticket_triggers.utils.redaction import redact_secrets

logger = logging.getLogger("ticket_triggers.services.notification_outbox")


def _truncate_error(value: str | None, limit: int = 500) -> str | None:
    if not value:
        return None
    return value[:limit]


async def _find_by_key(session: AsyncSession, dedup_key: str) -> OutboundMessageRecord | None:
    result = await session.execute(
        select(OutboundMessageRecord).where(OutboundMessageRecord.dedup_key == dedup_key)
    )
    return result.scalar_one_or_none()


class OutboxMessenger:
    """OutboundMessenger that persists messages and hands delivery to the task queue."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        queue: TaskQueue | None = None,
        transport: MailTransport | None = None,
        security_backend: SecurityBackend | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue or task_queue
        self.transport = transport
        self.security_backend = security_backend

    async def _secure(self, message_id: uuid.UUID, message: OutboundMessage, subject: str) -> bytes | None:
        """Produce the signed/encrypted wire form the recorded preferences promise."""
        security = message.security
        if not (security_succeeded(security, "sign") or security_succeeded(security, "encryption")):
            return None
        if self.security_backend is None:
            raise DeliveryError("security_backend_unavailable")
        email = build_email(
            MailEnvelope(
                message_id=str(message_id),
                sender=message.sender,
                recipients=list(message.to),
                subject=subject,
                body=message.body,
                content_type=message.content_type,
            )
        )
        return await self.security_backend.outgoing(email, security)

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        async with self.session_factory() as session:
            existing = await _find_by_key(session, message.dedup_key)
            if existing is not None:
                logger.info("Outbox already holds %s, not sending again", message.dedup_key)
                return DeliveryReceipt(message_id=str(existing.id), dedup_key=message.dedup_key, duplicate=True)
            row_id = uuid.uuid4()
            subject = message.subject[:SUBJECT_MAX_LENGTH]
            row = OutboundMessageRecord(
                id=row_id,
                dedup_key=message.dedup_key,
                trigger_id=message.rule_id,
                record_key=message.record.key,
                sender=message.sender,
                recipients=list(message.to),
                subject=subject,
                body=message.body,
                content_type=message.content_type,
                internal=message.internal,
                security=message.security or None,
                mime_message=await self._secure(row_id, message, subject),
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await _find_by_key(session, message.dedup_key)
                if existing is None:
                    raise
                return DeliveryReceipt(message_id=str(existing.id), dedup_key=message.dedup_key, duplicate=True)
            message_id = str(row.id)

        from ticket_triggers.jobs.notifications import deliver_message_job

        await self.queue.enqueue(
            deliver_message_job,
            fallback=lambda: deliver_message(self.session_factory, message_id, transport=self.transport),
            queue_name="notifications",
            timeout_seconds=settings.delivery_timeout_seconds,
            description=f"notification:{message.dedup_key}",
            message_id=message_id,
        )
        return DeliveryReceipt(message_id=message_id, dedup_key=message.dedup_key)


async def deliver_message(
    session_factory: Callable[[], AsyncSession],
    message_id: str,
    *,
    transport: MailTransport | None = None,
) -> dict[str, Any]:
    """Hand one outbox row to the mail transport and record the attempt."""
    async with session_factory() as session:
        row = await session.get(OutboundMessageRecord, uuid.UUID(message_id))
        if row is None:
            logger.warning("Outbox message %s not found", message_id)
            return {"status": "missing", "message_id": message_id}
        if row.status == OutboundMessageStatus.SENT:
            return {"status": row.status.value, "message_id": message_id}

        row.attempts += 1
        envelope = MailEnvelope(
            message_id=message_id,
            sender=row.sender,
            recipients=list(row.recipients or []),
            subject=row.subject,
            body=row.body,
            content_type=row.content_type,
            raw=row.mime_message,
        )
        try:
            active = transport or get_transport()
            await asyncio.wait_for(
                asyncio.to_thread(active.send, envelope), timeout=settings.delivery_timeout_seconds
            )
        except Exception as exc:
            row.status = OutboundMessageStatus.FAILED
            row.last_error = _truncate_error(redact_secrets(str(exc) or type(exc).__name__))
            logger.warning("Delivery of %s failed (attempt %s): %s", message_id, row.attempts, row.last_error)
        else:
            row.status = OutboundMessageStatus.SENT
            row.sent_at = _utcnow()
            row.last_error = None
        await session.commit()
        return {
            "status": row.status.value,
            "message_id": message_id,
            "attempts": row.attempts,
            "error": row.last_error,
        }
