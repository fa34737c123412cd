"""Worker job entrypoint for outbox delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ticket_triggers.core.exceptions import DeliveryError
from ticket_triggers.db.session import async_session
from ticket_triggers.services.notification_outbox import deliver_message

logger = logging.getLogger("ticket_triggers.jobs.notifications")


def deliver_message_job(*, message_id: str) -> dict[str, Any]:
    """Deliver one outbox message; raise on failure so RQ retries the job."""
    result = asyncio.run(deliver_message(async_session, message_id))
    logger.info("Delivery attempt complete for %s (%s)", message_id, result.get("status"))
    if result.get("status") == "failed":
        raise DeliveryError(result.get("error") or "delivery failed")
    return result
