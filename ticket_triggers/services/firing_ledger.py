"""Persistent (trigger, record, commit) ledger guarding against re-delivered commits."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_triggers.models.firing import TriggerFiring
from ticket_triggers.models.trigger import Trigger
from ticket_triggers.services.context import _utcnow
from ticket_triggers.services.perform_executor import ExecutionResult

logger = logging.getLogger("ticket_triggers.services.firing_ledger")


class SqlFiringLedger:
    """FiringLedger backed by the unique constraint on trigger_firings."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self.session_factory = session_factory

    async def claim(self, rule_id: str, record_key: str, commit_id: str) -> bool:
        """Insert the firing row; False when the tuple was already claimed."""
        async with self.session_factory() as session:
            session.add(TriggerFiring(trigger_id=uuid.UUID(rule_id), record_key=record_key, commit_id=commit_id))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Firing %s/%s/%s already claimed", rule_id, record_key, commit_id)
                return False
        return True

    async def record(self, result: ExecutionResult) -> None:
        """Store the outcome on the firing row and the trigger's last-run fields."""
        if result.rule_id is None:
            return
        trigger_id = uuid.UUID(result.rule_id)
        async with self.session_factory() as session:
            firing = (
                await session.execute(
                    select(TriggerFiring).where(
                        TriggerFiring.trigger_id == trigger_id,
                        TriggerFiring.record_key == result.record_key,
                        TriggerFiring.commit_id == result.commit_id,
                    )
                )
            ).scalar_one_or_none()
            if firing is not None:
                firing.status = result.status
                firing.outcomes = result.outcomes
                firing.last_error = result.last_error
                firing.completed_at = _utcnow()
            trigger = await session.get(Trigger, trigger_id)
            if trigger is not None:
                trigger.last_fired_at = result.ran_at
                trigger.last_error = result.last_error
            await session.commit()
