"""Trigger storage with save-time validation and the SQL-backed rule store."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_triggers.core.exceptions import RuleInvariantError, RuleValidationError, TriggerNotFoundError
from ticket_triggers.models.trigger import Trigger
from ticket_triggers.schema.trigger import TriggerCreate, TriggerRule, TriggerUpdate

logger = logging.getLogger("ticket_triggers.services.trigger_service")


def to_rule(trigger: Trigger) -> TriggerRule:
    """Parse a stored row into the engine's validated rule view."""
    return TriggerRule.from_definition(
        id=trigger.id,
        name=trigger.name,
        condition=trigger.condition,
        perform=trigger.perform,
        active=trigger.active,
        priority=trigger.priority,
        group_id=trigger.group_id,
    )


def _validate(trigger: Trigger) -> None:
    to_rule(trigger)


async def _ensure_unique_name(session: AsyncSession, name: str, *, exclude: uuid.UUID | None = None) -> None:
    stmt = select(Trigger.id).where(Trigger.name == name)
    if exclude is not None:
        stmt = stmt.where(Trigger.id != exclude)
    if (await session.execute(stmt)).first() is not None:
        raise RuleValidationError(f"Trigger name {name!r} is already taken")


async def list_triggers(session: AsyncSession, *, active_only: bool = False) -> list[Trigger]:
    """List triggers in evaluation order."""
    stmt = select(Trigger).order_by(Trigger.priority, Trigger.id)
    if active_only:
        stmt = stmt.where(Trigger.active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_trigger(session: AsyncSession, *, trigger_id: uuid.UUID) -> Trigger:
    """Fetch a single trigger by ID."""
    trigger = await session.get(Trigger, trigger_id)
    if not trigger:
        raise TriggerNotFoundError(f"Trigger {trigger_id} not found")
    return trigger


async def create_trigger(session: AsyncSession, *, payload: TriggerCreate) -> Trigger:
    """Validate and persist a new trigger."""
    trigger = Trigger(
        name=payload.name,
        condition=payload.condition,
        perform=payload.perform,
        active=payload.active,
        priority=payload.priority,
        group_id=payload.group_id,
        note=payload.note,
    )
    _validate(trigger)
    await _ensure_unique_name(session, payload.name)
    session.add(trigger)
    await session.commit()
    await session.refresh(trigger)
    logger.info("Trigger %s created (%s)", trigger.id, trigger.name)
    return trigger


async def update_trigger(session: AsyncSession, *, trigger: Trigger, payload: TriggerUpdate) -> Trigger:
    """Apply a partial update; the merged definition must still validate."""
    fields = payload.model_fields_set
    if "name" in fields and payload.name is not None:
        await _ensure_unique_name(session, payload.name, exclude=trigger.id)
        trigger.name = payload.name
    if "condition" in fields:
        trigger.condition = payload.condition or {}
    if "perform" in fields and payload.perform is not None:
        trigger.perform = payload.perform
    if "active" in fields and payload.active is not None:
        trigger.active = payload.active
    if "priority" in fields and payload.priority is not None:
        trigger.priority = payload.priority
    if "group_id" in fields:
        trigger.group_id = payload.group_id
    if "note" in fields:
        trigger.note = payload.note
    try:
        _validate(trigger)
    except RuleValidationError:
        await session.rollback()
        await session.refresh(trigger)
        raise
    await session.commit()
    await session.refresh(trigger)
    return trigger


async def delete_trigger(session: AsyncSession, *, trigger: Trigger) -> None:
    """Delete a trigger and its firing history."""
    await session.delete(trigger)
    await session.commit()


class SqlRuleStore:
    """RuleStore reading active triggers through a session factory."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self.session_factory = session_factory

    async def active_rules(self) -> list[TriggerRule]:
        async with self.session_factory() as session:
            triggers = await list_triggers(session, active_only=True)
        rules = []
        for trigger in triggers:
            try:
                rules.append(to_rule(trigger))
            except RuleValidationError as exc:
                raise RuleInvariantError(f"Stored trigger {trigger.id} is malformed: {exc.detail}") from exc
        return rules
