"""Manual perform runs (macros) applied to a single record."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from ticket_triggers.schema.trigger import parse_perform
from ticket_triggers.services.context import ChangeKind, EvaluationContext, RecordChange, RecordRef, UserRef, _utcnow
from ticket_triggers.services.perform_executor import ExecutionResult, PerformExecutor
from ticket_triggers.services.transaction import new_commit_id

logger = logging.getLogger("ticket_triggers.services.macro_service")


async def run_macro(
    executor: PerformExecutor,
    perform: Mapping[str, Any],
    record: RecordRef,
    actor: UserRef | None = None,
    *,
    commit_id: str | None = None,
    now: datetime | None = None,
) -> ExecutionResult:
    """Validate a raw perform mapping and apply it without a condition.

    Raises RuleValidationError when the mapping is invalid.
    """
    actions = parse_perform(perform)
    ctx = EvaluationContext(
        commit_id=commit_id or new_commit_id(),
        change=RecordChange(record=record, kind=ChangeKind.UPDATE),
        actor=actor,
        now=now or _utcnow(),
    )
    result = await executor.apply(actions, record, ctx)
    logger.info("Macro applied to %s with status %s", record.key, result.status)
    return result
