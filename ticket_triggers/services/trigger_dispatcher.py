"""Evaluate active triggers against the records of one commit.

Invariants:
- A rule fires at most once per (rule, record, commit).
- Writes made while dispatching never start a nested dispatch cycle.
- Records are serialized per identity; locks are taken in key order.
- Only RuleInvariantError escapes to the commit caller.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable
from weakref import WeakValueDictionary

from ticket_triggers.core.exceptions import RuleInvariantError
from ticket_triggers.schema.trigger import TriggerRule
from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.condition_evaluator import ConditionEvaluator, canonical
from ticket_triggers.services.context import (
    NOT_FOUND,
    AttributeWrite,
    ChangeKind,
    CommitEvent,
    EvaluationContext,
    RecordChange,
    RecordRef,
    UserRef,
    _utcnow,
)
from ticket_triggers.services.interfaces import (
    CalendarCapability,
    CertificateStore,
    FiringLedger,
    OutboundMessenger,
    RecordAccess,
    RuleStore,
    UserDirectory,
)
from ticket_triggers.services.perform_executor import ExecutionResult, PerformExecutor
from ticket_triggers.services.recipient_resolver import RecipientResolver
from ticket_triggers.services.secure_mailing import SecurityBackend, build_security_backend

logger = logging.getLogger("ticket_triggers.services.trigger_dispatcher")

_active_commit: ContextVar[str | None] = ContextVar("ticket_triggers_active_commit", default=None)


def dispatch_in_progress() -> str | None:
    """Return the commit id being dispatched in the current task context."""
    return _active_commit.get()


@dataclass(slots=True)
class DispatchReport:
    """What happened while one commit was dispatched."""
    commit_id: str
    evaluated: int = 0
    results: list[ExecutionResult] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    writes: list[AttributeWrite] = field(default_factory=list)
    suppressed: bool = False

    @property
    def fired(self) -> list[str]:
        return [f"{result.rule_id}:{result.record_key}" for result in self.results]


def _rule_order(rule: TriggerRule) -> tuple[int, str]:
    return rule.priority, str(rule.id)


class TriggerDispatcher:
    """Run the Idle -> Evaluating -> Firing -> Done cycle for commit events."""

    def __init__(
        self,
        *,
        rules: RuleStore,
        records: RecordAccess,
        users: UserDirectory,
        messenger: OutboundMessenger,
        calendars: CalendarCapability | None = None,
        certificates: CertificateStore | None = None,
        security_backend: SecurityBackend | None = None,
        ledger: FiringLedger | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.rules = rules
        self.ledger = ledger
        self.clock = clock or _utcnow
        self.resolver = AttributeResolver(records, calendars, timeout=timeout)
        self.evaluator = ConditionEvaluator(self.resolver)
        self.recipients = RecipientResolver(self.resolver, users, timeout=timeout)
        self.executor = PerformExecutor(
            records=records,
            resolver=self.resolver,
            recipients=self.recipients,
            messenger=messenger,
            security_backend=security_backend or build_security_backend(certificates),
            timeout=timeout,
        )
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def notify(
        self,
        commit_id: str,
        changed_records: Iterable[RecordRef],
        change_kind: ChangeKind | str,
        actor: UserRef | None = None,
    ) -> DispatchReport:
        """Dispatch a commit that applied the same transition to every record."""
        kind = ChangeKind(change_kind)
        event = CommitEvent(
            commit_id=commit_id,
            changes=[RecordChange(record=record, kind=kind) for record in changed_records],
            actor=actor,
        )
        return await self.dispatch(event)

    async def dispatch(self, event: CommitEvent) -> DispatchReport:
        """Evaluate every active rule against every record changed by the commit."""
        running = _active_commit.get()
        if running is not None:
            logger.info("Nested dispatch of commit %s suppressed while dispatching %s", event.commit_id, running)
            return DispatchReport(commit_id=event.commit_id, suppressed=True)
        if not event.changes:
            return DispatchReport(commit_id=event.commit_id)

        token = _active_commit.set(event.commit_id)
        try:
            async with AsyncExitStack() as stack:
                for key in sorted({change.record.key for change in event.changes}):
                    await stack.enter_async_context(self._lock_for(key))
                return await self._evaluate(event)
        finally:
            _active_commit.reset(token)

    async def _active_rules(self, report: DispatchReport) -> list[TriggerRule]:
        try:
            rules = await self.rules.active_rules()
        except RuleInvariantError:
            raise
        except Exception as exc:
            logger.exception("Loading active triggers failed for commit %s", report.commit_id)
            report.failures.append({"stage": "load", "error": str(exc) or type(exc).__name__})
            return []
        return sorted((rule for rule in rules if rule.active), key=_rule_order)

    async def _in_scope(self, rule: TriggerRule, ctx: EvaluationContext) -> bool:
        if rule.group_id is None:
            return True
        group_id = await self.resolver.resolve(f"{ctx.record.object_type}.group_id", ctx)
        return group_id is not NOT_FOUND and canonical(group_id) == canonical(rule.group_id)

    async def _evaluate(self, event: CommitEvent) -> DispatchReport:
        report = DispatchReport(commit_id=event.commit_id)
        rules = await self._active_rules(report)
        now = self.clock()
        claimed: set[tuple[str, str, str]] = set()

        for rule in rules:
            for change in event.changes:
                claim = (rule.id, change.record.key, event.commit_id)
                if claim in claimed:
                    continue
                ctx = EvaluationContext(
                    commit_id=event.commit_id,
                    change=change,
                    actor=event.actor,
                    now=now,
                    writes=report.writes,
                    rule_id=rule.id,
                )
                if not await self._in_scope(rule, ctx):
                    continue
                report.evaluated += 1
                try:
                    matched = await self.evaluator.matches(rule.condition, ctx)
                except RuleInvariantError:
                    raise
                except Exception as exc:
                    logger.exception("Trigger %s could not be evaluated for %s", rule.id, change.record.key)
                    report.failures.append(
                        {"rule_id": rule.id, "record": change.record.key, "stage": "match", "error": str(exc)}
                    )
                    continue
                if not matched:
                    continue

                claimed.add(claim)
                if not await self._claim(rule, change.record, event.commit_id):
                    logger.info(
                        "Trigger %s already fired for %s in commit %s", rule.id, change.record.key, event.commit_id
                    )
                    report.skipped.append(
                        {"rule_id": rule.id, "record": change.record.key, "reason": "already_fired"}
                    )
                    continue
                await self._fire(rule, change.record, ctx, report)

        logger.info(
            "Commit %s dispatched: %s evaluations, %s firings, %s failures",
            event.commit_id,
            report.evaluated,
            len(report.results),
            len(report.failures),
        )
        return report

    async def _claim(self, rule: TriggerRule, record: RecordRef, commit_id: str) -> bool:
        if self.ledger is None:
            return True
        try:
            return await self.ledger.claim(rule.id, record.key, commit_id)
        except Exception:
            logger.exception("Firing ledger unavailable for trigger %s on %s, firing anyway", rule.id, record.key)
            return True

    async def _fire(
        self,
        rule: TriggerRule,
        record: RecordRef,
        ctx: EvaluationContext,
        report: DispatchReport,
    ) -> None:
        try:
            result = await self.executor.apply(rule.perform, record, ctx)
        except RuleInvariantError:
            raise
        except Exception as exc:
            logger.exception("Trigger %s failed for %s", rule.id, record.key)
            report.failures.append({"rule_id": rule.id, "record": record.key, "stage": "perform", "error": str(exc)})
            return

        report.results.append(result)
        if result.failed:
            logger.warning("Trigger %s finished with errors for %s: %s", rule.id, record.key, result.last_error)
            report.failures.extend(
                {"rule_id": rule.id, "record": record.key, "stage": "perform", "action": error.action, "error": error.detail}
                for error in result.errors
            )
        else:
            logger.info("Trigger %s fired for %s", rule.id, record.key)

        if self.ledger is not None:
            try:
                await self.ledger.record(result)
            except Exception:
                logger.exception("Recording firing of trigger %s for %s failed", rule.id, record.key)
