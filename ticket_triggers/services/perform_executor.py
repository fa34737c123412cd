"""Perform executor: apply a rule's actions to a matched record.

Invariants:
- Actions run in declaration order; later actions observe earlier writes.
- Every action is attempted; failures are collected, never silently skipped.
- Writes carry the commit id so they are attributable to the triggering commit.
- Rendering is deterministic for a given commit snapshot.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import (
    AttributeValidationError,
    DeliveryError,
    ExecutionFailure,
    RuleInvariantError,
)
from ticket_triggers.schema.trigger import (
    AttributeAssignment,
    NotificationEmail,
    PendingTimeAssignment,
    PerformAction,
    PreCondition,
    TagAction,
    TimeRange,
)
from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.context import NOT_FOUND, EvaluationContext, RecordRef
from ticket_triggers.services.interfaces import OutboundMessage, OutboundMessenger, RecordAccess
from ticket_triggers.services.recipient_resolver import RecipientResolver, extract_addresses
from ticket_triggers.services.secure_mailing import SecurityBackend, decide_security
from ticket_triggers.utils.redaction import redact_addresses

logger = logging.getLogger("ticket_triggers.services.perform_executor")

ActionHandler = Callable[["PerformExecutor", PerformAction, RecordRef, EvaluationContext], Awaitable[dict[str, Any]]]
SpecT = TypeVar("SpecT")

_PLACEHOLDER_RE = re.compile(r"#\{\s*([a-z_]+(?:\.[a-z0-9_]+)+)\s*\}")
_SENDER_PATH = "group.email_address"


def _truncate_error(value: str | None, limit: int = 500) -> str | None:
    if not value:
        return None
    return value[:limit]


def dedup_key(rule_id: str | None, record: RecordRef, commit_id: str) -> str:
    """Stable key identifying one rule firing for one record in one commit."""
    return f"{rule_id or 'macro'}:{record.key}:{commit_id}"


def _add_months(moment: datetime, months: int) -> datetime:
    total = moment.month - 1 + months
    year = moment.year + total // 12
    month = total % 12 + 1
    day = min(moment.day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def relative_instant(now: datetime, value: Any, unit: TimeRange) -> datetime:
    """Return ``now + value <unit>``, calendar-aware for months and years."""
    amount = int(str(value).strip())
    if unit == TimeRange.MONTH:
        return _add_months(now, amount)
    if unit == TimeRange.YEAR:
        return _add_months(now, amount * 12)
    return now + timedelta(**{f"{unit.value}s": amount})


def static_instant(value: Any) -> datetime:
    instant = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    return instant if instant.tzinfo else instant.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of applying one perform mapping to one record."""
    record_key: str
    commit_id: str
    ran_at: datetime
    rule_id: str | None = None
    status: str = "completed"
    outcomes: list[dict[str, Any]] = field(default_factory=list)
    errors: list[ExecutionFailure] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def last_error(self) -> str | None:
        if not self.errors:
            return None
        return _truncate_error("; ".join(error.detail for error in self.errors))


class PerformExecutor:
    """Apply perform actions through the host's record and message capabilities."""

    def __init__(
        self,
        *,
        records: RecordAccess,
        resolver: AttributeResolver,
        recipients: RecipientResolver,
        messenger: OutboundMessenger,
        security_backend: SecurityBackend | None = None,
        timeout: float | None = None,
        missing_value: str | None = None,
    ) -> None:
        self.records = records
        self.resolver = resolver
        self.recipients = recipients
        self.messenger = messenger
        self.security_backend = security_backend
        self.timeout = timeout if timeout is not None else settings.lookup_timeout_seconds
        self.missing_value = settings.template_missing_value if missing_value is None else missing_value

    async def apply(
        self,
        perform: Sequence[PerformAction],
        record: RecordRef,
        ctx: EvaluationContext,
    ) -> ExecutionResult:
        """Run every action in order and collect per-action outcomes."""
        result = ExecutionResult(
            record_key=record.key,
            commit_id=ctx.commit_id,
            ran_at=ctx.now,
            rule_id=ctx.rule_id,
        )
        for action in perform:
            handler = ACTION_HANDLERS.get(action.action.kind)
            if handler is None:
                raise RuleInvariantError(f"unsupported_action:{action.action.kind}")
            try:
                outcome = await handler(self, action, record, ctx)
            except ExecutionFailure as exc:
                exc.action = exc.action or action.path
                result.errors.append(exc)
                outcome = {"path": action.path, "status": "failed", "error": exc.detail}
            except RuleInvariantError:
                raise
            except Exception as exc:
                logger.exception("Perform action %s failed for %s", action.path, record.key)
                failure = ExecutionFailure(str(exc) or type(exc).__name__, action=action.path)
                result.errors.append(failure)
                outcome = {"path": action.path, "status": "failed", "error": failure.detail}
            result.outcomes.append(outcome)
        if result.errors:
            result.status = "failed"
        return result

    async def write(
        self,
        record: RecordRef,
        attribute: str,
        value: Any,
        ctx: EvaluationContext,
        *,
        action: str,
    ) -> None:
        """Validate the target attribute exists, write it, and tag the write."""
        current = await self.resolver.get(record, attribute)
        if current is NOT_FOUND:
            raise AttributeValidationError(f"unknown_attribute:{record.object_type}.{attribute}", action=action)
        try:
            await asyncio.wait_for(
                self.records.set_attribute(record, attribute, value, commit_id=ctx.commit_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(f"write_timeout:{record.object_type}.{attribute}", action=action) from exc
        ctx.record_write(record, attribute, value)

    async def render(self, template: str, ctx: EvaluationContext, *, escape: bool) -> str:
        """Substitute ``#{entity.attribute}`` placeholders."""
        values: dict[str, str] = {}
        for path in dict.fromkeys(_PLACEHOLDER_RE.findall(template)):
            values[path] = self._format(await self.resolver.resolve(path, ctx), path, escape=escape)
        return _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], template)

    def _format(self, value: Any, path: str, *, escape: bool) -> str:
        if value is NOT_FOUND or value is None or value == "":
            return self.missing_value
        if isinstance(value, datetime):
            text = value.isoformat()
        elif isinstance(value, (list, tuple)):
            text = ", ".join(str(item) for item in value)
        else:
            text = str(value)
        if escape and not path.endswith("_as_html"):
            return html.escape(text)
        return text


def _action_spec(action: PerformAction, expected: type[SpecT]) -> SpecT:
    spec = action.action
    if not isinstance(spec, expected):
        raise RuleInvariantError(f"unexpected_action:{action.path}:{spec.kind}")
    return spec


def _assignment_value(spec: AttributeAssignment, ctx: EvaluationContext, action: str) -> Any:
    if spec.pre_condition == PreCondition.NOT_SET:
        return None
    if spec.pre_condition in (PreCondition.CURRENT_USER_ID, PreCondition.CURRENT_USER_ORGANIZATION_ID):
        if ctx.actor is None:
            raise ExecutionFailure("current_user_unavailable", action=action)
        if spec.pre_condition == PreCondition.CURRENT_USER_ID:
            return ctx.actor.id
        return ctx.actor.organization_id
    return spec.value


async def _execute_attribute(
    executor: PerformExecutor,
    action: PerformAction,
    record: RecordRef,
    ctx: EvaluationContext,
) -> dict[str, Any]:
    spec = _action_spec(action, AttributeAssignment)
    if action.path.partition(".")[0] != record.object_type:
        raise ExecutionFailure(f"invalid_target:{action.path}", action=action.path)
    value = _assignment_value(spec, ctx, action.path)
    await executor.write(record, action.attribute, value, ctx, action=action.path)
    return {"path": action.path, "status": "updated", "value": value}


async def _execute_pending_time(
    executor: PerformExecutor,
    action: PerformAction,
    record: RecordRef,
    ctx: EvaluationContext,
) -> dict[str, Any]:
    spec = _action_spec(action, PendingTimeAssignment)
    if spec.operator == "relative" and spec.range is not None:
        instant = relative_instant(ctx.now, spec.value, spec.range)
    else:
        instant = static_instant(spec.value)
    await executor.write(record, action.attribute, instant, ctx, action=action.path)
    return {"path": action.path, "status": "updated", "value": instant.isoformat()}


async def _execute_tags(
    executor: PerformExecutor,
    action: PerformAction,
    record: RecordRef,
    ctx: EvaluationContext,
) -> dict[str, Any]:
    spec = _action_spec(action, TagAction)
    current = await executor.resolver.get(record, action.attribute)
    if current is NOT_FOUND:
        raise AttributeValidationError(f"unknown_attribute:{record.object_type}.{action.attribute}", action=action.path)
    tags = list(current or [])
    existing = {str(tag).casefold() for tag in tags}
    wanted = {tag.casefold() for tag in spec.tags}
    if spec.operator == "add":
        for tag in spec.tags:
            if tag.casefold() not in existing:
                existing.add(tag.casefold())
                tags.append(tag)
    else:
        tags = [tag for tag in tags if str(tag).casefold() not in wanted]
    await executor.write(record, action.attribute, tags, ctx, action=action.path)
    return {"path": action.path, "status": "updated", "value": tags}


async def _auto_response_block(executor: PerformExecutor, ctx: EvaluationContext) -> str | None:
    """Return a skip reason when the triggering article must not be answered."""
    article = await executor.resolver.entity("article", ctx)
    if article is None:
        return None
    preferences = await executor.resolver.get(article, "preferences")
    if not isinstance(preferences, Mapping):
        return None
    if preferences.get("send-auto-response") is False:
        return "auto_response_disabled"
    if preferences.get("is-auto-response") is True:
        return "auto_response_loop"
    return None


async def _execute_notification(
    executor: PerformExecutor,
    action: PerformAction,
    record: RecordRef,
    ctx: EvaluationContext,
) -> dict[str, Any]:
    spec = _action_spec(action, NotificationEmail)
    reason = await _auto_response_block(executor, ctx)
    if reason:
        logger.info("Notification for %s skipped (%s)", record.key, reason)
        return {"path": action.path, "status": "skipped", "reason": reason}

    recipients = await executor.recipients.resolve(spec.recipient, ctx)
    if not recipients:
        logger.info("Notification for %s skipped, no recipient resolved from %s", record.key, spec.recipient)
        return {"path": action.path, "status": "skipped", "reason": "no_recipients"}

    senders = extract_addresses(await executor.resolver.resolve(_SENDER_PATH, ctx))
    sender = senders[0] if senders else None
    decision = await decide_security(
        executor.security_backend,
        sign=spec.sign,
        encryption=spec.encryption,
        sender=sender,
        recipients=recipients,
        now=ctx.now,
        timeout=executor.timeout,
    )
    if decision.blocked:
        logger.info("Notification for %s discarded by security policy: %s", record.key, decision.reason)
        return {"path": action.path, "status": "blocked", "reason": decision.reason}

    message = OutboundMessage(
        to=recipients,
        subject=await executor.render(spec.subject, ctx, escape=False),
        body=await executor.render(spec.body, ctx, escape=True),
        internal=spec.internal,
        dedup_key=dedup_key(ctx.rule_id, record, ctx.commit_id),
        record=record,
        rule_id=ctx.rule_id,
        sender=sender,
        security=decision.preferences,
    )
    try:
        receipt = await asyncio.wait_for(
            executor.messenger.send(message), timeout=settings.delivery_timeout_seconds
        )
    except asyncio.TimeoutError as exc:
        raise DeliveryError("delivery_request_timeout", action=action.path) from exc
    logger.info(
        "Notification %s for %s to %s (%s)",
        receipt.message_id,
        record.key,
        redact_addresses(recipients),
        "duplicate" if receipt.duplicate else "accepted",
    )
    return {
        "path": action.path,
        "status": "duplicate" if receipt.duplicate else "sent",
        "message_id": receipt.message_id,
        "dedup_key": receipt.dedup_key,
        "to": message.to_header,
        "security": decision.preferences,
    }


ACTION_HANDLERS: dict[str, ActionHandler] = {
    "attribute": _execute_attribute,
    "pending_time": _execute_pending_time,
    "tags": _execute_tags,
    "notification": _execute_notification,
}
