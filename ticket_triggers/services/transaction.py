"""Collect record changes for one unit of work and dispatch them as a commit."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping

from ticket_triggers.services.context import ChangeKind, CommitEvent, RecordChange, RecordRef, UserRef
from ticket_triggers.services.trigger_dispatcher import DispatchReport, TriggerDispatcher, dispatch_in_progress

logger = logging.getLogger("ticket_triggers.services.transaction")


def new_commit_id() -> str:
    return uuid.uuid4().hex


class TransactionCollector:
    """Buffer per-record changes until the host's unit of work commits.

    Several mutations of the same record merge into one change: a create
    followed by updates stays a create, each attribute keeps its first old
    value and its last new value, and the latest article wins.
    """

    def __init__(self, dispatcher: TriggerDispatcher) -> None:
        self.dispatcher = dispatcher
        self._changes: dict[str, RecordChange] = {}

    def __len__(self) -> int:
        return len(self._changes)

    def record(
        self,
        record: RecordRef,
        kind: ChangeKind | str,
        changes: Mapping[str, tuple[Any, Any]] | None = None,
        article: RecordRef | None = None,
    ) -> None:
        kind = ChangeKind(kind)
        if dispatch_in_progress() is not None:
            logger.debug("Ignoring change of %s made while dispatching", record.key)
            return
        existing = self._changes.get(record.key)
        if existing is None:
            self._changes[record.key] = RecordChange(
                record=record,
                kind=kind,
                changes=dict(changes or {}),
                article=article,
            )
            return
        if kind == ChangeKind.CREATE:
            existing.kind = ChangeKind.CREATE
        for attribute, (before, after) in (changes or {}).items():
            if attribute in existing.changes:
                before = existing.changes[attribute][0]
            existing.changes[attribute] = (before, after)
        if article is not None:
            existing.article = article

    def discard(self) -> None:
        """Drop buffered changes after a rollback."""
        self._changes.clear()

    async def commit(self, actor: UserRef | None = None, commit_id: str | None = None) -> DispatchReport:
        """Dispatch buffered changes as one commit and reset the buffer."""
        event = CommitEvent(
            commit_id=commit_id or new_commit_id(),
            changes=list(self._changes.values()),
            actor=actor,
        )
        self._changes = {}
        return await self.dispatcher.dispatch(event)
