"""Runtime types shared by one commit's evaluation cycle.

Invariants:
- RecordChange.kind is transaction metadata; it never comes from record state.
- EvaluationContext lives for one rule/record pair and is discarded after dispatch.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class _NotFound:
    """Sentinel for lookups that resolved to nothing."""

    _instance: "_NotFound | None" = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NotFoundType = _NotFound
NOT_FOUND: Any = _NotFound()


class ChangeKind(str, enum.Enum):
    """Transition a record went through in a commit."""
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True, slots=True)
class RecordRef:
    """Reference to a host record by type and primary key."""
    object_type: str
    id: Any

    @property
    def key(self) -> str:
        return f"{self.object_type}:{self.id}"


@dataclass(frozen=True, slots=True)
class UserRef:
    """Acting user or addressee known to the host."""
    id: Any
    email: str | None = None
    organization_id: Any = None
    fullname: str | None = None


@dataclass(slots=True)
class RecordChange:
    """Before/after snapshot of one record touched by a commit."""
    record: RecordRef
    kind: ChangeKind
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    article: RecordRef | None = None

    def changed(self, attribute: str) -> bool:
        """Return True if the attribute was modified in this commit."""
        if attribute not in self.changes:
            return False
        before, after = self.changes[attribute]
        return before != after


@dataclass(slots=True)
class CommitEvent:
    """One logical unit of work pushed by the persistence layer."""
    commit_id: str
    changes: list[RecordChange] = field(default_factory=list)
    actor: UserRef | None = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class AttributeWrite:
    """Attribute write tagged with the commit and rule that produced it."""
    record_key: str
    attribute: str
    value: Any
    commit_id: str
    rule_id: str | None


@dataclass(slots=True)
class EvaluationContext:
    """Everything a rule sees while it is evaluated against one record."""
    commit_id: str
    change: RecordChange
    actor: UserRef | None
    now: datetime
    writes: list[AttributeWrite] = field(default_factory=list)
    rule_id: str | None = None

    @property
    def record(self) -> RecordRef:
        return self.change.record

    def record_write(self, record: RecordRef, attribute: str, value: Any) -> AttributeWrite:
        """Attribute a write to the current commit and rule."""
        write = AttributeWrite(
            record_key=record.key,
            attribute=attribute,
            value=value,
            commit_id=self.commit_id,
            rule_id=self.rule_id,
        )
        self.writes.append(write)
        return write

    def written_by_engine(self, record: RecordRef, attribute: str) -> bool:
        """Return True if an earlier rule of this commit wrote the attribute."""
        return any(w.record_key == record.key and w.attribute == attribute for w in self.writes)
