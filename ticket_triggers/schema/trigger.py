"""Trigger rule schemas: predicate and perform-action tagged unions.

Invariants:
- Condition and perform mappings keep declaration order.
- Unknown paths, operators, or action kinds fail validation instead of
  silently matching or being skipped.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from ticket_triggers.core.exceptions import RuleValidationError

RECORD_ENTITY = "ticket"
RELATED_ENTITIES = {"article", "customer", "owner", "group", "organization", "created_by", "updated_by"}
VIRTUAL_ENTITIES = {"execution_time", "current_user"}
KNOWN_ENTITIES = {RECORD_ENTITY} | RELATED_ENTITIES | VIRTUAL_ENTITIES
WORKING_TIME_PATH = "execution_time.calendar_id"
ACTION_PATH = f"{RECORD_ENTITY}.action"

_PATH_RE = re.compile(r"^[a-z_]+\.[a-z0-9_]+$")


class Operator(str, enum.Enum):
    """Comparison operators a predicate can apply."""
    IS = "is"
    IS_NOT = "is not"
    CONTAINS = "contains"
    CONTAINS_NOT = "contains not"
    CONTAINS_ALL = "contains all"
    CONTAINS_ONE = "contains one"
    CONTAINS_ALL_NOT = "contains all not"
    CONTAINS_ONE_NOT = "contains one not"
    IN_WORKING_TIME = "is in working time"
    NOT_IN_WORKING_TIME = "is not in working time"
    HAS_CHANGED = "has changed"
    BEFORE_ABSOLUTE = "before (absolute)"
    AFTER_ABSOLUTE = "after (absolute)"


WORKING_TIME_OPERATORS = {Operator.IN_WORKING_TIME, Operator.NOT_IN_WORKING_TIME}


class PreCondition(str, enum.Enum):
    """Comparison value substitutions resolved at evaluation time."""
    SPECIFIC = "specific"
    NOT_SET = "not_set"
    CURRENT_USER_ID = "current_user.id"
    CURRENT_USER_ORGANIZATION_ID = "current_user.organization_id"


class SecurityMode(str, enum.Enum):
    """Per-notification signing/encryption policy."""
    ALWAYS = "always"
    NO = "no"
    DISCARD = "discard"


class TimeRange(str, enum.Enum):
    """Units for relative pending-time actions."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


OptionalPreCondition = Annotated[PreCondition | None, BeforeValidator(_blank_to_none)]
SecurityModeField = Annotated[SecurityMode, BeforeValidator(lambda value: _blank_to_none(value) or SecurityMode.NO)]


class PredicateSpec(BaseModel):
    """One condition entry: operator, comparison value, optional pre-condition."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    operator: Operator
    value: Any = None
    pre_condition: OptionalPreCondition = None
    value_completion: str | None = None


class AttributeAssignment(BaseModel):
    """Direct write of a record attribute."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: Literal["attribute"] = "attribute"
    value: Any = None
    pre_condition: OptionalPreCondition = None


class PendingTimeAssignment(BaseModel):
    """Static or relative instant written to the pending time attribute."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: Literal["pending_time"] = "pending_time"
    operator: Literal["static", "relative"] = "static"
    value: Any
    range: TimeRange | None = None

    @model_validator(mode="after")
    def _check_value(self) -> "PendingTimeAssignment":
        if self.operator == "relative":
            if self.range is None:
                raise ValueError("relative pending time requires a range")
            try:
                int(str(self.value).strip())
            except ValueError as exc:
                raise ValueError("relative pending time value must be an integer") from exc
        else:
            try:
                datetime.fromisoformat(str(self.value).replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValueError("static pending time value must be an ISO-8601 timestamp") from exc
        return self


class TagAction(BaseModel):
    """Add or remove a comma separated list of tags."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: Literal["tags"] = "tags"
    operator: Literal["add", "remove"] = "add"
    value: str | list[str]

    @property
    def tags(self) -> list[str]:
        items = self.value if isinstance(self.value, list) else self.value.split(",")
        return [item.strip() for item in items if item and item.strip()]


class NotificationEmail(BaseModel):
    """E-mail notification synthesized from subject/body templates."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: Literal["notification"] = "notification"
    recipient: str | list[str]
    subject: str
    body: str
    internal: bool = False
    sign: SecurityModeField = SecurityMode.NO
    encryption: SecurityModeField = SecurityMode.NO

    @field_validator("recipient")
    @classmethod
    def _require_recipient(cls, value: str | list[str]) -> str | list[str]:
        if isinstance(value, list):
            cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
            if not cleaned:
                raise ValueError("recipient is missing")
            return cleaned
        if not value.strip():
            raise ValueError("recipient is missing")
        return value.strip()


PerformActionSpec = Annotated[
    Union[AttributeAssignment, PendingTimeAssignment, TagAction, NotificationEmail],
    Field(discriminator="kind"),
]


class PerformAction(BaseModel):
    """A perform entry bound to its target path."""

    model_config = ConfigDict(frozen=True)

    path: str
    action: PerformActionSpec

    @property
    def attribute(self) -> str:
        return self.path.split(".", 1)[1]


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid value"
    message = str(errors[0].get("msg") or "invalid value")
    return message.removeprefix("Value error, ")


def classify_action(path: str) -> str:
    """Map a perform path onto its action kind."""
    if path == "notification.email":
        return "notification"
    entity, _, attribute = path.partition(".")
    if entity != RECORD_ENTITY or not attribute or not _PATH_RE.match(path) or attribute == "action":
        raise RuleValidationError(f"Invalid perform {path}, unsupported action!")
    if attribute == "pending_time":
        return "pending_time"
    if attribute == "tags":
        return "tags"
    return "attribute"


def parse_perform(raw: Mapping[str, Any] | None) -> list[PerformAction]:
    """Validate a raw perform mapping into ordered, typed actions."""
    if not isinstance(raw, Mapping) or not raw:
        raise RuleValidationError("Invalid perform, at least one action is required!")
    actions: list[PerformAction] = []
    for path, spec in raw.items():
        if not isinstance(spec, Mapping):
            raise RuleValidationError(f"Invalid perform {path}, action must be a mapping!")
        kind = classify_action(path)
        if kind == "notification" and not spec.get("recipient"):
            raise RuleValidationError(f"Invalid perform {path}, recipient is missing!")
        try:
            actions.append(PerformAction.model_validate({"path": path, "action": {**spec, "kind": kind}}))
        except ValidationError as exc:
            raise RuleValidationError(f"Invalid perform {path}, {_first_error(exc)}!") from exc
    return actions


def parse_condition(raw: Mapping[str, Any] | None) -> dict[str, PredicateSpec]:
    """Validate a raw condition mapping into typed predicates."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise RuleValidationError("Invalid condition, expected a mapping!")
    condition: dict[str, PredicateSpec] = {}
    for path, spec in raw.items():
        entity = path.partition(".")[0]
        if not _PATH_RE.match(path) or entity not in KNOWN_ENTITIES:
            raise RuleValidationError(f"Invalid condition {path}, unknown attribute!")
        if not isinstance(spec, Mapping):
            raise RuleValidationError(f"Invalid condition {path}, predicate must be a mapping!")
        try:
            predicate = PredicateSpec.model_validate(spec)
        except ValidationError as exc:
            raise RuleValidationError(f"Invalid condition {path}, {_first_error(exc)}!") from exc
        working_time = predicate.operator in WORKING_TIME_OPERATORS
        if working_time != (path == WORKING_TIME_PATH):
            raise RuleValidationError(f"Invalid condition {path}, unsupported operator {predicate.operator.value}!")
        if path == ACTION_PATH:
            values = predicate.value if isinstance(predicate.value, list) else [predicate.value]
            if not values or any(value not in {"create", "update"} for value in values):
                raise RuleValidationError(f"Invalid condition {path}, value must be create or update!")
        condition[path] = predicate
    return condition


class TriggerRule(BaseModel):
    """Validated, immutable view of a stored trigger used by the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    condition: dict[str, PredicateSpec] = Field(default_factory=dict)
    perform: list[PerformAction]
    active: bool = True
    priority: int = 0
    group_id: Any = None

    @classmethod
    def from_definition(
        cls,
        *,
        id: Any,
        name: str,
        condition: Mapping[str, Any] | None,
        perform: Mapping[str, Any] | None,
        active: bool = True,
        priority: int = 0,
        group_id: Any = None,
    ) -> "TriggerRule":
        """Parse raw condition/perform mappings; raise RuleValidationError when invalid."""
        return cls(
            id=str(id),
            name=name,
            condition=parse_condition(condition),
            perform=parse_perform(perform),
            active=active,
            priority=priority,
            group_id=group_id,
        )


class TriggerCreate(BaseModel):
    """Payload for creating a trigger."""
    name: str
    condition: dict[str, Any] = Field(default_factory=dict)
    perform: dict[str, Any]
    active: bool = True
    priority: int = 0
    group_id: str | None = None
    note: str | None = None


class TriggerUpdate(BaseModel):
    """Payload for updating a trigger."""
    name: str | None = None
    condition: dict[str, Any] | None = None
    perform: dict[str, Any] | None = None
    active: bool | None = None
    priority: int | None = None
    group_id: str | None = None
    note: str | None = None
