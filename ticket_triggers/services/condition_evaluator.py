"""Evaluate trigger conditions: a conjunction of attribute predicates.

Invariants:
- An empty condition always matches.
- A predicate whose attribute (or pre-condition) resolves to NOT_FOUND is false,
  for negated operators too.
- Scalars compare on a canonical string form so 2, 2.0 and "2" are equal,
  as are Decimal("2.50"), 2.5 and "2.50".
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from ticket_triggers.schema.trigger import Operator, PreCondition, PredicateSpec
from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.context import NOT_FOUND, EvaluationContext

logger = logging.getLogger("ticket_triggers.services.condition_evaluator")


_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def _as_number(value: Any) -> Decimal | None:
    """Return a finite Decimal for numbers and numeric-looking strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        number = Decimal(repr(value))
    elif isinstance(value, (int, Decimal)):
        number = Decimal(value)
    elif isinstance(value, str) and _NUMBER_RE.fullmatch(value.strip()):
        number = Decimal(value.strip())
    else:
        return None
    return number if number.is_finite() else None


def canonical(value: Any) -> str | None:
    """Normalize a scalar for equality checks."""
    if value is None or value is NOT_FOUND:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    number = _as_number(value)
    if number is not None:
        if number == number.to_integral_value():
            return str(int(number))
        return format(number.normalize(), "f")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value).strip()


def _as_list(value: Any) -> list[Any]:
    if value is None or value is NOT_FOUND:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, str) and "," in value:
        return [item.strip() for item in value.split(",") if item.strip()]
    return [value]


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, set)) and len(value) == 0)


def _parse_instant(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, str) and value.strip():
        try:
            instant = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return instant if instant.tzinfo else instant.replace(tzinfo=timezone.utc)


def value_equals(actual: Any, expected: Any) -> bool:
    """Equality with list-membership on either side."""
    def _items(value: Any) -> set[str | None]:
        if isinstance(value, (list, tuple, set)):
            return {canonical(item) for item in value}
        return {canonical(value)}

    return bool(_items(actual) & _items(expected))


def value_contains(actual: Any, expected: Any) -> bool:
    """Case-insensitive substring for strings, membership for lists."""
    needles = expected if isinstance(expected, (list, tuple, set)) else [expected]
    if isinstance(actual, (list, tuple, set)):
        haystack = {(canonical(item) or "").casefold() for item in actual}
        return any((canonical(needle) or "").casefold() in haystack for needle in needles)
    text = (canonical(actual) or "").casefold()
    return any((canonical(needle) or "").casefold() in text for needle in needles if canonical(needle))


def _tag_sets(actual: Any, expected: Any) -> tuple[set[str], set[str]]:
    have = {(canonical(item) or "").casefold() for item in _as_list(actual)}
    want = {(canonical(item) or "").casefold() for item in _as_list(expected)}
    have.discard("")
    want.discard("")
    return have, want


class ConditionEvaluator:
    """Match a condition tree against one record's evaluation context."""

    def __init__(self, resolver: AttributeResolver) -> None:
        self.resolver = resolver

    async def matches(self, condition: Mapping[str, PredicateSpec], ctx: EvaluationContext) -> bool:
        """Return True when every predicate matches (AND); empty conditions match."""
        for path, predicate in condition.items():
            if not await self.evaluate(path, predicate, ctx):
                logger.debug("Predicate %s (%s) did not match for %s", path, predicate.operator.value, ctx.record.key)
                return False
        return True

    def expected_value(self, predicate: PredicateSpec, ctx: EvaluationContext) -> Any:
        """Apply the pre-condition to produce the effective comparison value."""
        pre_condition = predicate.pre_condition
        if pre_condition is None or pre_condition == PreCondition.SPECIFIC:
            return predicate.value
        if pre_condition == PreCondition.NOT_SET:
            return None
        if ctx.actor is None:
            return NOT_FOUND
        if pre_condition == PreCondition.CURRENT_USER_ID:
            return ctx.actor.id
        if pre_condition == PreCondition.CURRENT_USER_ORGANIZATION_ID:
            return ctx.actor.organization_id if ctx.actor.organization_id is not None else NOT_FOUND
        return NOT_FOUND

    async def evaluate(self, path: str, predicate: PredicateSpec, ctx: EvaluationContext) -> bool:
        """Evaluate a single predicate."""
        operator = predicate.operator
        expected = self.expected_value(predicate, ctx)
        if expected is NOT_FOUND:
            return False

        if operator == Operator.HAS_CHANGED:
            entity, _, attribute = path.partition(".")
            if entity != ctx.record.object_type:
                return False
            return ctx.change.changed(attribute) or ctx.written_by_engine(ctx.record, attribute)

        actual = await self.resolver.resolve(path, ctx)
        if actual is NOT_FOUND:
            return False

        if operator in (Operator.IN_WORKING_TIME, Operator.NOT_IN_WORKING_TIME):
            calendar_id = expected[0] if isinstance(expected, list) and expected else expected
            inside = await self.resolver.in_working_time(calendar_id, actual)
            if inside is NOT_FOUND:
                return False
            return inside if operator == Operator.IN_WORKING_TIME else not inside

        if predicate.pre_condition == PreCondition.NOT_SET:
            empty = _is_empty(actual)
            if operator == Operator.IS:
                return empty
            if operator == Operator.IS_NOT:
                return not empty

        return self._compare(operator, actual, expected)

    @staticmethod
    def _compare(operator: Operator, actual: Any, expected: Any) -> bool:
        if operator == Operator.IS:
            return value_equals(actual, expected)
        if operator == Operator.IS_NOT:
            return not value_equals(actual, expected)
        if operator == Operator.CONTAINS:
            return value_contains(actual, expected)
        if operator == Operator.CONTAINS_NOT:
            return not value_contains(actual, expected)
        if operator in (
            Operator.CONTAINS_ALL,
            Operator.CONTAINS_ONE,
            Operator.CONTAINS_ALL_NOT,
            Operator.CONTAINS_ONE_NOT,
        ):
            have, want = _tag_sets(actual, expected)
            if not want:
                return False
            if operator == Operator.CONTAINS_ALL:
                return want <= have
            if operator == Operator.CONTAINS_ONE:
                return bool(want & have)
            if operator == Operator.CONTAINS_ALL_NOT:
                return not want <= have
            return not want & have
        if operator in (Operator.BEFORE_ABSOLUTE, Operator.AFTER_ABSOLUTE):
            left = _parse_instant(actual)
            right = _parse_instant(expected)
            if left is None or right is None:
                return False
            return left < right if operator == Operator.BEFORE_ABSOLUTE else left > right
        return False

