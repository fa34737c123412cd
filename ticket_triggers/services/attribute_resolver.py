"""Resolve dotted attribute paths against the record graph of a commit.

Invariants:
- Unknown entities, attributes, and failed lookups resolve to NOT_FOUND; resolve never raises.
- Collaborator calls are bounded by the configured lookup timeout.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime
from typing import Any, Awaitable

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import ResolutionFailure
from ticket_triggers.schema.trigger import RELATED_ENTITIES
from ticket_triggers.services.context import NOT_FOUND, EvaluationContext, RecordRef
from ticket_triggers.services.interfaces import CalendarCapability, RecordAccess

logger = logging.getLogger("ticket_triggers.services.attribute_resolver")


def body_as_html(body: Any, content_type: Any) -> str:
    """Render an article body as HTML, escaping plain-text bodies."""
    if body is None or body is NOT_FOUND:
        return ""
    text = str(body)
    if isinstance(content_type, str) and content_type.lower() == "text/html":
        return text
    return html.escape(text).replace("\r\n", "\n").replace("\n", "<br>")


class AttributeResolver:
    """Look up ``<entity>.<attribute>`` values for one evaluation context."""

    def __init__(
        self,
        records: RecordAccess,
        calendars: CalendarCapability | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.records = records
        self.calendars = calendars
        self.timeout = timeout if timeout is not None else settings.lookup_timeout_seconds

    async def _call(self, awaitable: Awaitable[Any], *, what: str) -> Any:
        """Await a collaborator call, degrading timeouts and errors to NOT_FOUND."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            failure = ResolutionFailure(f"{what}: timed out after {self.timeout}s")
        except ResolutionFailure as exc:
            failure = exc
        except Exception as exc:
            failure = ResolutionFailure(f"{what}: {exc}")
        logger.warning("Lookup failed, treating as not found: %s", failure.detail)
        return NOT_FOUND

    async def entity(self, name: str, ctx: EvaluationContext) -> RecordRef | None:
        """Return the record reference behind an entity name."""
        if name == ctx.record.object_type:
            return ctx.record
        if name not in RELATED_ENTITIES:
            return None
        if name == "article" and ctx.change.article is not None:
            return ctx.change.article
        related = await self._call(self.records.related(ctx.record, name), what=f"related {name}")
        if related is NOT_FOUND or related is None:
            return None
        return related

    async def get(self, record: RecordRef, attribute: str) -> Any:
        """Read one attribute of a known record."""
        value = await self._call(
            self.records.get_attribute(record, attribute), what=f"{record.key}.{attribute}"
        )
        return value

    async def resolve(self, path: str, ctx: EvaluationContext) -> Any:
        """Resolve a dotted path, returning NOT_FOUND when it cannot be resolved."""
        entity_name, _, attribute = path.partition(".")
        if not attribute:
            return NOT_FOUND

        if entity_name == "execution_time":
            return ctx.now
        if entity_name == "current_user":
            return self._actor_attribute(attribute, ctx)
        if entity_name == ctx.record.object_type and attribute == "action":
            return ctx.change.kind.value

        record = await self.entity(entity_name, ctx)
        if record is None:
            return NOT_FOUND
        if entity_name == "article" and attribute == "body_as_html":
            body = await self.get(record, "body")
            if body is NOT_FOUND:
                return NOT_FOUND
            content_type = await self.get(record, "content_type")
            return body_as_html(body, content_type)
        return await self.get(record, attribute)

    @staticmethod
    def _actor_attribute(attribute: str, ctx: EvaluationContext) -> Any:
        if ctx.actor is None:
            return NOT_FOUND
        value = getattr(ctx.actor, attribute, NOT_FOUND)
        return NOT_FOUND if value is None else value

    async def in_working_time(self, calendar_id: Any, instant: Any) -> Any:
        """Return True/False for calendar membership, NOT_FOUND when undecidable."""
        if self.calendars is None or calendar_id in (None, "", NOT_FOUND):
            return NOT_FOUND
        if not isinstance(instant, datetime):
            return NOT_FOUND
        result = await self._call(
            self.calendars.is_working_time(calendar_id, instant), what=f"calendar {calendar_id}"
        )
        if result is NOT_FOUND:
            return NOT_FOUND
        return bool(result)
