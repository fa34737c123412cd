"""Expand notification recipient specs into ordered, de-duplicated addresses.

Invariants:
- Output keeps first-occurrence order.
- Duplicates are detected case-insensitively unless recipient_dedup_casefold is off.
- Unresolvable entries are skipped and logged; resolution never raises.
"""

from __future__ import annotations

import asyncio
import logging
from email.utils import getaddresses
from typing import Any, Iterable

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import ResolutionFailure
from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.context import NOT_FOUND, EvaluationContext
from ticket_triggers.services.interfaces import UserDirectory
from ticket_triggers.utils.redaction import redact_address

logger = logging.getLogger("ticket_triggers.services.recipient_resolver")

USER_PREFIX = "userid_"
KEYWORD_PATHS = {
    "ticket_customer": "customer.email",
    "ticket_owner": "owner.email",
}


def extract_addresses(value: Any) -> list[str]:
    """Parse ``Name <addr>`` strings (or lists of them) into bare addresses."""
    if value is None or value is NOT_FOUND:
        return []
    raw = value if isinstance(value, (list, tuple)) else [value]
    addresses: list[str] = []
    for _, address in getaddresses([str(item) for item in raw if item]):
        address = address.strip()
        if address and "@" in address:
            addresses.append(address)
    return addresses


class RecipientResolver:
    """Resolve keyword and ``userid_<id>`` recipient entries for one context."""

    def __init__(
        self,
        resolver: AttributeResolver,
        users: UserDirectory,
        *,
        system_addresses: Iterable[str] | None = None,
        casefold: bool | None = None,
        timeout: float | None = None,
    ) -> None:
        self.resolver = resolver
        self.users = users
        addresses = settings.system_addresses if system_addresses is None else system_addresses
        self.system_addresses = {address.lower() for address in addresses}
        self.casefold = settings.recipient_dedup_casefold if casefold is None else casefold
        self.timeout = timeout if timeout is not None else settings.lookup_timeout_seconds

    def _dedup_key(self, address: str) -> str:
        return address.casefold() if self.casefold else address

    async def resolve(self, spec: str | list[str], ctx: EvaluationContext) -> list[str]:
        """Resolve every recipient entry, keeping first occurrences only."""
        entries = [spec] if isinstance(spec, str) else list(spec or [])
        seen: set[str] = set()
        resolved: list[str] = []
        for entry in entries:
            for address in await self._resolve_entry(str(entry).strip(), ctx):
                key = self._dedup_key(address)
                if key in seen:
                    continue
                seen.add(key)
                resolved.append(address)
        return resolved

    async def resolve_one(self, spec: str | list[str], ctx: EvaluationContext) -> str | None:
        """Resolve recipients where the caller expects a single addressee."""
        resolved = await self.resolve(spec, ctx)
        if len(resolved) > 1:
            logger.info("Expected one recipient for %s, using the first of %s", spec, len(resolved))
        return resolved[0] if resolved else None

    async def _resolve_entry(self, entry: str, ctx: EvaluationContext) -> list[str]:
        if not entry:
            return []
        if entry.startswith(USER_PREFIX):
            return await self._resolve_user(entry[len(USER_PREFIX):])
        if entry in KEYWORD_PATHS:
            addresses = extract_addresses(await self.resolver.resolve(KEYWORD_PATHS[entry], ctx))
        elif entry == "article_last_sender":
            addresses = await self._resolve_last_sender(ctx)
        else:
            addresses = await self._resolve_keyword(entry, ctx)
        if not addresses:
            logger.info("Recipient %s unresolved for %s", entry, ctx.record.key)
        return addresses

    async def _resolve_user(self, user_id: str) -> list[str]:
        try:
            user = await asyncio.wait_for(self.users.lookup_user(user_id), timeout=self.timeout)
        except Exception as exc:
            failure = ResolutionFailure(f"user {user_id}: {exc or type(exc).__name__}")
            logger.warning("Recipient lookup failed, skipping: %s", failure.detail)
            return []
        if user is None or user is NOT_FOUND or not getattr(user, "email", None):
            logger.info("Recipient user %s has no address, skipping", user_id)
            return []
        return extract_addresses(user.email)

    async def _resolve_keyword(self, keyword: str, ctx: EvaluationContext) -> list[str]:
        try:
            value = await asyncio.wait_for(
                self.users.resolve_keyword(keyword, ctx.record), timeout=self.timeout
            )
        except Exception as exc:
            failure = ResolutionFailure(f"keyword {keyword}: {exc or type(exc).__name__}")
            logger.warning("Recipient lookup failed, skipping: %s", failure.detail)
            return []
        return extract_addresses(value)

    async def _resolve_last_sender(self, ctx: EvaluationContext) -> list[str]:
        """Reply-To wins over From; system addresses are never answered."""
        article = await self.resolver.entity("article", ctx)
        if article is None:
            return []
        addresses = extract_addresses(await self.resolver.get(article, "reply_to"))
        if not addresses:
            addresses = extract_addresses(await self.resolver.get(article, "from"))
        allowed = []
        for address in addresses:
            if address.lower() in self.system_addresses:
                logger.info("Skipping last sender %s: system address", redact_address(address))
                continue
            allowed.append(address)
        return allowed
