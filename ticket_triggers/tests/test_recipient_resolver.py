"""Recipient expansion, dedup and loop protection."""

from __future__ import annotations

import pytest

from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.recipient_resolver import RecipientResolver, extract_addresses
from ticket_triggers.tests.utils import CUSTOMER_EMAIL, OWNER_EMAIL, SYSTEM_EMAIL, Helpdesk


def _resolver(desk: Helpdesk, users=None, **kwargs) -> RecipientResolver:
    kwargs.setdefault("system_addresses", [SYSTEM_EMAIL])
    return RecipientResolver(AttributeResolver(desk.records, timeout=1), users or desk.users(), timeout=1, **kwargs)


def test_extract_addresses_strips_display_names():
    assert extract_addresses("Nicole Braun <nicole@example.com>") == ["nicole@example.com"]
    assert extract_addresses(["a@example.com", "", None, "not-an-address"]) == ["a@example.com"]


@pytest.mark.asyncio
async def test_customer_and_same_user_id_dedupe_to_one_address():
    desk = Helpdesk()

    resolved = await _resolver(desk).resolve(["ticket_customer", "userid_2"], desk.context())

    assert resolved == [CUSTOMER_EMAIL]


@pytest.mark.asyncio
async def test_dedup_is_case_insensitive_and_keeps_first_spelling():
    desk = Helpdesk()
    desk.records.add(desk.customer, email=CUSTOMER_EMAIL.upper())

    resolved = await _resolver(desk).resolve(["ticket_customer", "userid_2", "ticket_owner"], desk.context())

    assert resolved == [CUSTOMER_EMAIL.upper(), OWNER_EMAIL]


@pytest.mark.asyncio
async def test_case_sensitive_dedup_can_be_configured():
    desk = Helpdesk()
    desk.records.add(desk.customer, email=CUSTOMER_EMAIL.upper())

    resolved = await _resolver(desk, casefold=False).resolve(["ticket_customer", "userid_2"], desk.context())

    assert resolved == [CUSTOMER_EMAIL.upper(), CUSTOMER_EMAIL]


@pytest.mark.asyncio
async def test_other_keywords_are_delegated_to_directory():
    desk = Helpdesk()

    resolved = await _resolver(desk).resolve(["ticket_owner", "ticket_agents"], desk.context())

    assert resolved == [OWNER_EMAIL, "agent2@example.com"]


@pytest.mark.asyncio
async def test_unresolvable_entries_are_skipped():
    desk = Helpdesk()
    desk.records.relations.pop((desk.ticket.key, "owner"))

    resolved = await _resolver(desk).resolve(["ticket_owner", "userid_404", "unknown_keyword", "ticket_customer"], desk.context())

    assert resolved == [CUSTOMER_EMAIL]


@pytest.mark.asyncio
async def test_user_reported_not_found_is_skipped():
    desk = Helpdesk()
    users = desk.users()
    users.not_found.add("99")

    resolved = await _resolver(desk, users).resolve(["userid_99", "ticket_customer"], desk.context())

    assert resolved == [CUSTOMER_EMAIL]


@pytest.mark.asyncio
async def test_slow_user_lookup_is_skipped():
    desk = Helpdesk()
    users = desk.users()
    users.slow.add("3")
    resolver = RecipientResolver(AttributeResolver(desk.records, timeout=1), users, timeout=0.05)

    assert await resolver.resolve("userid_3", desk.context()) == []


@pytest.mark.asyncio
async def test_last_sender_prefers_reply_to():
    desk = Helpdesk()
    desk.records.add(desk.article, reply_to="Replies <replies@example.com>")

    assert await _resolver(desk).resolve("article_last_sender", desk.context()) == ["replies@example.com"]


@pytest.mark.asyncio
async def test_last_sender_skips_system_addresses():
    desk = Helpdesk()
    desk.records.add(desk.article, **{"from": f"Support <{SYSTEM_EMAIL.upper()}>"})

    assert await _resolver(desk).resolve("article_last_sender", desk.context()) == []


@pytest.mark.asyncio
async def test_resolve_one_returns_first_address():
    desk = Helpdesk()
    resolver = _resolver(desk)

    assert await resolver.resolve_one(["ticket_owner", "ticket_customer"], desk.context()) == OWNER_EMAIL
    assert await resolver.resolve_one("userid_404", desk.context()) is None
