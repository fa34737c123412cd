"""Unit-of-work collection and merge semantics."""

from __future__ import annotations

import pytest

from ticket_triggers.services.context import ChangeKind, RecordRef, UserRef
from ticket_triggers.services.transaction import TransactionCollector
from ticket_triggers.tests.utils import FakeMessenger, Helpdesk, build_dispatcher, make_rule

ON_CREATE = {"ticket.action": {"operator": "is", "value": "create"}}
GREETING = {"notification.email": {"recipient": "ticket_customer", "subject": "Hello", "body": "World!"}}


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    async def dispatch(self, event):
        self.events.append(event)
        return event


@pytest.mark.asyncio
async def test_create_then_update_merges_into_create():
    dispatcher = RecordingDispatcher()
    collector = TransactionCollector(dispatcher)
    ticket = RecordRef("ticket", 1)
    first_article = RecordRef("ticket_article", 1)
    last_article = RecordRef("ticket_article", 2)

    collector.record(ticket, "create", {"state_id": (None, 1)}, article=first_article)
    collector.record(ticket, ChangeKind.UPDATE, {"state_id": (1, 2), "title": ("a", "b")})
    collector.record(ticket, ChangeKind.UPDATE, {"state_id": (2, 3)}, article=last_article)
    await collector.commit(UserRef(id=1), commit_id="c1")

    (event,) = dispatcher.events
    (change,) = event.changes
    assert event.commit_id == "c1"
    assert change.kind == ChangeKind.CREATE
    assert change.changes == {"state_id": (None, 3), "title": ("a", "b")}
    assert change.article == last_article
    assert len(collector) == 0


@pytest.mark.asyncio
async def test_update_followed_by_create_is_still_a_create():
    dispatcher = RecordingDispatcher()
    collector = TransactionCollector(dispatcher)
    ticket = RecordRef("ticket", 1)

    collector.record(ticket, "update")
    collector.record(ticket, "create")
    await collector.commit()

    assert dispatcher.events[0].changes[0].kind == ChangeKind.CREATE
    assert dispatcher.events[0].commit_id


@pytest.mark.asyncio
async def test_discard_drops_buffered_changes():
    collector = TransactionCollector(RecordingDispatcher())
    collector.record(RecordRef("ticket", 1), "update")

    collector.discard()

    assert len(collector) == 0


@pytest.mark.asyncio
async def test_commit_dispatches_once_per_record():
    desk = Helpdesk()
    messenger = FakeMessenger()
    collector = TransactionCollector(build_dispatcher(desk, make_rule("1", ON_CREATE, GREETING), messenger=messenger))

    collector.record(desk.ticket, "create", {"title": (None, "Printer on fire")})
    collector.record(desk.ticket, "update", {"state_id": (1, 2)})
    report = await collector.commit(UserRef(id=2), commit_id="c1")

    assert report.fired == ["1:ticket:1"]
    assert len(messenger.messages) == 1


@pytest.mark.asyncio
async def test_changes_made_while_dispatching_are_not_buffered():
    desk = Helpdesk()
    dispatcher = build_dispatcher(desk, make_rule("1", None, {"ticket.title": {"value": "x"}}))
    collector = TransactionCollector(dispatcher)

    async def host_hook(record, attribute, value, commit_id):
        collector.record(record, "update", {attribute: (None, value)})

    desk.records.on_write = host_hook
    collector.record(desk.ticket, "update")
    await collector.commit(commit_id="c1")

    assert len(collector) == 0
