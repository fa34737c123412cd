"""Ensure log redaction prevents secret and address leakage."""

from __future__ import annotations

import logging

from redis.exceptions import RedisError

import ticket_triggers.services.task_queue as task_queue_module
from ticket_triggers.core.config import settings
from ticket_triggers.utils.redaction import redact_address, redact_addresses, redact_secrets


def test_task_queue_redacts_redis_url_in_logs(monkeypatch, caplog):
    secret_url = "redis://:supersecret@localhost:6379/0"
    monkeypatch.setattr(settings, "environment", "development")
    monkeypatch.setattr(settings, "redis_url", secret_url)

    class DummyRedis:
        @staticmethod
        def from_url(url: str):
            raise RedisError(f"Connection failed: {url}")

    monkeypatch.setattr(task_queue_module, "Redis", DummyRedis)

    caplog.set_level(logging.WARNING, logger="ticket_triggers.services.task_queue")
    queue = task_queue_module.TaskQueue()

    assert queue.enabled is False
    assert "supersecret" not in caplog.text
    assert "redis://***@localhost:6379/0" in caplog.text


def test_secret_pairs_are_masked():
    assert redact_secrets("login failed password=hunter2&user=x") == "login failed password=***&user=x"


def test_addresses_keep_first_character_and_domain():
    assert redact_address("nicole.braun@example.com") == "n***@example.com"
    assert redact_addresses(["a@example.com", "Bob <bob@example.org>"]) == "a***@example.com, Bob <b***@example.org>"
