"""In-memory collaborators and fixtures shared by engine tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from ticket_triggers.core.exceptions import AttributeValidationError, DeliveryError
from ticket_triggers.schema.trigger import TriggerRule
from ticket_triggers.services.attribute_resolver import AttributeResolver
from ticket_triggers.services.context import (
    NOT_FOUND,
    ChangeKind,
    EvaluationContext,
    RecordChange,
    RecordRef,
    UserRef,
)
from ticket_triggers.services.interfaces import DeliveryReceipt, OutboundMessage, StoredCertificate
from ticket_triggers.services.perform_executor import PerformExecutor
from ticket_triggers.services.recipient_resolver import RecipientResolver
from ticket_triggers.services.trigger_dispatcher import TriggerDispatcher

NOW = datetime(2026, 10, 19, 10, 30, tzinfo=timezone.utc)

CUSTOMER_EMAIL = "nicole.braun@example.com"
OWNER_EMAIL = "agent1@example.com"
SYSTEM_EMAIL = "support@example.com"


class FakeRecords:
    """RecordAccess over plain dictionaries."""

    def __init__(self) -> None:
        self.attributes: dict[str, dict[str, Any]] = {}
        self.relations: dict[tuple[str, str], RecordRef] = {}
        self.writes: list[tuple[str, str, Any, str]] = []
        self.rejected: set[tuple[str, str]] = set()
        self.broken: set[str] = set()
        self.on_write: Callable[[RecordRef, str, Any, str], Awaitable[None]] | None = None

    def add(self, record: RecordRef, **attributes: Any) -> RecordRef:
        self.attributes.setdefault(record.key, {}).update(attributes)
        return record

    def relate(self, record: RecordRef, relation: str, target: RecordRef) -> None:
        self.relations[(record.key, relation)] = target

    def value(self, record: RecordRef, attribute: str) -> Any:
        return self.attributes.get(record.key, {}).get(attribute, NOT_FOUND)

    async def get_attribute(self, record: RecordRef, attribute: str) -> Any:
        if attribute in self.broken:
            raise RuntimeError(f"{attribute} lookup exploded")
        return self.value(record, attribute)

    async def set_attribute(self, record: RecordRef, attribute: str, value: Any, *, commit_id: str) -> None:
        if (record.key, attribute) in self.rejected:
            raise AttributeValidationError(f"invalid value for {attribute}")
        self.attributes.setdefault(record.key, {})[attribute] = value
        self.writes.append((record.key, attribute, value, commit_id))
        if self.on_write is not None:
            await self.on_write(record, attribute, value, commit_id)

    async def related(self, record: RecordRef, relation: str) -> RecordRef | None:
        return self.relations.get((record.key, relation))


class FakeUsers:
    """UserDirectory with static users and keyword answers."""

    def __init__(self, users: list[UserRef] | None = None, keywords: dict[str, Any] | None = None) -> None:
        self.users = {str(user.id): user for user in users or []}
        self.keywords = keywords or {}
        self.slow: set[str] = set()
        self.not_found: set[str] = set()

    async def lookup_user(self, user_id: Any) -> Any:
        if str(user_id) in self.slow:
            await asyncio.sleep(10)
        if str(user_id) in self.not_found:
            return NOT_FOUND
        return self.users.get(str(user_id))

    async def resolve_keyword(self, keyword: str, record: RecordRef) -> Any:
        return self.keywords.get(keyword)


class FakeMessenger:
    """OutboundMessenger that remembers messages and honours dedup keys."""

    def __init__(self, *, fail: bool = False) -> None:
        self.messages: list[OutboundMessage] = []
        self.keys: dict[str, str] = {}
        self.fail = fail

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        if self.fail:
            raise DeliveryError("mail gateway rejected the message")
        if message.dedup_key in self.keys:
            return DeliveryReceipt(message_id=self.keys[message.dedup_key], dedup_key=message.dedup_key, duplicate=True)
        message_id = f"msg-{len(self.messages) + 1}"
        self.keys[message.dedup_key] = message_id
        self.messages.append(message)
        return DeliveryReceipt(message_id=message_id, dedup_key=message.dedup_key)


class FakeCertificates:
    def __init__(self, *certificates: StoredCertificate) -> None:
        self.certificates = {certificate.address.lower(): certificate for certificate in certificates}

    async def find_certificate(self, address: str) -> StoredCertificate | None:
        return self.certificates.get(address.lower())


class FakeRuleStore:
    def __init__(self, *rules: TriggerRule) -> None:
        self.rules = list(rules)

    async def active_rules(self) -> list[TriggerRule]:
        return list(self.rules)


def make_certificate(
    address: str,
    *,
    expired: bool = False,
    with_key: bool = True,
    password: str | None = None,
    key_type: str = "rsa",
) -> StoredCertificate:
    """Self-signed certificate for an e-mail address, valid around NOW."""
    if key_type == "ec":
        key: Any = ec.generate_private_key(ec.SECP256R1())
    else:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, address),
            x509.NameAttribute(NameOID.EMAIL_ADDRESS, address),
        ]
    )
    if expired:
        not_before, not_after = NOW - timedelta(days=400), NOW - timedelta(days=1)
    else:
        not_before, not_after = NOW - timedelta(days=1), NOW + timedelta(days=365)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.RFC822Name(address)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    encryption: serialization.KeySerializationEncryption = serialization.NoEncryption()
    if password:
        encryption = serialization.BestAvailableEncryption(password.encode("utf-8"))
    key_pem = key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)
    return StoredCertificate(
        address=address,
        certificate_pem=certificate.public_bytes(serialization.Encoding.PEM),
        private_key_pem=key_pem if with_key else None,
        private_key_secret=password,
    )


@dataclass
class Helpdesk:
    """A ticket with customer, owner, group and last article."""
    records: FakeRecords = field(default_factory=FakeRecords)
    ticket: RecordRef = RecordRef("ticket", 1)
    customer: RecordRef = RecordRef("user", 2)
    owner: RecordRef = RecordRef("user", 3)
    group: RecordRef = RecordRef("group", 1)
    article: RecordRef = RecordRef("ticket_article", 10)

    def __post_init__(self) -> None:
        self.records.add(
            self.ticket,
            title="Printer on fire",
            state_id=1,
            priority_id=2,
            owner_id=3,
            customer_id=2,
            group_id=1,
            updated_by_id=3,
            tags=["printer"],
            pending_time=None,
            organization_id=None,
        )
        self.records.add(self.customer, email=f"Nicole Braun <{CUSTOMER_EMAIL}>", firstname="Nicole", id=2)
        self.records.add(self.owner, email=OWNER_EMAIL, firstname="Agent", id=3)
        self.records.add(self.group, name="Users", email_address=f"Support <{SYSTEM_EMAIL}>")
        self.records.add(
            self.article,
            body="Hello <b>world</b>\nsecond line",
            content_type="text/plain",
            subject="Need help",
            preferences={},
            **{"from": f"Nicole Braun <{CUSTOMER_EMAIL}>", "reply_to": None},
        )
        self.records.relate(self.ticket, "customer", self.customer)
        self.records.relate(self.ticket, "owner", self.owner)
        self.records.relate(self.ticket, "group", self.group)
        self.records.relate(self.ticket, "article", self.article)

    def users(self) -> FakeUsers:
        return FakeUsers(
            [
                UserRef(id=2, email=CUSTOMER_EMAIL, fullname="Nicole Braun"),
                UserRef(id=3, email=OWNER_EMAIL, organization_id=7, fullname="Agent One"),
            ],
            keywords={"ticket_agents": [OWNER_EMAIL, "agent2@example.com"]},
        )

    def context(
        self,
        kind: ChangeKind = ChangeKind.CREATE,
        *,
        actor: UserRef | None = None,
        changes: dict[str, tuple[Any, Any]] | None = None,
        commit_id: str = "commit-1",
        rule_id: str | None = "rule-1",
    ) -> EvaluationContext:
        return EvaluationContext(
            commit_id=commit_id,
            change=RecordChange(record=self.ticket, kind=kind, changes=changes or {}),
            actor=actor,
            now=NOW,
            rule_id=rule_id,
        )


def build_executor(
    desk: Helpdesk,
    messenger: FakeMessenger | None = None,
    *,
    security_backend: Any = None,
    system_addresses: list[str] | None = None,
    users: FakeUsers | None = None,
) -> PerformExecutor:
    resolver = AttributeResolver(desk.records, timeout=1)
    recipients = RecipientResolver(
        resolver,
        users or desk.users(),
        system_addresses=[SYSTEM_EMAIL] if system_addresses is None else system_addresses,
        timeout=1,
    )
    return PerformExecutor(
        records=desk.records,
        resolver=resolver,
        recipients=recipients,
        messenger=messenger or FakeMessenger(),
        security_backend=security_backend,
        timeout=1,
        missing_value="-",
    )


def build_dispatcher(
    desk: Helpdesk,
    *rules: TriggerRule,
    messenger: FakeMessenger | None = None,
    **kwargs: Any,
) -> TriggerDispatcher:
    dispatcher = TriggerDispatcher(
        rules=FakeRuleStore(*rules),
        records=desk.records,
        users=desk.users(),
        messenger=messenger or FakeMessenger(),
        clock=lambda: NOW,
        timeout=1,
        **kwargs,
    )
    dispatcher.recipients.system_addresses = {SYSTEM_EMAIL}
    return dispatcher


def make_rule(rule_id: str, condition: dict[str, Any] | None, perform: dict[str, Any], **kwargs: Any) -> TriggerRule:
    return TriggerRule.from_definition(id=rule_id, name=f"trigger {rule_id}", condition=condition, perform=perform, **kwargs)
