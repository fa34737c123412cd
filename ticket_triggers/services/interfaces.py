"""Collaborator contracts implemented by the host application.

Every method is async; the engine bounds each call with a timeout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from ticket_triggers.services.context import NotFoundType, RecordRef, UserRef

if TYPE_CHECKING:
    from ticket_triggers.schema.trigger import TriggerRule
    from ticket_triggers.services.perform_executor import ExecutionResult


@dataclass(slots=True)
class OutboundMessage:
    """Outbound notification request produced by a perform action."""
    to: list[str]
    subject: str
    body: str
    internal: bool
    dedup_key: str
    record: RecordRef
    rule_id: str | None = None
    sender: str | None = None
    content_type: str = "text/html"
    security: dict[str, Any] = field(default_factory=dict)

    @property
    def to_header(self) -> str:
        return ", ".join(self.to)


@dataclass(slots=True)
class DeliveryReceipt:
    """Acknowledgement returned by the outbound message capability."""
    message_id: str
    dedup_key: str
    duplicate: bool = False


@dataclass(frozen=True, slots=True)
class StoredCertificate:
    """PEM certificate material as kept by the host key store."""
    address: str
    certificate_pem: bytes
    private_key_pem: bytes | None = None
    private_key_secret: str | None = None


class RecordAccess(Protocol):
    async def get_attribute(self, record: RecordRef, attribute: str) -> Any:
        """Return the attribute value or ``NOT_FOUND``."""

    async def set_attribute(self, record: RecordRef, attribute: str, value: Any, *, commit_id: str) -> None:
        """Write an attribute; raise ``AttributeValidationError`` when invalid."""

    async def related(self, record: RecordRef, relation: str) -> RecordRef | None:
        """Follow a relation such as ``customer`` or ``article`` (last article)."""


class CalendarCapability(Protocol):
    async def is_working_time(self, calendar_id: Any, instant: datetime) -> bool:
        """Return True when the instant falls inside the calendar's business hours."""


class UserDirectory(Protocol):
    async def lookup_user(self, user_id: Any) -> UserRef | NotFoundType | None:
        """Return the user, or ``None``/``NOT_FOUND`` when unknown."""

    async def resolve_keyword(self, keyword: str, record: RecordRef) -> str | list[str] | None:
        ...


class OutboundMessenger(Protocol):
    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        """Accept a message for delivery; raise ``DeliveryError`` on rejection."""


class RuleStore(Protocol):
    async def active_rules(self) -> list["TriggerRule"]:
        """Return enabled rules ordered by priority."""


class CertificateStore(Protocol):
    async def find_certificate(self, address: str) -> StoredCertificate | None:
        ...


class FiringLedger(Protocol):
    async def claim(self, rule_id: str, record_key: str, commit_id: str) -> bool:
        """Return False when the tuple already fired."""

    async def record(self, result: "ExecutionResult") -> None:
        ...
