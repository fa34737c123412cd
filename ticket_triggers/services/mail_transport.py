"""Delivery transports for outbox messages, selected by name from a static registry."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, Protocol

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import DeliveryError
from ticket_triggers.utils.redaction import redact_addresses

logger = logging.getLogger("ticket_triggers.services.mail_transport")


@dataclass(slots=True)
class MailEnvelope:
    """Transport-level view of one outbox message."""
    message_id: str
    sender: str | None
    recipients: list[str]
    subject: str
    body: str
    content_type: str = "text/html"
    headers: dict[str, str] = field(default_factory=dict)
    raw: bytes | None = None


def build_email(envelope: MailEnvelope) -> EmailMessage:
    message = EmailMessage()
    message["Message-ID"] = make_msgid(idstring=envelope.message_id)
    if envelope.sender:
        message["From"] = envelope.sender
    message["To"] = ", ".join(envelope.recipients)
    message["Subject"] = envelope.subject
    for name, value in envelope.headers.items():
        message[name] = value
    subtype = "html" if envelope.content_type == "text/html" else "plain"
    message.set_content(envelope.body, subtype=subtype)
    return message


class MailTransport(Protocol):
    name: str

    def send(self, envelope: MailEnvelope) -> None:
        ...


class LogTransport:
    """Write deliveries to the log instead of a mail server."""

    name = "log"

    def send(self, envelope: MailEnvelope) -> None:
        logger.info(
            "Delivered message %s to %s: %s (%s)",
            envelope.message_id,
            redact_addresses(envelope.recipients),
            envelope.subject,
            "s/mime" if envelope.raw else "plain",
        )


class SmtpTransport:
    """Deliver through an SMTP relay configured in settings."""

    name = "smtp"

    def __init__(self) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.timeout = settings.delivery_timeout_seconds

    def send(self, envelope: MailEnvelope) -> None:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                if envelope.raw is not None:
                    smtp.sendmail(envelope.sender or "", envelope.recipients, envelope.raw)
                else:
                    smtp.send_message(build_email(envelope))
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"smtp delivery failed: {exc}") from exc


MAIL_TRANSPORTS: dict[str, Callable[[], MailTransport]] = {
    LogTransport.name: LogTransport,
    SmtpTransport.name: SmtpTransport,
}


def get_transport(name: str | None = None) -> MailTransport:
    """Instantiate the configured transport; unknown names are a configuration error."""
    key = (name or settings.mail_transport).lower()
    try:
        factory = MAIL_TRANSPORTS[key]
    except KeyError as exc:
        raise DeliveryError(f"unknown mail transport {key!r}") from exc
    return factory()
