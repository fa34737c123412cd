"""Signing/encryption policy decisions and S/MIME processing for notifications.

Invariants:
- Backends are selected from a static registry keyed by SecurityBackendType.
- ``discard`` blocks the whole outbound action when its check fails;
  ``always`` records the failure on the artifact and continues.
- Without an active backend, security options are ignored.
- ``outgoing`` only applies what the recorded preferences promise; it signs
  before it encrypts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.message import EmailMessage, MIMEPart
from email.utils import getaddresses
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding, load_pem_private_key, pkcs7

from ticket_triggers.core.config import settings
from ticket_triggers.core.exceptions import DeliveryError, SecurityPolicyBlock
from ticket_triggers.schema.trigger import SecurityMode
from ticket_triggers.services.interfaces import CertificateStore, StoredCertificate
from ticket_triggers.utils.redaction import redact_address

logger = logging.getLogger("ticket_triggers.services.secure_mailing")


class SecurityBackendType(str, enum.Enum):
    """Known secure mailing backends."""
    SMIME = "smime"


@dataclass(frozen=True, slots=True)
class SecurityCheck:
    """Outcome of one sign or encryption capability check."""
    success: bool
    comment: str


@dataclass(slots=True)
class SecurityDecision:
    """Whether to send, plus the preferences recorded on the artifact."""
    blocked: bool = False
    reason: str | None = None
    preferences: dict[str, Any] = field(default_factory=dict)


class SecurityBackend(Protocol):
    label: str

    async def check_sign(self, sender: str | None, now: datetime) -> SecurityCheck:
        ...

    async def check_encryption(self, recipients: list[str], now: datetime) -> SecurityCheck:
        ...

    async def outgoing(self, message: EmailMessage, security: Mapping[str, Any]) -> bytes:
        ...


class SMIMEBackend:
    """X.509 certificate checks and PKCS#7 processing for S/MIME mail."""

    label = "S/MIME"

    def __init__(self, certificates: CertificateStore) -> None:
        self.certificates = certificates

    @staticmethod
    def _validity_error(certificate: x509.Certificate, address: str, now: datetime) -> str | None:
        if now < certificate.not_valid_before_utc:
            return f"Certificate for {address} is not valid yet."
        if now > certificate.not_valid_after_utc:
            return f"Certificate for {address} has expired."
        return None

    async def _certificate(self, address: str, now: datetime) -> tuple[StoredCertificate | None, str | None]:
        stored = await self.certificates.find_certificate(address)
        if stored is None:
            return None, f"Certificate for {address} not found."
        try:
            certificate = x509.load_pem_x509_certificate(stored.certificate_pem)
        except ValueError:
            return None, f"Certificate for {address} could not be read."
        error = self._validity_error(certificate, address, now)
        if error:
            return None, error
        return stored, None

    async def check_sign(self, sender: str | None, now: datetime) -> SecurityCheck:
        """Signing needs a valid sender certificate with a usable private key."""
        if not sender:
            return SecurityCheck(False, "No sender address to sign with.")
        stored, error = await self._certificate(sender, now)
        if stored is None:
            return SecurityCheck(False, error or "Certificate not found.")
        if not stored.private_key_pem:
            return SecurityCheck(False, f"Private key for {sender} not found.")
        secret = stored.private_key_secret.encode("utf-8") if stored.private_key_secret else None
        try:
            load_pem_private_key(stored.private_key_pem, password=secret)
        except (ValueError, TypeError):
            return SecurityCheck(False, f"Private key for {sender} could not be loaded.")
        return SecurityCheck(True, f"Certificate for {sender} found.")

    async def check_encryption(self, recipients: list[str], now: datetime) -> SecurityCheck:
        """Encryption needs a valid certificate for every recipient."""
        if not recipients:
            return SecurityCheck(False, "No recipients to encrypt for.")
        for recipient in recipients:
            stored, error = await self._certificate(recipient, now)
            if stored is None:
                return SecurityCheck(False, error or "Certificate not found.")
            public_key = x509.load_pem_x509_certificate(stored.certificate_pem).public_key()
            if not isinstance(public_key, rsa.RSAPublicKey):
                return SecurityCheck(False, f"Certificate for {recipient} can not be used for encryption.")
        return SecurityCheck(True, f"Certificates found for {', '.join(recipients)}.")

    async def outgoing(self, message: EmailMessage, security: Mapping[str, Any]) -> bytes:
        """Sign and/or encrypt a rendered message as its security preferences record.

        Returns the wire form: the message's own headers followed by the
        S/MIME entity, with CRLF line endings.
        """
        sign = security_succeeded(security, "sign")
        encrypt = security_succeeded(security, "encryption")
        if not sign and not encrypt:
            return message.as_bytes(policy=policy.SMTP)
        entity = _content_entity(message)
        if sign:
            entity = await self._sign(entity, _addresses(message, "From"))
        if encrypt:
            entity = await self._encrypt(entity, _addresses(message, "To", "Cc"))
        return _CRLF_RE.sub(b"\r\n", _outer_headers(message) + entity)

    async def _sign(self, entity: bytes, senders: list[str]) -> bytes:
        sender = senders[0] if senders else None
        stored = await self.certificates.find_certificate(sender) if sender else None
        if stored is None or not stored.private_key_pem:
            raise DeliveryError(f"sign_failed: no signing key for {redact_address(sender or '-')}")
        secret = stored.private_key_secret.encode("utf-8") if stored.private_key_secret else None
        certificate = x509.load_pem_x509_certificate(stored.certificate_pem)
        key = load_pem_private_key(stored.private_key_pem, password=secret)
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(entity)
            .add_signer(certificate, key, hashes.SHA256())
            .sign(Encoding.SMIME, [pkcs7.PKCS7Options.DetachedSignature])
        )

    async def _encrypt(self, entity: bytes, recipients: list[str]) -> bytes:
        if not recipients:
            raise DeliveryError("encryption_failed: no recipients")
        builder = pkcs7.PKCS7EnvelopeBuilder().set_data(entity)
        for recipient in recipients:
            stored = await self.certificates.find_certificate(recipient)
            if stored is None:
                raise DeliveryError(f"encryption_failed: no certificate for {redact_address(recipient)}")
            builder = builder.add_recipient(x509.load_pem_x509_certificate(stored.certificate_pem))
        return builder.encrypt(Encoding.SMIME, [])


_CRLF_RE = re.compile(rb"\r?\n")
_ENTITY_HEADERS = {"mime-version", "content-type", "content-transfer-encoding", "content-disposition"}


def security_succeeded(security: Mapping[str, Any] | None, aspect: str) -> bool:
    """Return True when the recorded preferences promise ``sign`` or ``encryption``."""
    if not security:
        return False
    outcome = security.get(aspect)
    return isinstance(outcome, Mapping) and outcome.get("success") is True


def _addresses(message: EmailMessage, *headers: str) -> list[str]:
    values = [str(value) for header in headers for value in message.get_all(header, [])]
    return [address for _, address in getaddresses(values) if address]


def _content_entity(message: EmailMessage) -> bytes:
    """The body as a standalone MIME entity, the part S/MIME protects."""
    part = MIMEPart(policy=policy.SMTP)
    part.set_content(message.get_content(), subtype=message.get_content_subtype())
    return part.as_bytes()


def _outer_headers(message: EmailMessage) -> bytes:
    return b"".join(
        policy.SMTP.fold_binary(name, value)
        for name, value in message.items()
        if name.lower() not in _ENTITY_HEADERS
    )


SECURITY_BACKENDS: dict[SecurityBackendType, Callable[[CertificateStore], SecurityBackend]] = {
    SecurityBackendType.SMIME: SMIMEBackend,
}


def build_security_backend(
    certificates: CertificateStore | None,
    names: Iterable[str] | None = None,
) -> SecurityBackend | None:
    """Return the first active backend named in settings, if any."""
    if certificates is None:
        return None
    active = settings.security_backends if names is None else names
    for name in active:
        try:
            tag = SecurityBackendType(str(name).lower())
        except ValueError:
            logger.warning("Unknown security backend %s ignored", name)
            continue
        return SECURITY_BACKENDS[tag](certificates)
    return None


async def _run_check(check: Awaitable[SecurityCheck], *, timeout: float) -> SecurityCheck:
    try:
        return await asyncio.wait_for(check, timeout=timeout)
    except Exception as exc:
        logger.warning("Security check failed: %s", exc or type(exc).__name__)
        return SecurityCheck(False, "Security check could not be completed.")


async def decide_security(
    backend: SecurityBackend | None,
    *,
    sign: SecurityMode,
    encryption: SecurityMode,
    sender: str | None,
    recipients: list[str],
    now: datetime,
    timeout: float | None = None,
) -> SecurityDecision:
    """Check sign/encryption capabilities against the requested policy."""
    if backend is None:
        return SecurityDecision()
    limit = timeout if timeout is not None else settings.lookup_timeout_seconds
    preferences: dict[str, Any] = {"type": backend.label}
    aspects = (
        ("sign", sign, lambda: backend.check_sign(sender, now)),
        ("encryption", encryption, lambda: backend.check_encryption(recipients, now)),
    )
    for aspect, mode, check in aspects:
        if mode == SecurityMode.NO:
            preferences[aspect] = {"success": False, "comment": "Not requested."}
            continue
        result = await _run_check(check(), timeout=limit)
        preferences[aspect] = {"success": result.success, "comment": result.comment}
        if not result.success and mode == SecurityMode.DISCARD:
            block = SecurityPolicyBlock(f"{aspect} discarded: {result.comment}")
            return SecurityDecision(blocked=True, reason=block.detail, preferences=preferences)
    return SecurityDecision(preferences=preferences)
