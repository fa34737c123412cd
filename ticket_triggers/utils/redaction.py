"""Redaction helpers for logging recipients and transport errors."""

from __future__ import annotations

import re
from typing import Iterable

_URL_USERINFO_RE = re.compile(r"([a-z][a-z0-9+.-]*://)([^@/]+)@", re.IGNORECASE)
_SECRET_RE = re.compile(r"(?i)(password|secret|passphrase|private_key)=([^&\s]+)")
_ADDRESS_RE = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+)")


def redact_secrets(text: str) -> str:
    """Mask credentials embedded in URLs or key=value pairs."""
    if not text:
        return text
    redacted = _URL_USERINFO_RE.sub(r"\1***@", text)
    return _SECRET_RE.sub(r"\1=***", redacted)


def redact_address(address: str) -> str:
    """Keep the first character of the local part and the domain."""
    if not address:
        return address
    return _ADDRESS_RE.sub(r"\1***@\2", address)


def redact_addresses(addresses: Iterable[str]) -> str:
    return ", ".join(redact_address(address) for address in addresses)
