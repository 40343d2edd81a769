"""Request identity: device fingerprints and rate-limit identifiers."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from loguru import logger


TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-\.]{8,128}$")
MAX_DEVICE_FIELD_LENGTH = 256
UNKNOWN_ADDRESS = "unknown"


class IdentifierKind(str, Enum):
    NETWORK = "network"
    TOKEN = "token"
    FINGERPRINT = "fingerprint"


class MalformedIdentity(ValueError):
    """Raised when a supplied token or device payload is structurally invalid."""


@dataclass(frozen=True)
class Identifier:
    kind: IdentifierKind
    value: str

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class DeviceInfo:
    """Coarse device and locale attributes, every field optional."""

    device_name: Optional[str] = None
    device_version: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None

    def fingerprint_fields(self) -> Tuple[Optional[str], ...]:
        # Field order is part of the fingerprint; do not reorder.
        return (self.device_name, self.device_version, self.os, self.country, self.city)

    def as_dict(self) -> dict:
        return {
            "device_name": self.device_name,
            "device_version": self.device_version,
            "os": self.os,
            "country": self.country,
            "city": self.city,
        }


@dataclass(frozen=True)
class RequestContext:
    """Everything the quota engine knows about one inbound request."""

    network_address: str
    client_token: Optional[str] = None
    user_agent: str = ""
    device: Optional[DeviceInfo] = None
    identifiers: Tuple[Identifier, ...] = field(default=(), compare=False)

    @property
    def cache_key(self) -> Tuple[str, Optional[str], Optional[str]]:
        fingerprint = next(
            (identifier.value for identifier in self.identifiers if identifier.kind is IdentifierKind.FINGERPRINT),
            None,
        )
        if fingerprint is None and not self.identifiers:
            fingerprint = generate_fingerprint(self.device)
        return (self.network_address, self.client_token, fingerprint)


def generate_fingerprint(device: Optional[DeviceInfo]) -> Optional[str]:
    """Return a SHA-256 digest of the device attributes, or None when there are none."""

    if device is None:
        return None
    fields = device.fingerprint_fields()
    if not any(fields):
        return None
    joined = "|".join(value or "" for value in fields)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def validate_token(token: Optional[str]) -> Optional[str]:
    """Return the stripped token, None when empty, or raise MalformedIdentity."""

    if token is None:
        return None
    if not isinstance(token, str):
        raise MalformedIdentity("Client token must be a string.")
    stripped = token.strip()
    if not stripped:
        return None
    if not TOKEN_PATTERN.match(stripped):
        raise MalformedIdentity("Client token has an invalid format.")
    return stripped


def validate_device(device: Optional[DeviceInfo]) -> Optional[DeviceInfo]:
    if device is None:
        return None
    for value in device.fingerprint_fields():
        if value is None:
            continue
        if not isinstance(value, str) or len(value) > MAX_DEVICE_FIELD_LENGTH:
            raise MalformedIdentity("Device payload has an invalid field.")
    return device


def resolve_identifiers(
    network_address: Optional[str],
    client_token: Optional[str] = None,
    device: Optional[DeviceInfo] = None,
) -> List[Identifier]:
    """Build the ordered, de-duplicated identifier list for a request.

    NETWORK is always present. TOKEN and FINGERPRINT are included when they can
    be derived; malformed inputs are dropped rather than failing the request.
    """

    identifiers: List[Identifier] = [
        Identifier(IdentifierKind.NETWORK, (network_address or "").strip() or UNKNOWN_ADDRESS)
    ]

    try:
        token = validate_token(client_token)
    except MalformedIdentity as exc:
        logger.warning("Ignoring client token: {}", exc)
        token = None
    if token:
        identifiers.append(Identifier(IdentifierKind.TOKEN, token))

    try:
        fingerprint = generate_fingerprint(validate_device(device))
    except MalformedIdentity as exc:
        logger.warning("Ignoring device payload: {}", exc)
        fingerprint = None
    if fingerprint:
        identifiers.append(Identifier(IdentifierKind.FINGERPRINT, fingerprint))

    seen = set()
    unique: List[Identifier] = []
    for identifier in identifiers:
        if identifier in seen:
            continue
        seen.add(identifier)
        unique.append(identifier)
    return unique


def build_request_context(
    network_address: Optional[str],
    client_token: Optional[str] = None,
    user_agent: str = "",
    device: Optional[DeviceInfo] = None,
) -> RequestContext:
    """Create a RequestContext with its identifiers resolved once."""

    identifiers = resolve_identifiers(network_address, client_token, device)
    token = next((item.value for item in identifiers if item.kind is IdentifierKind.TOKEN), None)
    return RequestContext(
        network_address=identifiers[0].value,
        client_token=token,
        user_agent=user_agent or "",
        device=device,
        identifiers=tuple(identifiers),
    )


__all__ = [
    "DeviceInfo",
    "Identifier",
    "IdentifierKind",
    "MalformedIdentity",
    "RequestContext",
    "build_request_context",
    "generate_fingerprint",
    "resolve_identifiers",
    "validate_token",
]
