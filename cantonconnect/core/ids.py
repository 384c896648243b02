"""
Opaque identifiers.

WalletId, PartyId and SessionId all wrap a plain string but never compare
equal to each other (or to a bare str), so one cannot be passed where
another is expected without an explicit conversion.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Literal

NetworkId = Literal["mainnet", "testnet", "devnet"]

NETWORKS = ("mainnet", "testnet", "devnet")

_WALLET_ID_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


@dataclass(frozen=True)
class _OpaqueId:
    value: str

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value!r})"


@dataclass(frozen=True, repr=False)
class WalletId(_OpaqueId):
    """Registry identifier of a wallet (lowercase slug)."""


@dataclass(frozen=True, repr=False)
class PartyId(_OpaqueId):
    """Canton party identifier, e.g. ``alice::1220abcd``."""


@dataclass(frozen=True, repr=False)
class SessionId(_OpaqueId):
    """Identifier of one connection session."""


def to_wallet_id(value: str) -> WalletId:
    if not isinstance(value, str) or not _WALLET_ID_RE.match(value):
        raise ValueError(f"Invalid wallet id: {value!r}")
    return WalletId(value)


def to_party_id(value: str) -> PartyId:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Party id must be a non-empty string")
    if value != value.strip():
        raise ValueError(f"Party id has surrounding whitespace: {value!r}")
    return PartyId(value)


def to_session_id(value: str) -> SessionId:
    if not isinstance(value, str) or not _SESSION_ID_RE.match(value):
        raise ValueError(f"Invalid session id: {value!r}")
    return SessionId(value)


def new_session_id() -> SessionId:
    return SessionId(secrets.token_urlsafe(24))


def to_network(value: str) -> NetworkId:
    if value not in NETWORKS:
        raise ValueError(f"Unknown network {value!r}, expected one of {', '.join(NETWORKS)}")
    return value  # type: ignore[return-value]
