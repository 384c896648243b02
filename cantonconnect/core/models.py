"""
Session and adapter data models.

Session is the live connection record owned by the lifecycle manager;
PersistedSession is what the session store hands back after decrypting the
at-rest record. Both are frozen: a change of state produces a new object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from .capabilities import CapabilityLike, snapshot
from .ids import (
    NetworkId,
    PartyId,
    SessionId,
    WalletId,
    to_network,
    to_party_id,
    to_session_id,
    to_wallet_id,
)

if TYPE_CHECKING:
    from ..registry.manifest import WalletManifestEntry


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC. Raises TypeError for non-datetimes."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise TypeError(f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return aware_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class Session:
    """Live connection to one wallet."""

    session_id: SessionId
    wallet_id: WalletId
    party_id: PartyId
    network: NetworkId
    origin: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    capabilities_snapshot: Tuple[str, ...] = ()
    restore_reason: Optional[str] = None
    # Adapter-specific values (tokens); encrypted at rest, never logged
    metadata: Dict[str, str] = field(default_factory=dict, hash=False, repr=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def has_capability(self, capability: CapabilityLike) -> bool:
        return str(getattr(capability, "value", capability)) in self.capabilities_snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": str(self.session_id),
            "walletId": str(self.wallet_id),
            "partyId": str(self.party_id),
            "network": self.network,
            "origin": self.origin,
            "createdAt": _ts(self.created_at),
            "expiresAt": _ts(self.expires_at),
            "capabilitiesSnapshot": list(self.capabilities_snapshot),
            "restoreReason": self.restore_reason,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        created_at = _parse_ts(data.get("createdAt"))
        if created_at is None:
            raise ValueError("Session record missing createdAt")
        return cls(
            session_id=to_session_id(data["sessionId"]),
            wallet_id=to_wallet_id(data["walletId"]),
            party_id=to_party_id(data["partyId"]),
            network=to_network(data["network"]),
            origin=data["origin"],
            created_at=created_at,
            expires_at=_parse_ts(data.get("expiresAt")),
            capabilities_snapshot=snapshot(data.get("capabilitiesSnapshot") or []),
            restore_reason=data.get("restoreReason"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class PersistedSession:
    """
    Decrypted view of the at-rest session record.

    ``encrypted`` is the ciphertext exactly as stored; every other field was
    recovered from it.
    """

    session: Session
    encrypted: str

    @property
    def session_id(self) -> SessionId:
        return self.session.session_id

    @property
    def wallet_id(self) -> WalletId:
        return self.session.wallet_id

    @property
    def party_id(self) -> PartyId:
        return self.session.party_id

    @property
    def network(self) -> NetworkId:
        return self.session.network

    @property
    def origin(self) -> str:
        return self.session.origin

    @property
    def created_at(self) -> datetime:
        return self.session.created_at

    @property
    def capabilities_snapshot(self) -> Tuple[str, ...]:
        return self.session.capabilities_snapshot

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.session.expires_at

    @property
    def metadata(self) -> Dict[str, str]:
        return self.session.metadata

    def to_session(self) -> Session:
        return self.session


@dataclass(frozen=True)
class DetectResult:
    installed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConnectResult:
    """
    What an adapter returns from a successful connect.

    ``capabilities`` is the set the wallet granted for this session; empty
    means "everything declared".
    """

    party_id: PartyId
    expires_at: Optional[datetime] = None
    capabilities: Tuple[str, ...] = ()
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class AdapterContext:
    """Environment handed to every adapter call."""

    app_name: str
    origin: str
    network: NetworkId
    get_wallet: Callable[[WalletId], Optional["WalletManifestEntry"]]
    timeout_seconds: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)
