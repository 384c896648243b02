"""
CantonConnect: one session and trust layer for Canton wallets.
"""

from .adapters import AdapterRegistry, WalletAdapter, poll_until
from .client import CantonConnectClient, create_client
from .config import Settings
from .core import (
    AdapterContext,
    Capability,
    CantonConnectError,
    ConnectResult,
    DetectResult,
    ErrorCode,
    PersistedSession,
    Session,
    WalletId,
    to_wallet_id,
)
from .events import EventBus, EventType
from .registry import RegistryVerifier, WalletManifestEntry
from .session import ConnectionState, SessionLifecycleManager
from .storage import SessionStore
from .telemetry import Telemetry

__version__ = "0.1.0"

__all__ = [
    # Entry point
    "create_client",
    "CantonConnectClient",
    "Settings",
    # Adapters
    "WalletAdapter",
    "AdapterRegistry",
    "AdapterContext",
    "ConnectResult",
    "DetectResult",
    "Capability",
    "poll_until",
    # Sessions
    "SessionLifecycleManager",
    "ConnectionState",
    "Session",
    "PersistedSession",
    "SessionStore",
    "WalletId",
    "to_wallet_id",
    # Registry
    "RegistryVerifier",
    "WalletManifestEntry",
    # Events and errors
    "EventBus",
    "EventType",
    "CantonConnectError",
    "ErrorCode",
    # Telemetry
    "Telemetry",
]
