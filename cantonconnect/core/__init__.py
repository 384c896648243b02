"""
Core types: identifiers, capabilities, session models and errors.
"""

from .capabilities import (
    Capability,
    CapabilitySet,
    capability_set,
    capability_tag,
    missing_capabilities,
    snapshot,
)
from .errors import (
    AdapterMalfunctionError,
    CantonConnectError,
    CapabilityNotSupportedError,
    ErrorCode,
    InvalidSignatureError,
    InvalidTransitionError,
    NoActiveSessionError,
    OperationInProgressError,
    OperationTimeoutError,
    OriginNotAllowedError,
    RegistryFetchError,
    RegistryStaleError,
    TransportError,
    UnknownWalletError,
    UserRejectedError,
    WalletUnavailableError,
    is_trust_failure,
    map_adapter_error,
)
from .ids import (
    NETWORKS,
    NetworkId,
    PartyId,
    SessionId,
    WalletId,
    new_session_id,
    to_network,
    to_party_id,
    to_session_id,
    to_wallet_id,
)
from .models import (
    AdapterContext,
    ConnectResult,
    DetectResult,
    PersistedSession,
    Session,
)

__all__ = [
    # Identifiers
    "WalletId",
    "PartyId",
    "SessionId",
    "NetworkId",
    "NETWORKS",
    "to_wallet_id",
    "to_party_id",
    "to_session_id",
    "to_network",
    "new_session_id",
    # Capabilities
    "Capability",
    "CapabilitySet",
    "capability_tag",
    "capability_set",
    "snapshot",
    "missing_capabilities",
    # Models
    "Session",
    "PersistedSession",
    "AdapterContext",
    "ConnectResult",
    "DetectResult",
    # Errors
    "ErrorCode",
    "CantonConnectError",
    "UnknownWalletError",
    "UserRejectedError",
    "WalletUnavailableError",
    "TransportError",
    "OperationTimeoutError",
    "RegistryFetchError",
    "InvalidSignatureError",
    "RegistryStaleError",
    "OperationInProgressError",
    "AdapterMalfunctionError",
    "CapabilityNotSupportedError",
    "OriginNotAllowedError",
    "InvalidTransitionError",
    "NoActiveSessionError",
    "is_trust_failure",
    "map_adapter_error",
]
