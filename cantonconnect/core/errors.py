"""
Error Taxonomy

Every failure surfaced by the session and trust layer is a
CantonConnectError with a stable code that UI layers and telemetry can key on.
Trust failures (unknown wallet, bad signature, stale registry) always fail
closed; they are never folded into "wallet unavailable".
"""

import asyncio
import re
from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorCode(str, Enum):
    """Stable error codes."""

    UNKNOWN_WALLET = "UNKNOWN_WALLET"
    USER_REJECTED = "USER_REJECTED"
    WALLET_UNAVAILABLE = "WALLET_UNAVAILABLE"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    TIMEOUT = "TIMEOUT"
    REGISTRY_FETCH_FAILED = "REGISTRY_FETCH_FAILED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    REGISTRY_STALE = "REGISTRY_STALE"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    ADAPTER_MALFUNCTION = "ADAPTER_MALFUNCTION"
    CAPABILITY_NOT_SUPPORTED = "CAPABILITY_NOT_SUPPORTED"
    ORIGIN_NOT_ALLOWED = "ORIGIN_NOT_ALLOWED"
    INVALID_STATE = "INVALID_STATE"


class CantonConnectError(Exception):
    """Base class for all session/trust layer errors."""

    code: ErrorCode = ErrorCode.TRANSPORT_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "cause": (
                {"name": type(self.cause).__name__, "message": str(self.cause)}
                if self.cause is not None
                else None
            ),
        }


class UnknownWalletError(CantonConnectError):
    """Wallet is not listed in the verified registry (or has no adapter)."""

    code = ErrorCode.UNKNOWN_WALLET

    def __init__(self, wallet_id: str, reason: Optional[str] = None):
        message = f'Wallet "{wallet_id}" is not in the trusted registry'
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"walletId": wallet_id, "reason": reason})


class UserRejectedError(CantonConnectError):
    """User declined the request in the wallet."""

    code = ErrorCode.USER_REJECTED

    def __init__(self, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"User rejected {operation}",
            details={"operation": operation, **(details or {})},
        )


class WalletUnavailableError(CantonConnectError):
    """Wallet is not installed or cannot serve this request."""

    code = ErrorCode.WALLET_UNAVAILABLE

    def __init__(self, wallet_id: str, reason: Optional[str] = None):
        message = f'Wallet "{wallet_id}" is unavailable'
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"walletId": wallet_id, "reason": reason})


class TransportError(CantonConnectError):
    """Communication with the wallet or registry failed."""

    code = ErrorCode.TRANSPORT_ERROR


class OperationTimeoutError(TransportError):
    """A caller-supplied timeout was exceeded."""

    code = ErrorCode.TIMEOUT

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f'Operation "{operation}" timed out after {timeout_seconds:g}s',
            details={"operation": operation, "timeoutSeconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class RegistryFetchError(TransportError):
    """Manifest could not be fetched."""

    code = ErrorCode.REGISTRY_FETCH_FAILED

    def __init__(self, url: str, reason: str, cause: Optional[BaseException] = None):
        super().__init__(
            f'Failed to fetch registry from "{url}": {reason}',
            details={"url": url, "reason": reason},
            cause=cause,
        )


class InvalidSignatureError(CantonConnectError):
    """Manifest failed signature verification or is not in a recognized format."""

    code = ErrorCode.INVALID_SIGNATURE

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Registry verification failed: {reason}",
            details={"reason": reason, **(details or {})},
        )
        self.reason = reason


class RegistryStaleError(CantonConnectError):
    """Registry is too old to be trusted and could not be refreshed."""

    code = ErrorCode.REGISTRY_STALE

    def __init__(self, age_seconds: Optional[float], limit_seconds: float):
        if age_seconds is None:
            message = "No verified registry is available"
        else:
            message = (
                f"Registry is {age_seconds:.0f}s old, beyond the {limit_seconds:g}s limit"
            )
        super().__init__(
            message,
            details={"ageSeconds": age_seconds, "limitSeconds": limit_seconds},
        )


class OperationInProgressError(CantonConnectError):
    """Another connect/restore/disconnect is already in flight."""

    code = ErrorCode.OPERATION_IN_PROGRESS

    def __init__(self, requested: str, in_flight: str):
        super().__init__(
            f'Cannot start "{requested}" while "{in_flight}" is in progress',
            details={"requested": requested, "inFlight": in_flight},
        )


class AdapterMalfunctionError(CantonConnectError):
    """Adapter violated its contract (e.g. raised from restore)."""

    code = ErrorCode.ADAPTER_MALFUNCTION

    def __init__(self, wallet_id: str, operation: str, cause: Optional[BaseException] = None):
        super().__init__(
            f'Adapter "{wallet_id}" malfunctioned during {operation}',
            details={"walletId": wallet_id, "operation": operation},
            cause=cause,
        )


class CapabilityNotSupportedError(CantonConnectError):
    """Wallet lacks capabilities the caller requires."""

    code = ErrorCode.CAPABILITY_NOT_SUPPORTED

    def __init__(self, wallet_id: str, missing: Iterable[str]):
        missing = list(missing)
        super().__init__(
            f'Wallet "{wallet_id}" does not support: {", ".join(missing)}',
            details={"walletId": wallet_id, "missing": missing},
        )


class OriginNotAllowedError(CantonConnectError):
    """The registry restricts this wallet to other origins."""

    code = ErrorCode.ORIGIN_NOT_ALLOWED

    def __init__(self, origin: str, allowed: Iterable[str]):
        super().__init__(
            f'Origin "{origin}" is not allowed',
            details={"origin": origin, "allowedOrigins": list(allowed)},
        )


class InvalidTransitionError(CantonConnectError):
    """Requested operation is not valid in the current connection state."""

    code = ErrorCode.INVALID_STATE

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Invalid transition from {from_state} to {to_state}",
            details={"fromState": from_state, "toState": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class NoActiveSessionError(CantonConnectError):
    """A session-scoped call was made while no session is connected."""

    code = ErrorCode.INVALID_STATE

    def __init__(self, operation: str):
        super().__init__(f"No active session for {operation}", details={"operation": operation})


TRUST_FAILURES = (UnknownWalletError, InvalidSignatureError, RegistryStaleError)

_REJECTION_PATTERNS = ("rejected", "denied", "cancelled", "canceled", "declined")
_TIMEOUT_PATTERNS = ("timeout", "timed out")
_MS_RE = re.compile(r"(\d+)\s*ms", re.IGNORECASE)
_SEC_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:s|sec|second)s?\b", re.IGNORECASE)


def is_trust_failure(error: BaseException) -> bool:
    return isinstance(error, TRUST_FAILURES)


def map_adapter_error(
    error: BaseException,
    phase: str,
    wallet_id: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> CantonConnectError:
    """
    Normalize an exception raised by an adapter into the error taxonomy.

    Already-classified errors pass through unchanged; foreign exceptions are
    classified by type first, then by message.
    """
    if isinstance(error, CantonConnectError):
        return error

    if isinstance(error, asyncio.TimeoutError):
        return OperationTimeoutError(phase, timeout_seconds or 0)

    message = str(error)
    lowered = message.lower()

    if any(p in lowered for p in _REJECTION_PATTERNS):
        return UserRejectedError(
            phase,
            details={"walletId": wallet_id, "originalMessage": message},
        )

    if any(p in lowered for p in _TIMEOUT_PATTERNS):
        seconds = timeout_seconds
        if not seconds:
            ms_match = _MS_RE.search(message)
            sec_match = _SEC_RE.search(message)
            if ms_match:
                seconds = int(ms_match.group(1)) / 1000
            elif sec_match:
                seconds = float(sec_match.group(1))
        return OperationTimeoutError(phase, seconds or 0)

    return TransportError(
        message or f"Adapter error during {phase}",
        details={
            "walletId": wallet_id,
            "phase": phase,
            "originalError": type(error).__name__,
        },
        cause=error,
    )
