"""
Session Lifecycle Manager

State machine that coordinates adapters, the registry verifier and the
session store into connect / restore / disconnect / expiry.

    DISCONNECTED -> CONNECTING  -> CONNECTED | DISCONNECTED
    DISCONNECTED -> RESTORING   -> CONNECTED | DISCONNECTED
    CONNECTED    -> DISCONNECTING -> DISCONNECTED
    CONNECTED    -> DISCONNECTED          (expiry)

At most one connect/restore/disconnect runs at a time per manager; a second
call fails immediately with OperationInProgressError.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Union

import structlog

from ..adapters.base import CAPABILITY_METHODS, WalletAdapter, install_guard
from ..adapters.registry import AdapterRegistry
from ..core.capabilities import (
    Capability,
    CapabilityLike,
    CapabilitySet,
    capability_set,
    capability_tag,
    missing_capabilities,
    snapshot,
)
from ..core.errors import (
    AdapterMalfunctionError,
    CantonConnectError,
    CapabilityNotSupportedError,
    InvalidTransitionError,
    NoActiveSessionError,
    OperationInProgressError,
    OperationTimeoutError,
    OriginNotAllowedError,
    UnknownWalletError,
    WalletUnavailableError,
    map_adapter_error,
)
from ..core.ids import NetworkId, WalletId, new_session_id, to_party_id, to_wallet_id
from ..core.models import AdapterContext, ConnectResult, Session, aware_utc, utcnow
from ..events import (
    ErrorEvent,
    EventBus,
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionExpiredEvent,
    StateChangedEvent,
)
from ..registry.manifest import WalletManifestEntry
from ..registry.verifier import RegistryVerifier
from ..storage.session_store import SessionStore
from ..telemetry import (
    RESTORE_ATTEMPTS,
    SESSIONS_CREATED,
    SESSIONS_RESTORED,
    WALLET_CONNECT_ATTEMPTS,
    WALLET_CONNECT_SUCCESS,
    Telemetry,
    error_metric,
)

logger = structlog.stdlib.get_logger("cantonconnect.session")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RESTORING = "restoring"
    DISCONNECTING = "disconnecting"


class SessionLifecycleManager:
    """
    Owns the live Session for one application origin.

    Features:
    - Trust check against the verified registry on every connect and restore
    - Capability snapshot at connect/restore, never re-read mid-session
    - Encrypted persistence through the session store
    - Expiry detection, optionally scheduled at ``expires_at``
    - Events for every state change and session outcome
    """

    TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
        ConnectionState.DISCONNECTED: {
            ConnectionState.CONNECTING,
            ConnectionState.RESTORING,
        },
        ConnectionState.CONNECTING: {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,  # Failure, rejection or timeout
        },
        ConnectionState.RESTORING: {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,  # Nothing to restore or restore refused
        },
        ConnectionState.CONNECTED: {
            ConnectionState.DISCONNECTING,
            ConnectionState.DISCONNECTED,  # Expiry
        },
        ConnectionState.DISCONNECTING: {
            ConnectionState.DISCONNECTED,
        },
    }

    def __init__(
        self,
        adapters: AdapterRegistry,
        registry: RegistryVerifier,
        store: SessionStore,
        *,
        app_name: str,
        origin: str,
        network: NetworkId,
        events: Optional[EventBus] = None,
        connect_timeout_seconds: float = 120.0,
        restore_timeout_seconds: float = 15.0,
        disconnect_timeout_seconds: float = 10.0,
        auto_expire: bool = True,
        clock: Callable[[], datetime] = utcnow,
        telemetry: Optional[Telemetry] = None,
    ):
        if store.origin != origin:
            raise ValueError(f"Session store origin {store.origin} does not match {origin}")

        self.adapters = adapters
        self.registry = registry
        self.store = store
        self.app_name = app_name
        self.origin = origin
        self.network = network
        self.events = events or EventBus()
        self.connect_timeout_seconds = connect_timeout_seconds
        self.restore_timeout_seconds = restore_timeout_seconds
        self.disconnect_timeout_seconds = disconnect_timeout_seconds
        self.auto_expire = auto_expire
        self._clock = clock
        self.telemetry = telemetry

        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[Session] = None
        self._in_flight: Optional[str] = None
        self._expiry_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        """Current session as last recorded; may be past expiry until checked."""
        return self._session

    @property
    def in_flight(self) -> Optional[str]:
        return self._in_flight

    async def get_active_session(self) -> Optional[Session]:
        """Current session, after expiring it if its time has passed."""
        await self.check_expiry()
        return self._session

    def list_wallets(
        self,
        required_capabilities: Optional[Iterable[CapabilityLike]] = None,
    ) -> List[WalletManifestEntry]:
        """
        Wallets from the verified registry usable by this application.

        Filters out entries whose origin allowlist excludes this origin or
        that do not support the configured network.
        """
        required = capability_set(required_capabilities or ())
        wallets = []
        for entry in self.registry.list_wallets():
            if not entry.allows_origin(self.origin):
                continue
            if not entry.supports_network(self.network):
                continue
            if required and not required.issubset(entry.capabilities):
                continue
            wallets.append(entry)
        return wallets

    # =========================================================================
    # State machine plumbing
    # =========================================================================

    def can_transition_to(self, to_state: ConnectionState) -> bool:
        return to_state in self.TRANSITIONS.get(self._state, set())

    async def _transition(self, to_state: ConnectionState, reason: Optional[str] = None) -> None:
        from_state = self._state
        if not self.can_transition_to(to_state):
            raise InvalidTransitionError(from_state.value, to_state.value)

        self._state = to_state
        logger.info(
            "session_state_changed",
            origin=self.origin,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )
        await self.events.emit(StateChangedEvent(from_state=from_state.value, to_state=to_state.value))

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        # Checked before the first await, so a concurrent caller fails fast
        if self._in_flight is not None:
            raise OperationInProgressError(operation, self._in_flight)
        self._in_flight = operation
        try:
            yield
        finally:
            self._in_flight = None

    def _context(self, timeout_seconds: Optional[float]) -> AdapterContext:
        return AdapterContext(
            app_name=self.app_name,
            origin=self.origin,
            network=self.network,
            get_wallet=self.registry.get_wallet,
            timeout_seconds=timeout_seconds,
        )

    def _count(self, metric: str) -> None:
        if self.telemetry is not None:
            self.telemetry.increment(metric)

    async def _emit_error(self, error: CantonConnectError, operation: str) -> None:
        self._count(error_metric(error.code.value))
        await self.events.emit(ErrorEvent(error=error, operation=operation))

    async def _persist(self, session: Session) -> None:
        try:
            await self.store.save(session)
        except Exception as e:
            # The live session stays valid; only a later restore is lost
            logger.error(
                "session_persist_failed",
                session_id=str(session.session_id),
                wallet_id=str(session.wallet_id),
                error=type(e).__name__,
            )

    async def _clear_store(self) -> None:
        try:
            await self.store.clear()
        except Exception as e:
            logger.error("session_store_clear_failed", origin=self.origin, error=type(e).__name__)

    # =========================================================================
    # Connect
    # =========================================================================

    async def connect(
        self,
        wallet_id: Union[WalletId, str],
        *,
        required_capabilities: Optional[Iterable[CapabilityLike]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Session:
        """
        Connect to a registry-listed wallet.

        Raises:
            UnknownWalletError: wallet not in the verified registry
            InvalidSignatureError / RegistryStaleError: registry not trustworthy
            OriginNotAllowedError, WalletUnavailableError, CapabilityNotSupportedError
            UserRejectedError, TransportError, OperationTimeoutError: adapter outcome
            OperationInProgressError: another operation is running
            InvalidTransitionError: already connected
        """
        with self._exclusive("connect"):
            self._count(WALLET_CONNECT_ATTEMPTS)
            try:
                wallet_id = wallet_id if isinstance(wallet_id, WalletId) else to_wallet_id(wallet_id)
            except ValueError as e:
                # Not a registry slug, so it cannot be listed
                error = UnknownWalletError(str(wallet_id), "invalid wallet id")
                await self._emit_error(error, "connect")
                raise error from e
            await self._expire_if_needed()
            await self._transition(ConnectionState.CONNECTING, reason=str(wallet_id))

            try:
                session = await self._connect(
                    wallet_id,
                    capability_set(required_capabilities or ()),
                    timeout_seconds or self.connect_timeout_seconds,
                )
            except CantonConnectError as e:
                logger.info(
                    "session_connect_failed",
                    wallet_id=str(wallet_id),
                    code=e.code.value,
                    error=e.message,
                )
                await self._transition(ConnectionState.DISCONNECTED, reason=e.code.value)
                await self._emit_error(e, "connect")
                raise
            except BaseException:
                await self._transition(ConnectionState.DISCONNECTED, reason="aborted")
                raise

            await self._persist(session)
            self._session = session
            await self._transition(ConnectionState.CONNECTED)
            self._schedule_expiry(session)

        logger.info(
            "session_connected",
            session_id=str(session.session_id),
            wallet_id=str(session.wallet_id),
            capabilities=list(session.capabilities_snapshot),
        )
        self._count(WALLET_CONNECT_SUCCESS)
        self._count(SESSIONS_CREATED)
        await self.events.emit(SessionConnectedEvent(session=session, reason="connect"))
        return session

    async def _connect(
        self,
        wallet_id: WalletId,
        required: CapabilitySet,
        timeout_seconds: float,
    ) -> Session:
        await self.registry.ensure_fresh()
        entry = self.registry.get_wallet(wallet_id)
        if entry is None:
            raise UnknownWalletError(str(wallet_id), "not listed in the verified registry")
        if not entry.allows_origin(self.origin):
            raise OriginNotAllowedError(self.origin, entry.origin_allowlist or ())
        if not entry.supports_network(self.network):
            raise WalletUnavailableError(str(wallet_id), f"network {self.network} not supported")

        adapter = self.adapters.get(wallet_id)
        if adapter is None:
            raise WalletUnavailableError(str(wallet_id), "no adapter registered")

        declared = capability_set(adapter.get_capabilities())
        missing = missing_capabilities(declared, required)
        if missing:
            raise CapabilityNotSupportedError(str(wallet_id), missing)

        await install_guard(adapter)

        context = self._context(timeout_seconds)
        try:
            result = await asyncio.wait_for(adapter.connect(context), timeout=timeout_seconds)
        except Exception as e:
            raise map_adapter_error(e, "connect", str(wallet_id), timeout_seconds) from e

        return self._session_from_result(adapter, declared, result)

    def _session_from_result(
        self,
        adapter: WalletAdapter,
        declared: CapabilitySet,
        result: ConnectResult,
    ) -> Session:
        if not isinstance(result, ConnectResult):
            raise AdapterMalfunctionError(
                str(adapter.wallet_id),
                "connect",
                cause=TypeError(f"connect returned {type(result).__name__}"),
            )
        try:
            party_id = to_party_id(str(result.party_id))
            granted = capability_set(result.capabilities)
            expires_at = aware_utc(result.expires_at)
        except (TypeError, ValueError) as e:
            raise AdapterMalfunctionError(str(adapter.wallet_id), "connect", cause=e) from e

        now = self._clock()
        session = Session(
            session_id=new_session_id(),
            wallet_id=adapter.wallet_id,
            party_id=party_id,
            network=self.network,
            origin=self.origin,
            created_at=now,
            expires_at=expires_at,
            capabilities_snapshot=snapshot(declared & granted if granted else declared),
            metadata=dict(result.metadata),
        )
        if session.is_expired(now):
            raise AdapterMalfunctionError(
                str(adapter.wallet_id),
                "connect",
                cause=ValueError("session expires before it was created"),
            )
        return session

    # =========================================================================
    # Restore
    # =========================================================================

    async def restore(self, *, timeout_seconds: Optional[float] = None) -> Optional[Session]:
        """
        Resume the persisted session without asking for consent again.

        Returns None when there is nothing valid to restore. Trust failures
        (wallet delisted, registry stale or invalid) raise.
        """
        with self._exclusive("restore"):
            await self._expire_if_needed()
            if self._state == ConnectionState.CONNECTED and self._session is not None:
                return self._session

            self._count(RESTORE_ATTEMPTS)
            await self._transition(ConnectionState.RESTORING)
            try:
                session = await self._restore(timeout_seconds or self.restore_timeout_seconds)
            except CantonConnectError as e:
                logger.warning("session_restore_failed", code=e.code.value, error=e.message)
                await self._transition(ConnectionState.DISCONNECTED, reason=e.code.value)
                await self._emit_error(e, "restore")
                raise
            except BaseException:
                await self._transition(ConnectionState.DISCONNECTED, reason="aborted")
                raise

            if session is None:
                await self._transition(ConnectionState.DISCONNECTED, reason="nothing to restore")
                return None

            self._session = session
            await self._transition(ConnectionState.CONNECTED, reason="restore")
            self._schedule_expiry(session)

        logger.info(
            "session_restored",
            session_id=str(session.session_id),
            wallet_id=str(session.wallet_id),
        )
        self._count(SESSIONS_RESTORED)
        self._count(WALLET_CONNECT_SUCCESS)
        await self.events.emit(SessionConnectedEvent(session=session, reason="restore"))
        return session

    async def _restore(self, timeout_seconds: float) -> Optional[Session]:
        persisted = await self.store.load()
        if persisted is None:
            logger.debug("session_restore_nothing_stored", origin=self.origin)
            return None

        wallet_id = persisted.wallet_id
        if persisted.origin != self.origin:
            return None

        if persisted.session.is_expired(self._clock()):
            logger.info("session_restore_expired", session_id=str(persisted.session_id))
            await self._clear_store()
            await self.events.emit(
                SessionExpiredEvent(session_id=str(persisted.session_id), wallet_id=str(wallet_id))
            )
            return None

        if persisted.network != self.network:
            logger.info("session_restore_network_changed", stored=persisted.network, current=self.network)
            await self._clear_store()
            return None

        # Trust is re-checked on every restore; registry errors keep the store
        await self.registry.ensure_fresh()
        entry = self.registry.get_wallet(wallet_id)
        if entry is None:
            await self._clear_store()
            raise UnknownWalletError(str(wallet_id), "no longer listed in the verified registry")
        if not entry.allows_origin(self.origin):
            await self._clear_store()
            raise OriginNotAllowedError(self.origin, entry.origin_allowlist or ())

        adapter = self.adapters.get(wallet_id)
        if adapter is None:
            logger.info("session_restore_no_adapter", wallet_id=str(wallet_id))
            await self._clear_store()
            return None

        declared = capability_set(adapter.get_capabilities())
        if Capability.RESTORE.value not in declared:
            logger.debug("session_restore_unsupported", wallet_id=str(wallet_id))
            await self._clear_store()
            return None

        context = self._context(timeout_seconds)
        try:
            restored = await asyncio.wait_for(
                adapter.restore(context, persisted),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError("restore", timeout_seconds) from e
        except Exception as e:
            await self._restore_malfunction(wallet_id, e)
            return None

        if restored is None:
            logger.info("session_restore_declined", wallet_id=str(wallet_id))
            await self._clear_store()
            return None

        if (
            not isinstance(restored, Session)
            or restored.wallet_id != wallet_id
            or restored.origin != self.origin
        ):
            await self._restore_malfunction(wallet_id, TypeError("restore returned a foreign session"))
            return None

        try:
            restored = replace(
                restored,
                created_at=aware_utc(restored.created_at),
                expires_at=aware_utc(restored.expires_at),
            )
        except TypeError as e:
            await self._restore_malfunction(wallet_id, e)
            return None

        if restored.is_expired(self._clock()):
            await self._clear_store()
            await self.events.emit(
                SessionExpiredEvent(session_id=str(restored.session_id), wallet_id=str(wallet_id))
            )
            return None

        granted = capability_set(restored.capabilities_snapshot)
        session = replace(
            restored,
            network=self.network,
            capabilities_snapshot=snapshot(declared & granted if granted else declared),
            restore_reason=restored.restore_reason or "restore",
        )
        await self._persist(session)
        return session

    async def _restore_malfunction(self, wallet_id: WalletId, cause: BaseException) -> None:
        error = AdapterMalfunctionError(str(wallet_id), "restore", cause=cause)
        logger.error(
            "adapter_malfunction",
            wallet_id=str(wallet_id),
            operation="restore",
            error=f"{type(cause).__name__}: {cause}",
        )
        await self._clear_store()
        await self._emit_error(error, "restore")

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def disconnect(self, *, timeout_seconds: Optional[float] = None) -> None:
        """
        End the session. Always succeeds locally: adapter failures are
        logged, the store and in-memory session are cleared regardless.
        """
        with self._exclusive("disconnect"):
            if self._state == ConnectionState.DISCONNECTED:
                return

            session = self._session
            timeout_seconds = timeout_seconds or self.disconnect_timeout_seconds
            await self._transition(ConnectionState.DISCONNECTING)
            self._cancel_expiry()

            try:
                adapter = self.adapters.get(session.wallet_id) if session else None
                if adapter is not None and session is not None:
                    await asyncio.wait_for(
                        adapter.disconnect(self._context(timeout_seconds), session),
                        timeout=timeout_seconds,
                    )
            except Exception as e:
                logger.warning(
                    "adapter_disconnect_failed",
                    wallet_id=str(session.wallet_id) if session else None,
                    error=f"{type(e).__name__}: {e}",
                )
            finally:
                self._session = None
                await self._clear_store()
                await self._transition(ConnectionState.DISCONNECTED)

        if session is not None:
            logger.info("session_disconnected", session_id=str(session.session_id))
            await self.events.emit(
                SessionDisconnectedEvent(
                    session_id=str(session.session_id),
                    wallet_id=str(session.wallet_id),
                )
            )

    # =========================================================================
    # Session-scoped adapter calls
    # =========================================================================

    async def invoke(
        self,
        capability: CapabilityLike,
        params: Any = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> Any:
        """
        Call the adapter method behind ``capability`` for the live session.

        Gated on the session's capability snapshot, not on what the adapter
        declares now. Adapter failures are mapped into the error taxonomy and
        emitted as error events.

        Raises:
            NoActiveSessionError: nothing connected (or the session expired)
            CapabilityNotSupportedError: tag missing from the snapshot, or no
                adapter method backs it
        """
        tag = capability_tag(capability)
        session = await self.get_active_session()
        if session is None:
            raise NoActiveSessionError(tag)

        adapter = self.adapters.get(session.wallet_id)
        method_name = CAPABILITY_METHODS.get(tag)
        method = getattr(adapter, method_name, None) if adapter is not None and method_name else None
        if not session.has_capability(tag) or method is None:
            raise CapabilityNotSupportedError(str(session.wallet_id), [tag])

        timeout_seconds = timeout_seconds or self.connect_timeout_seconds
        try:
            result = await asyncio.wait_for(
                method(self._context(timeout_seconds), session, params),
                timeout=timeout_seconds,
            )
        except Exception as e:
            error = map_adapter_error(e, tag, str(session.wallet_id), timeout_seconds)
            logger.warning(
                "adapter_call_failed",
                wallet_id=str(session.wallet_id),
                capability=tag,
                code=error.code.value,
            )
            await self._emit_error(error, tag)
            if error is e:
                raise
            raise error from e

        logger.debug("adapter_call_completed", wallet_id=str(session.wallet_id), capability=tag)
        return result

    # =========================================================================
    # Expiry
    # =========================================================================

    async def check_expiry(self) -> bool:
        """
        Expire the live session if ``expires_at`` has passed.

        No adapter call is made. Returns True if the session was expired.
        Skipped while another operation is in flight.
        """
        if self._in_flight is not None:
            return False
        return await self._expire_if_needed()

    async def _expire_if_needed(self) -> bool:
        session = self._session
        if session is None or self._state != ConnectionState.CONNECTED:
            return False
        if not session.is_expired(self._clock()):
            return False

        self._cancel_expiry()
        self._session = None
        await self._clear_store()
        await self._transition(ConnectionState.DISCONNECTED, reason="expired")
        logger.info("session_expired", session_id=str(session.session_id))
        await self.events.emit(
            SessionExpiredEvent(session_id=str(session.session_id), wallet_id=str(session.wallet_id))
        )
        return True

    def _schedule_expiry(self, session: Session) -> None:
        self._cancel_expiry()
        if not self.auto_expire or session.expires_at is None:
            return
        delay = max((session.expires_at - self._clock()).total_seconds(), 0.0)
        self._expiry_task = asyncio.create_task(self._expire_after(delay))

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.check_expiry()

    def _cancel_expiry(self) -> None:
        task = self._expiry_task
        self._expiry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def aclose(self) -> None:
        """Stop background expiry scheduling. The session is left as-is."""
        task = self._expiry_task
        self._cancel_expiry()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
