"""
Client composition root.

``create_client`` wires settings, storage, the registry verifier, the session
store and the lifecycle manager into one object an application holds for its
lifetime.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from .adapters.registry import AdapterLoadError, AdapterRegistry, AdapterSpec
from .config import Settings, settings as default_settings
from .core.capabilities import Capability, CapabilityLike
from .core.errors import CantonConnectError
from .core.models import Session
from .events import EventBus, EventHandler, EventType
from .registry.fetcher import ManifestFetcher
from .registry.manifest import RegistryStatus, WalletManifestEntry
from .registry.verifier import RegistryVerifier
from .session.manager import ConnectionState, SessionLifecycleManager
from .storage.backends import FileStorage, KeyValueStorage, MemoryStorage, OriginScopedStorage
from .storage.crypto import AesGcmCryptoProvider, CryptoProvider
from .storage.session_store import SessionStore
from .telemetry import Telemetry

logger = logging.getLogger(__name__)


class CantonConnectClient:
    """Application-facing facade over the lifecycle manager."""

    def __init__(
        self,
        manager: SessionLifecycleManager,
        registry: RegistryVerifier,
        events: EventBus,
        telemetry: Optional[Telemetry] = None,
        background_refresh: bool = False,
    ):
        self.manager = manager
        self.registry = registry
        self.events = events
        self.telemetry = telemetry
        self.background_refresh = background_refresh

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    @property
    def session(self) -> Optional[Session]:
        return self.manager.session

    def on(self, event_type: EventType | str, handler: EventHandler):
        return self.events.on(event_type, handler)

    def off(self, event_type: EventType | str, handler: EventHandler) -> None:
        self.events.off(event_type, handler)

    async def start(self) -> Optional[RegistryStatus]:
        """
        Load the last-known-good registry, then refresh it if it is not fresh.

        Refresh failures are logged; the next connect retries under the
        configured stale policy. With background refresh enabled, the
        registry is refreshed again each time its validity window elapses.
        """
        await self.registry.load_cached()
        if not self.registry.is_fresh():
            try:
                await self.registry.refresh()
            except CantonConnectError as e:
                logger.warning(f"Initial registry refresh failed: {e}")
        if self.background_refresh:
            self.registry.start_background_refresh()
        return self.registry.status()

    def load_listed_adapters(self) -> List[str]:
        """
        Register adapters referenced by verified registry entries.

        Entries without an importable reference, or whose wallet already has
        an adapter, are skipped. Returns the wallet ids that were added.
        """
        added = []
        for entry in self.registry.list_wallets():
            reference = entry.adapter.reference
            if not reference or entry.wallet_id in self.manager.adapters:
                continue
            try:
                adapter = self.manager.adapters.register(reference)
            except AdapterLoadError as e:
                logger.warning(f"Skipping adapter for {entry.id}: {e}")
                continue
            if adapter.wallet_id != entry.wallet_id:
                logger.warning(f"Adapter {reference} registered as {adapter.wallet_id}, expected {entry.id}")
            added.append(entry.id)
        return added

    def list_wallets(
        self,
        required_capabilities: Optional[Iterable[CapabilityLike]] = None,
    ) -> List[WalletManifestEntry]:
        return self.manager.list_wallets(required_capabilities)

    async def connect(self, wallet_id: str, **kwargs) -> Session:
        return await self.manager.connect(wallet_id, **kwargs)

    async def restore(self, **kwargs) -> Optional[Session]:
        return await self.manager.restore(**kwargs)

    async def disconnect(self, **kwargs) -> None:
        await self.manager.disconnect(**kwargs)

    async def get_active_session(self) -> Optional[Session]:
        return await self.manager.get_active_session()

    # Session-scoped wallet calls, gated on the session's capability snapshot

    async def sign_message(self, params: Any, **kwargs) -> Any:
        return await self.manager.invoke(Capability.SIGN_MESSAGE, params, **kwargs)

    async def sign_transaction(self, params: Any, **kwargs) -> Any:
        return await self.manager.invoke(Capability.SIGN_TRANSACTION, params, **kwargs)

    async def submit_transaction(self, params: Any, **kwargs) -> Any:
        return await self.manager.invoke(Capability.SUBMIT_TRANSACTION, params, **kwargs)

    async def ledger_api(self, params: Any, **kwargs) -> Any:
        return await self.manager.invoke(Capability.LEDGER_API, params, **kwargs)

    def registry_status(self) -> Optional[RegistryStatus]:
        return self.registry.status()

    async def aclose(self) -> None:
        await self.manager.aclose()
        await self.registry.aclose()


def create_client(
    config: Optional[Settings] = None,
    adapters: Optional[Iterable[AdapterSpec]] = None,
    *,
    storage: Optional[KeyValueStorage] = None,
    key_storage: Optional[KeyValueStorage] = None,
    crypto: Optional[CryptoProvider] = None,
    fetcher: Optional[ManifestFetcher] = None,
    events: Optional[EventBus] = None,
    telemetry: Optional[Telemetry] = None,
) -> CantonConnectClient:
    """Build a client from settings."""
    config = config or default_settings

    if storage is None:
        if config.session_storage_dir is not None:
            storage = FileStorage(config.session_storage_dir)
        else:
            storage = MemoryStorage()
    if key_storage is None and config.session_key_dir is not None:
        key_storage = FileStorage(config.session_key_dir)

    events = events or EventBus()
    telemetry = telemetry or Telemetry()

    registry = RegistryVerifier.from_settings(config, fetcher=fetcher, storage=storage, telemetry=telemetry)
    registry.on_status = events.emit_registry_status

    encryption_key = None
    if config.session_encryption_key is not None:
        encryption_key = config.session_encryption_key.get_secret_value()
    store = SessionStore(
        OriginScopedStorage(storage, config.origin),
        origin=config.origin,
        crypto=crypto or AesGcmCryptoProvider(),
        encryption_key=encryption_key,
        key_storage=OriginScopedStorage(key_storage, config.origin) if key_storage is not None else None,
    )

    manager = SessionLifecycleManager(
        AdapterRegistry(adapters),
        registry,
        store,
        app_name=config.app_name,
        origin=config.origin,
        network=config.network,
        events=events,
        connect_timeout_seconds=config.connect_timeout_seconds,
        restore_timeout_seconds=config.restore_timeout_seconds,
        disconnect_timeout_seconds=config.disconnect_timeout_seconds,
        auto_expire=config.auto_expire,
        telemetry=telemetry,
    )

    logger.info(
        f"CantonConnect client ready for {config.origin} on {config.network} "
        f"(registry {config.manifest_url()})"
    )
    return CantonConnectClient(
        manager,
        registry,
        events,
        telemetry=telemetry,
        background_refresh=config.registry_background_refresh,
    )
