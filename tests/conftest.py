"""
Shared fixtures: signed manifests, a scriptable wallet adapter, a fake
manifest fetcher, a controllable clock and a fully wired lifecycle manager.
"""

import asyncio
import base64
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

import pytest
from nacl.signing import SigningKey

from cantonconnect.adapters.base import WalletAdapter
from cantonconnect.adapters.registry import AdapterRegistry
from cantonconnect.core.capabilities import capability_set
from cantonconnect.core.ids import to_party_id, to_wallet_id
from cantonconnect.core.models import ConnectResult, DetectResult
from cantonconnect.events import EventBus, EventType
from cantonconnect.registry.fetcher import FetchResult
from cantonconnect.registry.manifest import build_document
from cantonconnect.registry.signing import sign_body
from cantonconnect.registry.verifier import RegistryVerifier
from cantonconnect.session.manager import SessionLifecycleManager
from cantonconnect.storage.backends import MemoryStorage, OriginScopedStorage
from cantonconnect.storage.session_store import SessionStore

ORIGIN = "https://app.example.com"
REGISTRY_URL = "https://registry.test"
NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeAdapter(WalletAdapter):
    """Scriptable adapter: set *_error / restore_result / connect_gate per test."""

    PERSISTED = object()

    def __init__(
        self,
        wallet_id: str = "w1",
        name: str = "Wallet One",
        capabilities: Iterable[str] = ("connect", "disconnect", "restore"),
        installed: bool = True,
        party_id: str = "alice::1220abcd",
        expires_at: Optional[datetime] = None,
        granted: Iterable[str] = (),
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.wallet_id = to_wallet_id(wallet_id)
        self.name = name
        self.capabilities = capability_set(capabilities)
        self.installed = installed
        self.party_id = party_id
        self.expires_at = expires_at
        self.granted = tuple(granted)
        self.metadata = metadata if metadata is not None else {"token": "secret-token"}
        self.connect_error: Optional[BaseException] = None
        self.disconnect_error: Optional[BaseException] = None
        self.restore_error: Optional[BaseException] = None
        self.restore_result: Any = self.PERSISTED
        self.connect_gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    def get_capabilities(self):
        return self.capabilities

    async def detect_installed(self) -> DetectResult:
        if self.installed:
            return DetectResult(installed=True)
        return DetectResult(installed=False, reason="extension not found")

    async def connect(self, context) -> ConnectResult:
        self.calls.append("connect")
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        return ConnectResult(
            party_id=to_party_id(self.party_id),
            expires_at=self.expires_at,
            capabilities=self.granted,
            metadata=dict(self.metadata),
        )

    async def disconnect(self, context, session) -> None:
        self.calls.append("disconnect")
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def restore(self, context, persisted):
        self.calls.append("restore")
        if self.restore_error is not None:
            raise self.restore_error
        if self.restore_result is self.PERSISTED:
            return persisted.to_session()
        return self.restore_result


class FakeFetcher:
    """Returns queued results in order; the last one repeats."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[tuple] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def fetch(self, url: str, etag: Optional[str] = None) -> FetchResult:
        self.calls.append((url, etag))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return FetchResult(status_code=200, body=item, etag=None)
        return item


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signing_key():
    return SigningKey(b"\x01" * 32)


@pytest.fixture
def other_signing_key():
    return SigningKey(b"\x02" * 32)


@pytest.fixture
def public_key(signing_key):
    return base64.b64encode(bytes(signing_key.verify_key)).decode("ascii")


@pytest.fixture
def wallet_entry():
    def _entry(
        wallet_id: str = "w1",
        capabilities: Iterable[str] = ("connect", "disconnect", "restore"),
        networks: Iterable[str] = ("devnet", "testnet"),
        **extra: Any,
    ) -> Dict[str, Any]:
        entry = {
            "id": wallet_id,
            "name": f"Wallet {wallet_id}",
            "supportedNetworks": list(networks),
            "capabilities": list(capabilities),
            "adapter": {"type": "injected"},
        }
        entry.update(extra)
        return entry

    return _entry


@pytest.fixture
def manifest_body(wallet_entry):
    def _body(
        wallets: Optional[List[Dict[str, Any]]] = None,
        sequence: int = 1,
        channel: str = "stable",
    ) -> Dict[str, Any]:
        return {
            "metadata": {
                "registryVersion": "1.0.0",
                "schemaVersion": "1.0.0",
                "publishedAt": "2026-01-01T00:00:00Z",
                "channel": channel,
                "sequence": sequence,
                "publisher": "CantonConnect",
            },
            "wallets": wallets if wallets is not None else [wallet_entry("w1")],
        }

    return _body


@pytest.fixture
def make_manifest(manifest_body, signing_key):
    """Signed manifest text. Extra kwargs go to ``manifest_body``."""

    def _make(signers: Optional[List[SigningKey]] = None, **kwargs: Any) -> str:
        body = manifest_body(**kwargs)
        keys = signers if signers is not None else [signing_key]
        signatures = [sign_body(body, key) for key in keys]
        return json.dumps(build_document(body, signatures), indent=2)

    return _make


@pytest.fixture
def adapter_factory():
    return FakeAdapter


@pytest.fixture
def fetcher_factory():
    return FakeFetcher


@pytest.fixture
def build_verifier(public_key, clock):
    def _build(fetcher: FakeFetcher, **kwargs: Any) -> RegistryVerifier:
        options = {
            "registry_url": REGISTRY_URL,
            "ttl_seconds": 3600,
            "stale_ceiling_seconds": 86400,
            "clock": clock,
        }
        options.update(kwargs)
        keys = options.pop("public_keys", [public_key])
        return RegistryVerifier(keys, fetcher=fetcher, **options)

    return _build


@pytest.fixture
def build_manager(make_manifest, build_verifier, clock):
    """
    Wire a manager around fake adapters and a signed manifest.

    Returns a namespace with manager, verifier, fetcher, storage, store and
    ``events`` (list of (type, event) tuples in emission order).
    """

    def _build(
        adapters: Optional[List[WalletAdapter]] = None,
        manifest: Optional[str] = None,
        origin: str = ORIGIN,
        network: str = "devnet",
        storage: Optional[MemoryStorage] = None,
        encryption_key: Optional[str] = None,
        verifier_options: Optional[Dict[str, Any]] = None,
        **manager_options: Any,
    ) -> SimpleNamespace:
        storage = storage if storage is not None else MemoryStorage()
        fetcher = FakeFetcher([manifest if manifest is not None else make_manifest()])
        verifier = build_verifier(fetcher, **(verifier_options or {}))
        store = SessionStore(
            OriginScopedStorage(storage, origin),
            origin=origin,
            encryption_key=encryption_key,
        )
        events = EventBus()
        recorded: List[tuple] = []
        for event_type in EventType:
            events.on(event_type, lambda event, t=event_type: recorded.append((t, event)))

        options = {"auto_expire": False, "clock": clock}
        options.update(manager_options)
        manager = SessionLifecycleManager(
            AdapterRegistry(adapters if adapters is not None else [FakeAdapter()]),
            verifier,
            store,
            app_name="Test dApp",
            origin=origin,
            network=network,
            events=events,
            **options,
        )
        return SimpleNamespace(
            manager=manager,
            verifier=verifier,
            fetcher=fetcher,
            storage=storage,
            store=store,
            events=recorded,
        )

    return _build


def event_types(recorded: List[tuple]) -> List[str]:
    return [t.value for t, _ in recorded]


@pytest.fixture
def types_of():
    return event_types
