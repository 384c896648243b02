"""
Registry Verifier

Obtains, verifies and caches the signed list of wallets an application may
present.

Freshness policy:
- age < ttl: registry is fresh and used as-is.
- ttl <= age: a connect attempt refreshes first. If the refresh fails, the
  ``stale_policy`` decides: ``serve_stale`` keeps serving the last verified
  copy until ``stale_ceiling_seconds``; ``fail_closed`` raises
  RegistryStaleError immediately.
- age >= stale ceiling: every lookup fails closed with RegistryStaleError.

With ``start_background_refresh`` the refresh also happens on its own as soon
as the ttl elapses, retrying every REFRESH_RETRY_SECONDS while it fails.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional, Union

import structlog
from pydantic import ValidationError

from ..config import Settings
from ..core.errors import (
    CantonConnectError,
    InvalidSignatureError,
    RegistryStaleError,
)
from ..core.ids import WalletId
from ..core.models import utcnow
from ..telemetry import REGISTRY_CACHE_HIT, REGISTRY_FETCH, REGISTRY_STALE, Telemetry
from .fetcher import ManifestFetcher
from .manifest import (
    RegistryStatus,
    TrustedRegistry,
    WalletManifest,
    WalletManifestEntry,
    split_document,
)
from .signing import TrustedKey, load_public_keys, verify_signatures

logger = structlog.stdlib.get_logger("cantonconnect.registry")

StalePolicy = Literal["serve_stale", "fail_closed"]
StatusCallback = Callable[[RegistryStatus], Union[None, Awaitable[None]]]

CACHE_KEY_PREFIX = "registry:"

# Delay before the background loop retries a failed refresh
REFRESH_RETRY_SECONDS = 60


class RegistryVerifier:
    """
    Verified wallet catalog for one registry URL.

    Lookups (``get_wallet``, ``list_wallets``) are pure and never touch the
    network; only ``refresh``/``ensure_fresh`` fetch.
    """

    def __init__(
        self,
        public_keys: Iterable[Union[str, TrustedKey]],
        *,
        registry_url: str,
        channel: str = "stable",
        required_signatures: int = 1,
        ttl_seconds: float = 3600,
        stale_ceiling_seconds: float = 86400,
        stale_policy: StalePolicy = "serve_stale",
        fetcher: Optional[ManifestFetcher] = None,
        storage: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
        on_status: Optional[StatusCallback] = None,
        telemetry: Optional[Telemetry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if stale_ceiling_seconds < ttl_seconds:
            raise ValueError("stale_ceiling_seconds must be >= ttl_seconds")

        keys = list(public_keys)
        encoded = [k for k in keys if isinstance(k, str)]
        self.trusted_keys: List[TrustedKey] = [k for k in keys if isinstance(k, TrustedKey)]
        self.trusted_keys.extend(load_public_keys(encoded))

        self.registry_url = registry_url.rstrip("/")
        self.channel = channel
        self.required_signatures = required_signatures
        self.ttl_seconds = ttl_seconds
        self.stale_ceiling_seconds = stale_ceiling_seconds
        self.stale_policy = stale_policy
        self.fetcher = fetcher or ManifestFetcher()
        self.storage = storage
        self.on_status = on_status
        self.telemetry = telemetry
        self._sleep = sleep
        self._clock = clock

        self._registry: Optional[TrustedRegistry] = None
        self._source: Literal["network", "cache"] = "network"
        self._last_error: Optional[CantonConnectError] = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        fetcher: Optional[ManifestFetcher] = None,
        storage: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
        telemetry: Optional[Telemetry] = None,
    ) -> "RegistryVerifier":
        return cls(
            settings.registry_public_keys,
            registry_url=settings.registry_url,
            channel=settings.registry_channel,
            required_signatures=settings.registry_required_signatures,
            ttl_seconds=settings.registry_ttl_seconds,
            stale_ceiling_seconds=settings.registry_stale_ceiling_seconds,
            stale_policy=settings.registry_stale_policy,
            fetcher=fetcher or ManifestFetcher(timeout_seconds=settings.registry_fetch_timeout_seconds),
            storage=storage,
            clock=clock,
            telemetry=telemetry,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def registry(self) -> Optional[TrustedRegistry]:
        return self._registry

    def manifest_url(self, channel: Optional[str] = None) -> str:
        return f"{self.registry_url}/v1/{channel or self.channel}/registry.json"

    def age_seconds(self) -> Optional[float]:
        if self._registry is None:
            return None
        return self._registry.age_seconds(self._clock())

    def is_fresh(self) -> bool:
        age = self.age_seconds()
        return age is not None and age < self.ttl_seconds

    def is_usable(self) -> bool:
        age = self.age_seconds()
        return age is not None and age < self.stale_ceiling_seconds

    def status(self) -> Optional[RegistryStatus]:
        registry = self._registry
        if registry is None:
            return None
        return RegistryStatus(
            source=self._source,
            verified=True,
            channel=registry.channel,
            sequence=registry.sequence,
            stale=not self.is_fresh(),
            fetched_at=registry.fetched_at,
            etag=registry.etag,
            error_code=self._last_error.code.value if self._last_error else None,
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    def _usable_registry(self) -> Optional[TrustedRegistry]:
        registry = self._registry
        if registry is None:
            return None
        age = registry.age_seconds(self._clock())
        if age >= self.stale_ceiling_seconds:
            raise RegistryStaleError(age, self.stale_ceiling_seconds)
        return registry

    def get_wallet(self, wallet_id: WalletId) -> Optional[WalletManifestEntry]:
        """Look up a wallet in the last verified registry. Never fetches."""
        registry = self._usable_registry()
        if registry is None:
            return None
        return registry.get(wallet_id)

    def list_wallets(self) -> List[WalletManifestEntry]:
        registry = self._usable_registry()
        if registry is None:
            return []
        return registry.wallets()

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_document(
        self,
        raw: str,
        channel: Optional[str] = None,
        etag: Optional[str] = None,
        fetched_at: Optional[datetime] = None,
    ) -> TrustedRegistry:
        """
        Turn a raw manifest into a TrustedRegistry or raise InvalidSignatureError.

        Signatures are checked on the canonical body before the body is
        schema-validated, so a forged manifest is never interpreted.
        """
        channel = channel or self.channel
        split = split_document(raw)
        verified_by = verify_signatures(split, self.trusted_keys, self.required_signatures)

        try:
            manifest = WalletManifest.model_validate(split.body)
        except ValidationError as e:
            raise InvalidSignatureError(
                "unrecognized manifest format",
                details={"errors": e.error_count()},
            ) from e

        if manifest.metadata.channel != channel:
            raise InvalidSignatureError(
                f"manifest is for channel {manifest.metadata.channel}, expected {channel}"
            )

        current = self._registry
        if current is not None and current.channel == channel:
            if manifest.metadata.sequence < current.sequence:
                raise InvalidSignatureError(
                    f"sequence downgrade detected: {manifest.metadata.sequence} < {current.sequence}",
                    details={"sequence": manifest.metadata.sequence, "current": current.sequence},
                )

        return TrustedRegistry.from_manifest(
            manifest,
            fetched_at=fetched_at or self._clock(),
            verified_by=verified_by,
            etag=etag,
            raw=raw,
        )

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, channel: Optional[str] = None) -> TrustedRegistry:
        """
        Fetch, verify and install the manifest for ``channel``.

        Concurrent callers share a single fetch. On failure the previous
        registry is left untouched and the error propagates.
        """
        channel = channel or self.channel
        generation = self._generation

        async with self._lock:
            registry = self._registry
            if self._generation != generation and registry is not None and registry.channel == channel:
                return registry

            url = self.manifest_url(channel)
            etag = registry.etag if registry is not None and registry.channel == channel else None

            try:
                result = await self.fetcher.fetch(url, etag=etag)
                if result.not_modified and registry is not None and etag:
                    updated = registry.revalidated(self._clock())
                else:
                    updated = self.verify_document(result.body, channel=channel, etag=result.etag)
            except CantonConnectError as e:
                self._last_error = e
                log = logger.error if isinstance(e, InvalidSignatureError) else logger.warning
                log(
                    "registry_refresh_failed",
                    url=url,
                    code=e.code.value,
                    error=e.message,
                )
                await self._notify_status()
                raise

            self._registry = updated
            self.channel = channel
            self._source = "network"
            self._last_error = None
            self._generation += 1

        logger.info(
            "registry_refreshed",
            channel=updated.channel,
            sequence=updated.sequence,
            wallets=len(updated.entries),
            verified_by=list(updated.verified_by),
        )
        self._count(REGISTRY_FETCH)
        await self._persist(updated)
        await self._notify_status()
        return updated

    async def ensure_fresh(self) -> TrustedRegistry:
        """
        Return a registry fit for a new connect attempt, refreshing if expired.
        """
        registry = self._registry
        if registry is not None and self.is_fresh():
            return registry

        try:
            return await self.refresh()
        except CantonConnectError as e:
            registry = self._registry
            if registry is None:
                raise
            age = registry.age_seconds(self._clock())
            if self.stale_policy == "fail_closed":
                raise RegistryStaleError(age, self.ttl_seconds) from e
            if age >= self.stale_ceiling_seconds:
                raise RegistryStaleError(age, self.stale_ceiling_seconds) from e
            logger.warning(
                "registry_serving_stale",
                age_seconds=round(age),
                ceiling_seconds=self.stale_ceiling_seconds,
                code=e.code.value,
            )
            self._count(REGISTRY_STALE)
            return registry

    def start_background_refresh(self) -> asyncio.Task:
        """Refresh proactively whenever the validity window elapses."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
        return self._refresh_task

    async def _refresh_loop(self) -> None:
        while True:
            age = self.age_seconds()
            if age is not None and age < self.ttl_seconds:
                await self._sleep(self.ttl_seconds - age)
                continue
            try:
                await self.refresh()
            except CantonConnectError:
                # Already logged by refresh
                await self._sleep(min(REFRESH_RETRY_SECONDS, self.ttl_seconds))

    async def aclose(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # =========================================================================
    # Last-known-good persistence
    # =========================================================================

    def _cache_key(self, channel: str) -> str:
        return f"{CACHE_KEY_PREFIX}{channel}"

    async def _persist(self, registry: TrustedRegistry) -> None:
        if self.storage is None or not registry.raw:
            return
        record = {
            "raw": registry.raw,
            "fetchedAt": registry.fetched_at.isoformat(),
            "etag": registry.etag,
        }
        try:
            await self.storage.set(self._cache_key(registry.channel), json.dumps(record))
        except Exception as e:
            logger.warning("registry_cache_persist_failed", channel=registry.channel, error=type(e).__name__)

    async def load_cached(self) -> Optional[TrustedRegistry]:
        """
        Re-verify and install the persisted last-known-good manifest.

        Storage is untrusted: the cached document goes through the same
        signature check as a network fetch. Keeps its original fetch time so
        the freshness policy still applies.
        """
        if self.storage is None:
            return None

        key = self._cache_key(self.channel)
        value = await self.storage.get(key)
        if not value:
            return None

        try:
            record: Dict[str, Any] = json.loads(value)
            fetched_at = datetime.fromisoformat(record["fetchedAt"])
            registry = self.verify_document(
                record["raw"],
                etag=record.get("etag"),
                fetched_at=fetched_at,
            )
        except (ValueError, KeyError, TypeError, InvalidSignatureError) as e:
            logger.warning("registry_cache_rejected", key=key, error=str(e))
            await self.storage.remove(key)
            return None

        current = self._registry
        if current is not None and current.channel == registry.channel and current.sequence >= registry.sequence:
            return current

        self._registry = registry
        self._source = "cache"
        logger.info("registry_loaded_from_cache", channel=registry.channel, sequence=registry.sequence)
        self._count(REGISTRY_CACHE_HIT)
        return registry

    def _count(self, metric: str) -> None:
        if self.telemetry is not None:
            self.telemetry.increment(metric)

    async def _notify_status(self) -> None:
        if self.on_status is None:
            return
        status = self.status()
        if status is None:
            return
        result = self.on_status(status)
        if asyncio.iscoroutine(result):
            await result
