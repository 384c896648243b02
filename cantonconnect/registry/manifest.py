"""
Wallet Registry Manifest

Document format:

    {
      "metadata": {"registryVersion", "schemaVersion", "publishedAt",
                   "channel", "sequence", "publisher"?},
      "wallets": [<entry>, ...],
      "signatures": [{"algorithm": "ed25519", "keyFingerprint",
                      "signature", "signedAt"}, ...]
    }

Signatures are detached: they cover the canonical bytes of
``{"metadata", "wallets"}`` and nothing else, so whitespace and key order in
the served file never affect verification.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.capabilities import capability_set
from ..core.errors import InvalidSignatureError
from ..core.ids import NETWORKS, WalletId, to_wallet_id

SCHEMA_MAJOR = "1"
SIGNED_FIELDS = ("metadata", "wallets")

RegistryChannel = Literal["stable", "beta"]


class AdapterReference(BaseModel):
    """How to obtain the adapter for a wallet."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    # "package.module:ClassName" when the adapter is loadable in-process
    reference: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class InstallationHints(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    window_property: Optional[str] = Field(default=None, alias="windowProperty")
    extension_id: Optional[str] = Field(default=None, alias="extensionId")
    deep_link_scheme: Optional[str] = Field(default=None, alias="deepLinkScheme")


class WalletManifestEntry(BaseModel):
    """One registry-listed wallet."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    name: str
    description: Optional[str] = None
    homepage: Optional[str] = None
    icon: Optional[str] = None
    supported_networks: Tuple[str, ...] = Field(alias="supportedNetworks")
    capabilities: Tuple[str, ...] = ()
    adapter: AdapterReference
    installation: Optional[InstallationHints] = None
    sdk_version: Optional[str] = Field(default=None, alias="sdkVersion")
    origin_allowlist: Optional[Tuple[str, ...]] = Field(default=None, alias="originAllowlist")

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        to_wallet_id(value)
        return value

    @field_validator("supported_networks")
    @classmethod
    def _known_networks(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        unknown = [n for n in value if n not in NETWORKS]
        if unknown:
            raise ValueError(f"unknown networks: {unknown}")
        return value

    @field_validator("capabilities")
    @classmethod
    def _normalize_capabilities(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(sorted(capability_set(value)))

    @property
    def wallet_id(self) -> WalletId:
        return WalletId(self.id)

    def supports_network(self, network: str) -> bool:
        return network in self.supported_networks

    def allows_origin(self, origin: str) -> bool:
        if not self.origin_allowlist:
            return True
        return origin in self.origin_allowlist


class ManifestMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    registry_version: str = Field(alias="registryVersion")
    schema_version: str = Field(alias="schemaVersion")
    published_at: datetime = Field(alias="publishedAt")
    channel: RegistryChannel
    sequence: int = Field(ge=0)
    publisher: Optional[str] = None

    @field_validator("schema_version")
    @classmethod
    def _supported_schema(cls, value: str) -> str:
        if value.split(".", 1)[0] != SCHEMA_MAJOR:
            raise ValueError(f"unsupported schema version {value}")
        return value


class ManifestSignature(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    algorithm: str
    signature: str
    key_fingerprint: str = Field(default="", alias="keyFingerprint")
    signed_at: Optional[str] = Field(default=None, alias="signedAt")


class WalletManifest(BaseModel):
    """Schema-validated manifest body. Only built after signatures verify."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    metadata: ManifestMetadata
    wallets: Tuple[WalletManifestEntry, ...]

    @model_validator(mode="after")
    def _unique_ids(self) -> "WalletManifest":
        seen = set()
        for entry in self.wallets:
            if entry.id in seen:
                raise ValueError(f"duplicate wallet id {entry.id}")
            seen.add(entry.id)
        return self


def canonical_bytes(value: Any) -> bytes:
    """Canonical JSON encoding used for signing: sorted keys, no whitespace, UTF-8."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


@dataclass(frozen=True)
class SplitManifest:
    """Raw, not-yet-trusted pieces of a manifest document."""

    body: Dict[str, Any]
    signatures: List[Dict[str, Any]]

    @property
    def signed_bytes(self) -> bytes:
        return canonical_bytes(self.body)


def split_document(raw: str | bytes) -> SplitManifest:
    """
    Separate the signed body from its detached signatures.

    This is the only processing allowed before signature verification: JSON
    decoding and picking out the top-level keys. Anything else is deferred
    until the signatures check out.
    """
    try:
        document = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidSignatureError("manifest is not valid JSON") from e

    if not isinstance(document, dict):
        raise InvalidSignatureError("unrecognized manifest format")

    missing = [k for k in SIGNED_FIELDS if k not in document]
    if missing:
        raise InvalidSignatureError(
            "unrecognized manifest format",
            details={"missingFields": missing},
        )

    signatures = document.get("signatures")
    if not isinstance(signatures, list) or not signatures:
        raise InvalidSignatureError("manifest carries no signatures")
    if not all(isinstance(s, dict) for s in signatures):
        raise InvalidSignatureError("unrecognized signature format")

    body = {k: document[k] for k in SIGNED_FIELDS}
    return SplitManifest(body=body, signatures=signatures)


def build_document(body: Dict[str, Any], signatures: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {**body, "signatures": signatures}


@dataclass(frozen=True)
class TrustedRegistry:
    """
    Verified, immutable projection of one manifest.

    Replaced wholesale on refresh; never mutated.
    """

    channel: str
    sequence: int
    fetched_at: datetime
    entries: Mapping[WalletId, WalletManifestEntry]
    metadata: ManifestMetadata
    verified_by: Tuple[str, ...] = ()
    etag: Optional[str] = None
    # Original document text, kept for last-known-good persistence
    raw: str = field(default="", repr=False)

    @classmethod
    def from_manifest(
        cls,
        manifest: WalletManifest,
        fetched_at: datetime,
        verified_by: Tuple[str, ...],
        etag: Optional[str] = None,
        raw: str = "",
    ) -> "TrustedRegistry":
        entries = {entry.wallet_id: entry for entry in manifest.wallets}
        return cls(
            channel=manifest.metadata.channel,
            sequence=manifest.metadata.sequence,
            fetched_at=fetched_at,
            entries=MappingProxyType(entries),
            metadata=manifest.metadata,
            verified_by=verified_by,
            etag=etag,
            raw=raw,
        )

    def get(self, wallet_id: WalletId) -> Optional[WalletManifestEntry]:
        return self.entries.get(wallet_id)

    def wallets(self) -> List[WalletManifestEntry]:
        return list(self.entries.values())

    def age_seconds(self, now: datetime) -> float:
        return max((now - self.fetched_at).total_seconds(), 0.0)

    def revalidated(self, fetched_at: datetime) -> "TrustedRegistry":
        """Same verified content with a restarted validity window (HTTP 304)."""
        return TrustedRegistry(
            channel=self.channel,
            sequence=self.sequence,
            fetched_at=fetched_at,
            entries=self.entries,
            metadata=self.metadata,
            verified_by=self.verified_by,
            etag=self.etag,
            raw=self.raw,
        )


@dataclass(frozen=True)
class RegistryStatus:
    source: Literal["network", "cache"]
    verified: bool
    channel: str
    sequence: int
    stale: bool
    fetched_at: datetime
    etag: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "verified": self.verified,
            "channel": self.channel,
            "sequence": self.sequence,
            "stale": self.stale,
            "fetchedAt": self.fetched_at.isoformat(),
            "etag": self.etag,
            "errorCode": self.error_code,
        }
