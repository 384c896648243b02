"""
Signed wallet registry: manifest format, signatures, fetch and verification.
"""

from .fetcher import FetchResult, ManifestFetcher
from .manifest import (
    RegistryStatus,
    TrustedRegistry,
    WalletManifest,
    WalletManifestEntry,
    canonical_bytes,
    split_document,
)
from .signing import (
    TrustedKey,
    generate_keypair,
    key_fingerprint,
    load_public_key,
    load_public_keys,
    load_signing_key,
    sign_body,
    verify_signatures,
)
from .verifier import RegistryVerifier

__all__ = [
    # Verifier
    "RegistryVerifier",
    # Manifest
    "WalletManifest",
    "WalletManifestEntry",
    "TrustedRegistry",
    "RegistryStatus",
    "canonical_bytes",
    "split_document",
    # Signing
    "TrustedKey",
    "key_fingerprint",
    "load_public_key",
    "load_public_keys",
    "load_signing_key",
    "generate_keypair",
    "sign_body",
    "verify_signatures",
    # Fetching
    "ManifestFetcher",
    "FetchResult",
]
