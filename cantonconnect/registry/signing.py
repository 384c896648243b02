"""
Ed25519 signing and verification for registry manifests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from ..core.errors import InvalidSignatureError
from .manifest import SplitManifest, canonical_bytes

ALGORITHM = "ed25519"


@dataclass(frozen=True)
class TrustedKey:
    fingerprint: str
    verify_key: VerifyKey


def key_fingerprint(public_key: bytes) -> str:
    """First 16 hex chars of SHA-256 over the raw 32-byte public key."""
    return hashlib.sha256(public_key).hexdigest()[:16]


def _b64decode(value: str) -> bytes:
    candidate = value.strip()
    try:
        return base64.b64decode(candidate, validate=True)
    except (ValueError, binascii.Error):
        padded = candidate + "=" * (-len(candidate) % 4)
        return base64.urlsafe_b64decode(padded)


def load_public_key(encoded: str) -> TrustedKey:
    """Parse a base64 raw Ed25519 public key."""
    try:
        raw = _b64decode(encoded)
    except (ValueError, binascii.Error) as e:
        raise ValueError("Public key is not valid base64") from e
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return TrustedKey(fingerprint=key_fingerprint(raw), verify_key=VerifyKey(raw))


def load_public_keys(encoded_keys: Iterable[str]) -> List[TrustedKey]:
    keys: Dict[str, TrustedKey] = {}
    for encoded in encoded_keys:
        key = load_public_key(encoded)
        keys[key.fingerprint] = key
    return list(keys.values())


def generate_keypair() -> Tuple[str, str]:
    """Return (private seed, public key), both base64."""
    signing_key = SigningKey.generate()
    return (
        base64.b64encode(bytes(signing_key)).decode("ascii"),
        base64.b64encode(bytes(signing_key.verify_key)).decode("ascii"),
    )


def load_signing_key(encoded_seed: str) -> SigningKey:
    raw = _b64decode(encoded_seed)
    if len(raw) != 32:
        raise ValueError(f"Ed25519 private seed must be 32 bytes, got {len(raw)}")
    return SigningKey(raw)


def sign_body(body: Dict, signing_key: SigningKey, signed_at: datetime | None = None) -> Dict[str, str]:
    """Produce one detached signature entry over the canonical manifest body."""
    signature = signing_key.sign(canonical_bytes(body)).signature
    return {
        "algorithm": ALGORITHM,
        "keyFingerprint": key_fingerprint(bytes(signing_key.verify_key)),
        "signature": base64.b64encode(signature).decode("ascii"),
        "signedAt": (signed_at or datetime.now(timezone.utc)).isoformat(),
    }


def _verifies(key: TrustedKey, data: bytes, signature: bytes) -> bool:
    try:
        key.verify_key.verify(data, signature)
    except BadSignatureError:
        return False
    return True


def verify_signatures(
    split: SplitManifest,
    trusted_keys: Sequence[TrustedKey],
    required: int = 1,
) -> Tuple[str, ...]:
    """
    Check detached signatures against the trusted keys.

    Returns the fingerprints of the distinct trusted keys that signed the
    body. Raises InvalidSignatureError when fewer than ``required`` did.
    Signatures with an unknown algorithm or from untrusted keys are ignored,
    not fatal.
    """
    if not trusted_keys:
        raise InvalidSignatureError("no trusted registry keys configured")
    if required < 1 or required > len(trusted_keys):
        raise InvalidSignatureError(
            f"cannot require {required} signatures with {len(trusted_keys)} trusted key(s)"
        )

    data = split.signed_bytes
    by_fingerprint = {k.fingerprint: k for k in trusted_keys}
    verified: List[str] = []

    for entry in split.signatures:
        if entry.get("algorithm") != ALGORITHM:
            continue
        encoded = entry.get("signature")
        if not isinstance(encoded, str):
            continue
        try:
            signature = _b64decode(encoded)
        except (ValueError, binascii.Error):
            continue
        if len(signature) != 64:
            continue

        fingerprint = entry.get("keyFingerprint")
        if fingerprint in by_fingerprint:
            candidates = [by_fingerprint[fingerprint]]
        else:
            candidates = list(trusted_keys)

        for key in candidates:
            if key.fingerprint in verified:
                continue
            if _verifies(key, data, signature):
                verified.append(key.fingerprint)
                break

    if len(verified) < required:
        raise InvalidSignatureError(
            "signature verification failed",
            details={"validSignatures": len(verified), "required": required},
        )
    return tuple(verified)
