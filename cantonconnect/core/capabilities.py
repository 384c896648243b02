"""
Wallet capability tags.

A capability set is order-irrelevant and duplicate-free. Known tags are
members of ``Capability``; wallet-specific extensions are plain strings that
follow the same lowerCamel naming.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import FrozenSet, Iterable, Tuple, Union


class Capability(str, Enum):
    """Capabilities a wallet integration can declare."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RESTORE = "restore"
    SIGN_MESSAGE = "signMessage"
    SIGN_TRANSACTION = "signTransaction"
    SUBMIT_TRANSACTION = "submitTransaction"
    LEDGER_API = "ledgerApi"
    EVENTS = "events"
    DEEPLINK = "deeplink"
    POPUP = "popup"
    INJECTED = "injected"
    REMOTE_SIGNER = "remoteSigner"


CapabilityLike = Union[Capability, str]
CapabilitySet = FrozenSet[str]

_TAG_RE = re.compile(r"^[a-z][A-Za-z0-9]{0,47}$")


def capability_tag(value: CapabilityLike) -> str:
    tag = value.value if isinstance(value, Capability) else value
    if not isinstance(tag, str) or not _TAG_RE.match(tag):
        raise ValueError(f"Invalid capability tag: {value!r}")
    return tag


def capability_set(values: Iterable[CapabilityLike]) -> CapabilitySet:
    """Normalize an iterable of tags into an immutable capability set."""
    return frozenset(capability_tag(v) for v in values)


def snapshot(values: Iterable[CapabilityLike]) -> Tuple[str, ...]:
    """Sorted, immutable record of a capability set at one point in time."""
    return tuple(sorted(capability_set(values)))


def missing_capabilities(
    available: Iterable[CapabilityLike],
    required: Iterable[CapabilityLike],
) -> Tuple[str, ...]:
    have = capability_set(available)
    return tuple(sorted(capability_set(required) - have))
