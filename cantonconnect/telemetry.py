"""
Usage counters.

The manager and the registry verifier count connect, restore and registry
outcomes here. Counts stay in process; subclass ``Telemetry`` and override
``increment`` to forward them somewhere else. No identifiers or session data
are ever recorded, only metric names.
"""

import logging
from collections import Counter
from typing import Dict

logger = logging.getLogger(__name__)

WALLET_CONNECT_ATTEMPTS = "wallet_connect_attempts"
WALLET_CONNECT_SUCCESS = "wallet_connect_success"
SESSIONS_CREATED = "sessions_created"
SESSIONS_RESTORED = "sessions_restored"
RESTORE_ATTEMPTS = "restore_attempts"

REGISTRY_FETCH = "registry_fetch"
REGISTRY_CACHE_HIT = "registry_cache_hit"
REGISTRY_STALE = "registry_stale"

ERROR_PREFIX = "error_"


def error_metric(code: str) -> str:
    """``error_USER_REJECTED`` style counter name for an error code."""
    return f"{ERROR_PREFIX}{code}"


class Telemetry:
    """In-process counter store."""

    def __init__(self):
        self._counts: Counter = Counter()

    def increment(self, metric: str, value: int = 1) -> None:
        self._counts[metric] += value
        logger.debug(f"metric {metric} +{value}")

    def get(self, metric: str) -> int:
        return self._counts[metric]

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    def reset(self) -> None:
        self._counts.clear()
