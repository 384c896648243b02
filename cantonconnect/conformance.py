"""
Adapter conformance checks.

Runs the standard contract checks against one adapter and returns structured
results. Reporting is left to the caller.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .adapters.base import CAPABILITY_METHODS, WalletAdapter, capability_guard
from .core.capabilities import Capability, capability_set
from .core.errors import CapabilityNotSupportedError
from .core.models import AdapterContext, DetectResult


@dataclass
class CheckResult:
    name: str
    passed: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "error": self.error,
            "details": self.details,
        }


def create_test_context(origin: str = "https://conformance.example.com") -> AdapterContext:
    return AdapterContext(
        app_name="Conformance Test",
        origin=origin,
        network="devnet",
        get_wallet=lambda wallet_id: None,
        timeout_seconds=5.0,
    )


def _overrides(adapter: WalletAdapter, method: str) -> bool:
    impl = getattr(type(adapter), method, None)
    return impl is not None and impl is not getattr(WalletAdapter, method, None)


async def run_conformance_checks(
    adapter: WalletAdapter,
    context: Optional[AdapterContext] = None,
) -> List[CheckResult]:
    """Exercise the adapter contract without connecting to a wallet."""
    context = context or create_test_context()
    results: List[CheckResult] = []

    wallet_id = getattr(adapter, "wallet_id", None)
    results.append(
        CheckResult(
            name="adapter has wallet_id",
            passed=bool(str(wallet_id or "")),
            details={"walletId": str(wallet_id) if wallet_id else None},
        )
    )
    name = getattr(adapter, "name", None)
    results.append(
        CheckResult(
            name="adapter has name",
            passed=isinstance(name, str) and bool(name),
            details={"name": name},
        )
    )

    try:
        first = capability_set(adapter.get_capabilities())
        second = capability_set(adapter.get_capabilities())
    except (TypeError, ValueError) as e:
        results.append(CheckResult(name="get_capabilities returns valid tags", passed=False, error=str(e)))
        # Nothing below is meaningful without capabilities
        return results

    results.append(
        CheckResult(
            name="get_capabilities returns valid tags",
            passed=True,
            details={"capabilities": sorted(first)},
        )
    )
    results.append(
        CheckResult(
            name="get_capabilities is stable",
            passed=first == second,
            details={"first": sorted(first), "second": sorted(second)},
        )
    )

    try:
        capability_guard(adapter, [Capability.CONNECT])
        results.append(CheckResult(name='capabilities include "connect"', passed=True))
    except CapabilityNotSupportedError as e:
        results.append(CheckResult(name='capabilities include "connect"', passed=False, error=e.message))

    try:
        detect = await adapter.detect_installed()
        valid = isinstance(detect, DetectResult) and isinstance(detect.installed, bool)
        if valid and not detect.installed:
            valid = isinstance(detect.reason, str) and bool(detect.reason)
        results.append(
            CheckResult(
                name="detect_installed returns a valid result",
                passed=valid,
                details={"installed": getattr(detect, "installed", None), "reason": getattr(detect, "reason", None)},
            )
        )
    except Exception as e:
        results.append(
            CheckResult(
                name="detect_installed does not raise",
                passed=False,
                error=f"{type(e).__name__}: {e}",
            )
        )

    declares_restore = Capability.RESTORE.value in first
    implements_restore = _overrides(adapter, "restore")
    results.append(
        CheckResult(
            name="restore implemented iff declared",
            passed=declares_restore == implements_restore,
            details={"declared": declares_restore, "implemented": implements_restore},
        )
    )

    for capability, method in CAPABILITY_METHODS.items():
        if capability not in first:
            continue
        impl = getattr(adapter, method, None)
        results.append(
            CheckResult(
                name=f"{capability} capability has {method}",
                passed=impl is not None and inspect.iscoroutinefunction(impl),
                error=None if impl is not None else f"{capability} declared but {method} not implemented",
            )
        )

    return results


def all_passed(results: List[CheckResult]) -> bool:
    return all(r.passed for r in results)
