"""
Tests for the adapter contract: adapter table, guards, polling and
conformance checks.
"""

import sys
import types

import pytest

from cantonconnect.adapters.base import capability_guard, install_guard
from cantonconnect.adapters.polling import poll_until
from cantonconnect.adapters.registry import AdapterLoadError, AdapterRegistry, load_adapter
from cantonconnect.conformance import all_passed, create_test_context, run_conformance_checks
from cantonconnect.core.errors import (
    CapabilityNotSupportedError,
    OperationTimeoutError,
    WalletUnavailableError,
)
from cantonconnect.core.ids import to_wallet_id


# =============================================================================
# Adapter Registry Tests
# =============================================================================

class TestAdapterRegistry:
    """WalletId -> adapter table."""

    def test_register_instance_and_lookup(self, adapter_factory):
        adapter = adapter_factory("w1")
        registry = AdapterRegistry([adapter])
        assert registry.get(to_wallet_id("w1")) is adapter
        assert to_wallet_id("w1") in registry
        assert len(registry) == 1
        assert registry.wallet_ids() == [to_wallet_id("w1")]

    def test_register_class(self, adapter_factory):
        registry = AdapterRegistry()
        adapter = registry.register(adapter_factory)
        assert isinstance(adapter, adapter_factory)
        assert registry.get(to_wallet_id("w1")) is adapter

    def test_requires_connect_capability(self, adapter_factory):
        with pytest.raises(AdapterLoadError):
            AdapterRegistry([adapter_factory(capabilities=("restore",))])

    def test_rejects_non_adapter(self):
        with pytest.raises(AdapterLoadError):
            AdapterRegistry().register(object())

    def test_replacing_keeps_latest(self, adapter_factory):
        first, second = adapter_factory("w1"), adapter_factory("w1")
        registry = AdapterRegistry([first, second])
        assert registry.get(to_wallet_id("w1")) is second
        assert list(registry) == [second]

    def test_load_adapter_reference(self, adapter_factory, monkeypatch):
        module = types.ModuleType("fake_wallet_pkg")
        module.FakeWalletAdapter = adapter_factory
        module.instance = adapter_factory("w2")
        monkeypatch.setitem(sys.modules, "fake_wallet_pkg", module)

        assert isinstance(load_adapter("fake_wallet_pkg:FakeWalletAdapter"), adapter_factory)
        assert load_adapter("fake_wallet_pkg:instance") is module.instance

        registry = AdapterRegistry(["fake_wallet_pkg:instance"])
        assert to_wallet_id("w2") in registry

    @pytest.mark.parametrize(
        "reference",
        ["no_colon", "fake_wallet_missing_mod:Thing", "json:not_there", "json:dumps"],
    )
    def test_load_adapter_errors(self, reference):
        with pytest.raises(AdapterLoadError):
            load_adapter(reference)


# =============================================================================
# Guard Tests
# =============================================================================

class TestGuards:
    """Capability and install guards."""

    def test_capability_guard(self, adapter_factory):
        adapter = adapter_factory(capabilities=("connect", "restore"))
        capability_guard(adapter, ["connect"])
        with pytest.raises(CapabilityNotSupportedError) as exc:
            capability_guard(adapter, ["connect", "signMessage"])
        assert exc.value.details["missing"] == ["signMessage"]

    def test_supports(self, adapter_factory):
        adapter = adapter_factory(capabilities=("connect",))
        assert adapter.supports("connect")
        assert not adapter.supports("restore")

    @pytest.mark.asyncio
    async def test_install_guard_passes_when_installed(self, adapter_factory):
        await install_guard(adapter_factory(installed=True))

    @pytest.mark.asyncio
    async def test_install_guard_raises_with_reason(self, adapter_factory):
        with pytest.raises(WalletUnavailableError) as exc:
            await install_guard(adapter_factory(installed=False))
        assert "extension not found" in exc.value.message

    @pytest.mark.asyncio
    async def test_install_guard_treats_raising_detect_as_unavailable(self, adapter_factory):
        adapter = adapter_factory()

        async def broken():
            raise RuntimeError("window is undefined")

        adapter.detect_installed = broken
        with pytest.raises(WalletUnavailableError):
            await install_guard(adapter)


# =============================================================================
# Polling Tests
# =============================================================================

class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestPollUntil:
    """Bounded fixed-interval polling."""

    @pytest.mark.asyncio
    async def test_returns_first_accepted_result(self):
        fake = FakeTime()
        statuses = iter(["pending", "pending", "approved"])

        async def fetch():
            return next(statuses)

        result = await poll_until(
            fetch,
            lambda s: s != "pending",
            interval_seconds=2,
            timeout_seconds=30,
            sleep=fake.sleep,
            clock=fake.clock,
        )
        assert result == "approved"
        assert fake.sleeps == [2, 2]

    @pytest.mark.asyncio
    async def test_times_out(self):
        fake = FakeTime()
        calls = []

        async def fetch():
            calls.append(fake.now)
            return "pending"

        with pytest.raises(OperationTimeoutError) as exc:
            await poll_until(
                fetch,
                lambda s: False,
                interval_seconds=2,
                timeout_seconds=5,
                operation="approval",
                sleep=fake.sleep,
                clock=fake.clock,
            )
        assert exc.value.details["operation"] == "approval"
        # last sleep is clipped to the deadline
        assert fake.sleeps == [2, 2, 1]
        assert calls == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_fetch_errors_propagate(self):
        async def fetch():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await poll_until(fetch, lambda s: True)

    @pytest.mark.asyncio
    async def test_rejects_non_positive_arguments(self):
        async def fetch():
            return None

        with pytest.raises(ValueError):
            await poll_until(fetch, lambda s: True, interval_seconds=0)
        with pytest.raises(ValueError):
            await poll_until(fetch, lambda s: True, timeout_seconds=0)


# =============================================================================
# Conformance Tests
# =============================================================================

class TestConformance:
    """Adapter contract checks."""

    @pytest.mark.asyncio
    async def test_conforming_adapter_passes(self, adapter_factory):
        results = await run_conformance_checks(adapter_factory(), create_test_context())
        assert all_passed(results), [r.to_dict() for r in results if not r.passed]
        names = [r.name for r in results]
        assert "get_capabilities is stable" in names
        assert "restore implemented iff declared" in names

    @pytest.mark.asyncio
    async def test_restore_implemented_but_not_declared(self, adapter_factory):
        results = await run_conformance_checks(adapter_factory(capabilities=("connect",)))
        failed = {r.name for r in results if not r.passed}
        assert failed == {"restore implemented iff declared"}

    @pytest.mark.asyncio
    async def test_missing_connect_and_raising_detect(self, adapter_factory):
        adapter = adapter_factory(capabilities=("restore",))

        async def broken():
            raise RuntimeError("boom")

        adapter.detect_installed = broken
        results = await run_conformance_checks(adapter)
        failed = {r.name: r for r in results if not r.passed}
        assert 'capabilities include "connect"' in failed
        assert failed["detect_installed does not raise"].error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_declared_signing_capability_without_method(self, adapter_factory):
        results = await run_conformance_checks(
            adapter_factory(capabilities=("connect", "restore", "signMessage"))
        )
        failed = [r for r in results if not r.passed]
        assert [r.name for r in failed] == ["signMessage capability has sign_message"]

    @pytest.mark.asyncio
    async def test_not_installed_requires_reason(self, adapter_factory):
        results = await run_conformance_checks(adapter_factory(installed=False))
        detect = next(r for r in results if r.name == "detect_installed returns a valid result")
        assert detect.passed
        assert detect.details["reason"] == "extension not found"
