"""
Adapter interface table.

Maps each WalletId to one adapter instance, built once at configuration
time. Adapters can be registered as instances, as classes, or as
``"package.module:ClassName"`` references taken from a manifest entry.
"""

from __future__ import annotations

import importlib
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Type, Union

from ..core.capabilities import Capability
from ..core.ids import WalletId
from .base import WalletAdapter

logger = logging.getLogger(__name__)

AdapterSpec = Union[WalletAdapter, Type[WalletAdapter], str]


class AdapterLoadError(Exception):
    """An adapter reference could not be turned into a conforming adapter."""
    pass


def load_adapter(reference: str) -> WalletAdapter:
    """
    Import and instantiate ``"package.module:ClassName"``.

    The attribute may be a WalletAdapter subclass (instantiated with no
    arguments) or an already-built instance.
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise AdapterLoadError(f"Adapter reference must look like 'module:Name', got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise AdapterLoadError(f"Cannot import adapter module {module_name!r}: {e}") from e

    target = getattr(module, attr, None)
    if target is None:
        raise AdapterLoadError(f"Module {module_name!r} has no attribute {attr!r}")

    if isinstance(target, type) and issubclass(target, WalletAdapter):
        return target()
    if isinstance(target, WalletAdapter):
        return target
    raise AdapterLoadError(f"{reference!r} is not a WalletAdapter")


class AdapterRegistry:
    """WalletId -> adapter lookup table."""

    def __init__(self, adapters: Optional[Iterable[AdapterSpec]] = None):
        self._adapters: Dict[WalletId, WalletAdapter] = {}
        for spec in adapters or ():
            self.register(spec)

    def register(self, spec: AdapterSpec) -> WalletAdapter:
        if isinstance(spec, str):
            adapter = load_adapter(spec)
        elif isinstance(spec, type) and issubclass(spec, WalletAdapter):
            adapter = spec()
        elif isinstance(spec, WalletAdapter):
            adapter = spec
        else:
            raise AdapterLoadError(f"Cannot register {spec!r} as a wallet adapter")

        capabilities = adapter.get_capabilities()
        if Capability.CONNECT.value not in capabilities:
            raise AdapterLoadError(
                f'Adapter "{adapter.wallet_id}" does not declare the "connect" capability'
            )

        if adapter.wallet_id in self._adapters:
            logger.warning(f"Replacing adapter registered for {adapter.wallet_id}")
        self._adapters[adapter.wallet_id] = adapter

        logger.debug(
            f"Registered adapter {adapter.wallet_id} ({adapter.name}) "
            f"capabilities={sorted(capabilities)}"
        )
        return adapter

    def get(self, wallet_id: WalletId) -> Optional[WalletAdapter]:
        return self._adapters.get(wallet_id)

    def wallet_ids(self) -> List[WalletId]:
        return list(self._adapters)

    def __contains__(self, wallet_id: object) -> bool:
        return wallet_id in self._adapters

    def __iter__(self) -> Iterator[WalletAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)
