"""
Wallet adapter contract, adapter table and shared adapter utilities.
"""

from .base import CAPABILITY_METHODS, WalletAdapter, capability_guard, install_guard
from .polling import poll_until
from .registry import AdapterLoadError, AdapterRegistry, load_adapter

__all__ = [
    "WalletAdapter",
    "CAPABILITY_METHODS",
    "capability_guard",
    "install_guard",
    "AdapterRegistry",
    "AdapterLoadError",
    "load_adapter",
    "poll_until",
]
