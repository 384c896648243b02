from abc import ABC, abstractmethod
from typing import Iterable, Optional

from ..core.capabilities import Capability, CapabilityLike, CapabilitySet, missing_capabilities
from ..core.errors import CapabilityNotSupportedError, WalletUnavailableError
from ..core.ids import WalletId
from ..core.models import AdapterContext, ConnectResult, DetectResult, PersistedSession, Session

# Session-scoped capabilities and the optional adapter coroutine backing each.
# Each is called as ``method(context, session, params)``.
CAPABILITY_METHODS = {
    Capability.SIGN_MESSAGE.value: "sign_message",
    Capability.SIGN_TRANSACTION.value: "sign_transaction",
    Capability.SUBMIT_TRANSACTION.value: "submit_transaction",
    Capability.LEDGER_API.value: "ledger_api",
}


class WalletAdapter(ABC):
    """
    Contract every wallet integration implements.

    The lifecycle manager snapshots ``get_capabilities()`` at connect/restore
    time and never re-reads it for a live session. ``restore`` is only called
    when ``Capability.RESTORE`` is declared. Adapters declaring one of the
    ``CAPABILITY_METHODS`` tags also define the matching coroutine.
    """

    wallet_id: WalletId
    name: str

    @abstractmethod
    def get_capabilities(self) -> CapabilitySet:
        """Capabilities this integration supports (pure, synchronous)"""
        pass

    @abstractmethod
    async def detect_installed(self) -> DetectResult:
        """Whether the wallet is reachable. Must not raise"""
        pass

    @abstractmethod
    async def connect(self, context: AdapterContext) -> ConnectResult:
        """Establish a connection; may wait on user interaction in the wallet"""
        pass

    @abstractmethod
    async def disconnect(self, context: AdapterContext, session: Session) -> None:
        """Best-effort remote disconnect"""
        pass

    async def restore(self, context: AdapterContext, persisted: PersistedSession) -> Optional[Session]:
        """
        Re-validate a persisted session without new user consent.

        Returns None when restoration is not currently valid. The default
        implementation never restores.
        """
        return None

    def supports(self, capability: CapabilityLike) -> bool:
        tag = capability.value if isinstance(capability, Capability) else capability
        return tag in self.get_capabilities()


def capability_guard(adapter: WalletAdapter, required: Iterable[CapabilityLike]) -> None:
    """Raise CapabilityNotSupportedError unless the adapter declares every required tag."""
    missing = missing_capabilities(adapter.get_capabilities(), required)
    if missing:
        raise CapabilityNotSupportedError(str(adapter.wallet_id), missing)


async def install_guard(adapter: WalletAdapter) -> None:
    """Raise WalletUnavailableError if the wallet is not installed."""
    try:
        detect = await adapter.detect_installed()
    except Exception as e:
        # detect_installed must not raise; treat a raising adapter as absent
        raise WalletUnavailableError(str(adapter.wallet_id), f"detection failed: {e}") from e
    if not detect.installed:
        raise WalletUnavailableError(str(adapter.wallet_id), detect.reason)
