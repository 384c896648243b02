"""
Event surface for UI consumers.

The lifecycle manager publishes here; consumers subscribe per event type.
Handlers may be plain functions or coroutines. A failing handler is logged
and never affects the operation that emitted the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from .core.errors import CantonConnectError
from .core.models import Session
from .registry.manifest import RegistryStatus

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_CONNECTED = "session:connected"
    SESSION_DISCONNECTED = "session:disconnected"
    SESSION_EXPIRED = "session:expired"
    STATE_CHANGED = "state:changed"
    REGISTRY_STATUS = "registry:status"
    ERROR = "error"


@dataclass(frozen=True)
class SessionConnectedEvent:
    session: Session
    reason: Literal["connect", "restore"]
    type: EventType = EventType.SESSION_CONNECTED


@dataclass(frozen=True)
class SessionDisconnectedEvent:
    session_id: str
    wallet_id: str
    type: EventType = EventType.SESSION_DISCONNECTED


@dataclass(frozen=True)
class SessionExpiredEvent:
    session_id: str
    wallet_id: str
    type: EventType = EventType.SESSION_EXPIRED


@dataclass(frozen=True)
class StateChangedEvent:
    from_state: str
    to_state: str
    type: EventType = EventType.STATE_CHANGED


@dataclass(frozen=True)
class RegistryStatusEvent:
    status: RegistryStatus
    type: EventType = EventType.REGISTRY_STATUS


@dataclass(frozen=True)
class ErrorEvent:
    error: CantonConnectError
    operation: Optional[str] = None
    type: EventType = EventType.ERROR


Event = Union[
    SessionConnectedEvent,
    SessionDisconnectedEvent,
    SessionExpiredEvent,
    StateChangedEvent,
    RegistryStatusEvent,
    ErrorEvent,
]
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """Typed publish/subscribe hub."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}

    def on(self, event_type: Union[EventType, str], handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        event_type = EventType(event_type)
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.off(event_type, handler)

        return unsubscribe

    def off(self, event_type: Union[EventType, str], handler: EventHandler) -> None:
        event_type = EventType(event_type)
        if event_type in self._handlers:
            self._handlers[event_type] = [h for h in self._handlers[event_type] if h != handler]

    def listener_count(self, event_type: Union[EventType, str]) -> int:
        return len(self._handlers.get(EventType(event_type), []))

    async def emit(self, event: Event) -> None:
        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return

        pending = []
        for handler in handlers:
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Event handler error for {event.type.value}: {e}")
                continue
            if asyncio.iscoroutine(result):
                pending.append(result)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Event handler error for {event.type.value}: {result}")

    async def emit_registry_status(self, status: RegistryStatus) -> None:
        await self.emit(RegistryStatusEvent(status=status))

    def clear(self) -> None:
        self._handlers.clear()
