"""
Tests for the EventBus publish/subscribe hub.
"""

import pytest

from cantonconnect.core.errors import UnknownWalletError
from cantonconnect.events import (
    ErrorEvent,
    EventBus,
    EventType,
    SessionDisconnectedEvent,
    StateChangedEvent,
)


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        def on_sync(event):
            seen.append(("sync", event.to_state))

        async def on_async(event):
            seen.append(("async", event.to_state))

        bus.on(EventType.STATE_CHANGED, on_sync)
        bus.on("state:changed", on_async)
        await bus.emit(StateChangedEvent(from_state="disconnected", to_state="connecting"))

        assert seen == [("sync", "connecting"), ("async", "connecting")]

    @pytest.mark.asyncio
    async def test_only_matching_type_is_delivered(self):
        bus = EventBus()
        seen = []
        bus.on(EventType.SESSION_DISCONNECTED, seen.append)

        await bus.emit(StateChangedEvent(from_state="connected", to_state="disconnecting"))
        event = SessionDisconnectedEvent(session_id="s" * 16, wallet_id="w1")
        await bus.emit(event)

        assert seen == [event]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.on(EventType.ERROR, seen.append)
        assert bus.listener_count(EventType.ERROR) == 1

        unsubscribe()
        await bus.emit(ErrorEvent(error=UnknownWalletError("w9")))

        assert seen == []
        assert bus.listener_count("error") == 0

    @pytest.mark.asyncio
    async def test_off_and_clear(self):
        bus = EventBus()
        seen = []
        bus.on(EventType.ERROR, seen.append)
        bus.off(EventType.ERROR, seen.append)
        bus.on(EventType.STATE_CHANGED, seen.append)
        bus.clear()

        await bus.emit(StateChangedEvent(from_state="a", to_state="b"))
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handlers_do_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        def broken_sync(event):
            raise RuntimeError("sync handler bug")

        async def broken_async(event):
            raise RuntimeError("async handler bug")

        bus.on(EventType.ERROR, broken_sync)
        bus.on(EventType.ERROR, broken_async)
        bus.on(EventType.ERROR, seen.append)

        event = ErrorEvent(error=UnknownWalletError("w9"), operation="connect")
        await bus.emit(event)

        assert seen == [event]

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            EventBus().on("session:teleported", print)
