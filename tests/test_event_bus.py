"""Tests for the in-process event bus."""
from __future__ import annotations

import asyncio

from spend_settlement.event_bus import EventBus


class TestEventBus:
    def test_sync_handlers_run_inline(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe("a", seen.append)
        bus.subscribe("a", lambda e: seen.append(e * 2))
        assert bus.publish("a", 3) == 2
        assert seen == [3, 6]

    def test_no_subscribers(self) -> None:
        bus = EventBus()
        assert bus.publish("nobody", object()) == 0
        assert bus.published == 1

    def test_async_handlers_drained(self) -> None:
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event)

        bus.subscribe("a", handler)

        async def scenario():
            bus.publish("a", 1)
            bus.publish("a", 2)
            assert bus.inflight == 2
            await bus.drain()
            return bus.inflight

        assert asyncio.run(scenario()) == 0
        assert seen == [1, 2]

    def test_handler_errors_are_isolated(self) -> None:
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("sync boom")

        async def broken_async(event):
            raise ValueError("async boom")

        bus.subscribe("a", broken)
        bus.subscribe("a", broken_async)
        bus.subscribe("a", seen.append)

        async def scenario():
            bus.publish("a", "x")
            await bus.drain()

        asyncio.run(scenario())
        assert seen == ["x"]
        assert bus.handler_errors == 2

    def test_handlers_copy(self) -> None:
        bus = EventBus()
        bus.subscribe("a", print)
        bus.handlers("a").clear()
        assert bus.handlers("a") == [print]
