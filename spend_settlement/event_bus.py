"""In-process publish/subscribe for domain events.

Usage:
    bus = EventBus()
    bus.subscribe("spend.approved", lifecycle.on_approved)
    bus.publish("spend.approved", event)
    await bus.drain()       # wait for async handlers in flight
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._inflight: set[asyncio.Task] = set()
        self.published = 0
        self.handler_errors = 0

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def handlers(self, name: str) -> list[Handler]:
        return list(self._handlers.get(name, ()))

    def publish(self, name: str, event: Any) -> int:
        """Dispatch *event*; coroutine handlers are scheduled as tasks.

        Returns the number of handlers invoked.
        """
        self.published += 1
        handlers = self._handlers.get(name, ())
        if not handlers:
            log.debug("no subscribers for %s", name)
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                self.handler_errors += 1
                log.exception("%s handler %s failed", name, getattr(handler, "__qualname__", handler))
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._guard(name, handler, result))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        return len(handlers)

    async def _guard(self, name: str, handler: Handler, awaitable: Any) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception:
            self.handler_errors += 1
            log.exception("%s handler %s failed", name, getattr(handler, "__qualname__", handler))

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @property
    def inflight(self) -> int:
        return len(self._inflight)
