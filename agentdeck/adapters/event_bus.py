"""Channel-keyed event bus between the backend connection and sessions.

The backend connection publishes payloads on channels named
`<kind>:<project_path>`; each session subscribes to the channels of its
own project. Publishing goes through a bounded queue (with backpressure
instead of dropping), and `run()` pumps the queue to the subscribers.
`deliver()` skips the queue and fans out immediately, which is what
tests and in-process producers use.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]

CHANNEL_KINDS = ("output", "error", "complete", "cancelled")


def channel_name(kind: str, project_path: str) -> str:
    return f"{kind}:{project_path}"


class EventBus:
    """Async queue plus synchronous fan-out to channel subscribers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._subscribers: dict[str, list[Handler]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* on *channel*. Returns the unsubscribe function."""
        self._subscribers.setdefault(channel, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(channel)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                del self._subscribers[channel]

        return _unsubscribe

    def deliver(self, channel: str, payload: Any) -> int:
        """Call every handler on *channel* now. Returns how many ran."""
        delivered = 0
        for handler in list(self._subscribers.get(channel, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", channel)
            delivered += 1
        return delivered

    async def publish(self, channel: str, payload: Any) -> None:
        if self._closed:
            return
        try:
            # Backpressure rather than dropping
            await asyncio.wait_for(self._queue.put((channel, payload)), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping event on %s (queue size: %d)",
                self._put_timeout, channel, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[tuple[str, Any]]:
        """Yield (channel, payload) as they arrive. Stops on close()."""
        while not self._closed:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield item

    async def run(self) -> None:
        """Pump queued events to subscribers until closed."""
        async for channel, payload in self.consume():
            if self.deliver(channel, payload) == 0:
                logger.debug("No subscriber for %s", channel)

    def close(self) -> None:
        self._closed = True

    def reset(self) -> None:
        """Drop queued events and re-open the bus. Subscriptions are kept."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
