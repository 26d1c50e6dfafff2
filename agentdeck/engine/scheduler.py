"""Cancellable scheduled tasks on the running asyncio loop.

Every timer in the core (delta flush, pending-send timeout, liveness
poll, session-sync debounce, queue settle delay) is a ScheduledTask
owned by one TaskScheduler, so disposing the orchestrator tears all of
them down deterministically.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class ScheduledTask:
    """Handle for one scheduled callback (one-shot or repeating)."""

    def __init__(self, name: str, task: asyncio.Task) -> None:
        self.name = name
        self._task = task
        self.stopping = False

    @property
    def done(self) -> bool:
        return self._task.done() or self.stopping

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> None:
        if self._task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A callback cancelling its own task: let the current tick finish,
        # a repeating runner exits before the next one.
        if current is self._task:
            self.stopping = True
            return
        self._task.cancel()

    async def wait(self) -> None:
        """Wait until the task finishes; cancellation is not an error here."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def __repr__(self) -> str:
        state = "done" if self.done else "pending"
        return f"<ScheduledTask {self.name} {state}>"


class TaskScheduler:
    """Creates and tracks ScheduledTasks on the running loop."""

    def __init__(self) -> None:
        self._tasks: set[ScheduledTask] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> list[ScheduledTask]:
        return [t for t in self._tasks if not t.done]

    def _track(self, name: str, coro: Awaitable[None]) -> ScheduledTask:
        if self._closed:
            # Closing happens at teardown; late timers must not outlive it.
            coro.close()  # type: ignore[union-attr]
            raise RuntimeError(f"TaskScheduler is closed; cannot schedule {name}")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        handle = ScheduledTask(name, task)
        self._tasks.add(handle)
        task.add_done_callback(lambda _t: self._tasks.discard(handle))
        return handle

    def call_later(self, delay: float, callback: Callback, *, name: str = "timer") -> ScheduledTask:
        """Run *callback* once after *delay* seconds. Async callbacks are awaited."""

        async def _runner() -> None:
            await asyncio.sleep(delay)
            try:
                await _invoke(callback)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled task %s failed", name)

        return self._track(name, _runner())

    def call_every(self, interval: float, callback: Callback, *, name: str = "poll") -> ScheduledTask:
        """Run *callback* every *interval* seconds until cancelled.

        A failing tick is logged and the loop keeps going.
        """

        handles: list[ScheduledTask] = []

        async def _runner() -> None:
            while not (handles and handles[0].stopping):
                await asyncio.sleep(interval)
                try:
                    await _invoke(callback)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Periodic task %s tick failed", name)

        handle = self._track(name, _runner())
        handles.append(handle)
        return handle

    def spawn(self, callback: Callback, *, name: str = "task") -> ScheduledTask:
        """Run *callback* as soon as the loop gets to it."""
        return self.call_later(0, callback, name=name)

    def cancel_all(self) -> None:
        for handle in list(self._tasks):
            handle.cancel()

    async def aclose(self) -> None:
        """Cancel every task and wait for them to unwind."""
        self._closed = True
        handles = list(self._tasks)
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.wait()
        self._tasks.clear()
