"""Prompt submission queue.

Single-flight per project: a prompt submitted while the agent is busy
waits here, and the queue drains one prompt at a time on the
loading → idle edge. Draining re-checks backend liveness before
dispatching, so a stale local "idle" never starts a second process.
"""
from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from agentdeck.engine.process_state import ProcessState
from agentdeck.engine.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_prompt_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class QueuedPrompt:
    id: str
    prompt: str
    model: str


LivenessCheck = Callable[[], Awaitable[bool]]
Dispatch = Callable[[QueuedPrompt], Any]
QueueListener = Callable[[tuple[QueuedPrompt, ...]], None]


class PromptQueue:
    def __init__(
        self,
        scheduler: TaskScheduler,
        is_running: LivenessCheck,
        dispatch: Dispatch,
        *,
        settle_delay: float = 0.1,
        state: Callable[[], ProcessState] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._is_running = is_running
        self._dispatch = dispatch
        self._settle_delay = settle_delay
        self._state = state
        self._items: tuple[QueuedPrompt, ...] = ()
        self._draining = False
        self._listeners: list[QueueListener] = []

    @property
    def items(self) -> tuple[QueuedPrompt, ...]:
        return self._items

    @property
    def is_draining(self) -> bool:
        return self._draining

    def __len__(self) -> int:
        return len(self._items)

    def add_listener(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def _set_items(self, items: tuple[QueuedPrompt, ...]) -> None:
        self._items = items
        for listener in list(self._listeners):
            try:
                listener(items)
            except Exception:
                logger.exception("Queue listener failed")

    # ── user operations ────────────────────────────────────────────

    def add_to_queue(self, prompt: str, model: str) -> QueuedPrompt:
        item = QueuedPrompt(id=new_prompt_id(), prompt=prompt, model=model)
        self._set_items(self._items + (item,))
        logger.info("Queued prompt %s (%d waiting)", item.id, len(self._items))
        return item

    def requeue(self, item: QueuedPrompt) -> None:
        """Put a prompt that could not be sent back at the head."""
        self._set_items((item,) + self._items)

    def remove_from_queue(self, prompt_id: str) -> bool:
        remaining = tuple(p for p in self._items if p.id != prompt_id)
        if len(remaining) == len(self._items):
            return False
        self._set_items(remaining)
        return True

    def clear_queue(self) -> None:
        if self._items:
            logger.info("Clearing %d queued prompt(s)", len(self._items))
        self._set_items(())

    # ── drain ──────────────────────────────────────────────────────

    def on_process_state(self, old: ProcessState, new: ProcessState) -> None:
        """Process state listener: drains on the loading → idle edge only."""
        if not (old.is_loading and not new.is_loading):
            return
        if not self._items or new.is_pending_send or self._draining:
            return
        self._start_drain()

    def _start_drain(self) -> None:
        self._draining = True
        self._scheduler.spawn(self._drain, name="prompt-queue-drain")

    async def _drain(self) -> None:
        try:
            running = await self._is_running()
        except Exception as exc:
            logger.warning("Liveness check before queue drain failed: %s", exc)
            self._draining = False
            return
        if running or not self._items:
            logger.debug("Queue drain skipped (running=%s, queued=%d)", running, len(self._items))
            self._draining = False
            return
        head, rest = self._items[0], self._items[1:]
        self._set_items(rest)
        logger.info("Dispatching queued prompt %s (%d left)", head.id, len(rest))
        self._scheduler.call_later(
            self._settle_delay, lambda: self._run_dispatch(head), name="prompt-queue-dispatch",
        )

    async def _run_dispatch(self, item: QueuedPrompt) -> None:
        try:
            result = self._dispatch(item)
            if hasattr(result, "__await__"):
                await result
        except Exception:
            logger.exception("Dispatch of queued prompt %s failed", item.id)
        finally:
            self._draining = False
            self._resume_if_idle()

    def _resume_if_idle(self) -> None:
        """Drain again if the process went idle while the guard was held.

        An edge that arrives during a dispatch (the submit failed, or the
        run finished before the submit call returned) is ignored by
        on_process_state, so the state is re-read here.
        """
        if self._state is None or not self._items or self._scheduler.closed:
            return
        state = self._state()
        if state.is_loading:
            return
        logger.debug("Process went idle during dispatch; draining again")
        self._start_drain()
