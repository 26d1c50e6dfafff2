"""Process state synchronizer.

Reconciles the local "is the agent running" belief with the backend:

    IDLE --begin_send--> PENDING_SEND --init / timeout--> RUNNING
    RUNNING --complete / cancel / error--> IDLE

While PENDING_SEND, liveness reads are suppressed: the backend may not
have registered the new process yet, and a stale "not running" would
drop the UI back to idle mid-send. While RUNNING, a fallback poll
re-reads liveness in case a completion event was lost. A failed read
keeps the previous state. While a cancel request is in flight, liveness
reads are suppressed too: the backend may still list the process until
the cancel call returns.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agentdeck.engine.backend import ProcessBackend
from agentdeck.engine.scheduler import ScheduledTask, TaskScheduler

logger = logging.getLogger(__name__)


class ProcessPhase(Enum):
    IDLE = "idle"
    PENDING_SEND = "pending_send"
    RUNNING = "running"


@dataclass(frozen=True)
class ProcessState:
    phase: ProcessPhase = ProcessPhase.IDLE
    has_active_session: bool = False

    @property
    def is_loading(self) -> bool:
        return self.phase is not ProcessPhase.IDLE

    @property
    def is_pending_send(self) -> bool:
        return self.phase is ProcessPhase.PENDING_SEND


StateListener = Callable[[ProcessState, ProcessState], None]


class ProcessStateSynchronizer:
    """Owns the ProcessState of one project path."""

    def __init__(
        self,
        backend: ProcessBackend,
        scheduler: TaskScheduler,
        project_path: str,
        provider: str,
        *,
        pending_send_timeout: float = 0.5,
        poll_interval: float = 0.2,
    ) -> None:
        self._backend = backend
        self._scheduler = scheduler
        self.project_path = project_path
        self.provider = provider
        self._pending_send_timeout = pending_send_timeout
        self._poll_interval = poll_interval

        self._state = ProcessState()
        self._listeners: list[StateListener] = []
        self._pending_timer: ScheduledTask | None = None
        self._poll_task: ScheduledTask | None = None
        # Bumped by every local transition; a liveness read that started
        # under an older generation is stale and gets discarded.
        self._generation = 0
        self._cancelling = False

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def phase(self) -> ProcessPhase:
        return self._state.phase

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_pending_send(self) -> bool:
        return self._state.is_pending_send

    @property
    def is_cancelling(self) -> bool:
        return self._cancelling

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # ── transitions ─────────────────────────────────────────────────

    def begin_send(self) -> None:
        """IDLE → PENDING_SEND. Liveness reads are suppressed from here."""
        self._generation += 1
        self._cancel_pending_timer()
        self._set(ProcessPhase.PENDING_SEND)

    def arm_pending_timeout(self) -> None:
        """Start the pending-send guard timeout (after the submit call returned)."""
        if not self._state.is_pending_send:
            return
        self._cancel_pending_timer()
        self._pending_timer = self._scheduler.call_later(
            self._pending_send_timeout,
            self._pending_expired,
            name=f"pending-send:{self.project_path}",
        )

    def _pending_expired(self) -> None:
        self._pending_timer = None
        if self._state.is_pending_send:
            logger.debug("Pending-send guard expired for %s; assuming running", self.project_path)
            self._generation += 1
            self._set(ProcessPhase.RUNNING)

    def mark_started(self) -> None:
        """An init event was observed for the submitted prompt."""
        if not self._state.is_pending_send:
            return
        self._generation += 1
        self._cancel_pending_timer()
        self._set(ProcessPhase.RUNNING)

    def begin_cancel(self) -> None:
        """Suppress liveness reads until end_cancel()."""
        self._generation += 1
        self._cancelling = True

    def end_cancel(self) -> None:
        self._generation += 1
        self._cancelling = False

    def mark_idle(self, reason: str = "") -> bool:
        """Force IDLE. Returns False (and notifies nobody) if already idle."""
        self._generation += 1
        self._cancel_pending_timer()
        if self._state.phase is ProcessPhase.IDLE:
            return False
        logger.info(
            "Process for %s is idle%s", self.project_path, f" ({reason})" if reason else "",
        )
        self._set(ProcessPhase.IDLE)
        return True

    async def sync(self) -> None:
        """Reconcile with the backend's view of the process."""
        if not self.project_path:
            self.mark_idle("no project path")
            return
        if self._state.is_pending_send or self._cancelling:
            return
        generation = self._generation
        try:
            running = await self._backend.query_is_running(self.project_path, self.provider)
        except Exception as exc:
            logger.warning(
                "Liveness query for %s failed; keeping %s: %s",
                self.project_path, self._state.phase.value, exc,
            )
            return
        if generation != self._generation or self._state.is_pending_send or self._cancelling:
            logger.debug("Discarding stale liveness read for %s", self.project_path)
            return
        if running:
            self._set(ProcessPhase.RUNNING)
        elif self._state.phase is not ProcessPhase.IDLE:
            self._set(ProcessPhase.IDLE)

    # ── internals ───────────────────────────────────────────────────

    def _set(self, phase: ProcessPhase) -> None:
        old = self._state
        new = ProcessState(phase=phase, has_active_session=phase is not ProcessPhase.IDLE)
        if new == old:
            return
        self._state = new
        if phase is ProcessPhase.RUNNING:
            self._start_polling()
        else:
            self._stop_polling()
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Process state listener failed")

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        self._poll_task = self._scheduler.call_every(
            self._poll_interval, self.sync, name=f"liveness-poll:{self.project_path}",
        )

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def _cancel_pending_timer(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None

    def dispose(self) -> None:
        self._cancel_pending_timer()
        self._stop_polling()
