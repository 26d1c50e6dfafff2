"""Session identity tracking.

The backend assigns the session id; the client learns it from the
`system/init` event at the start of every agent run. A new id means the
process behind this project changed, so liveness is re-read shortly
after. The current id is persisted as a SessionPointer so the same
conversation can be found again after a reload.
"""
from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

from agentdeck.adapters.events import StreamEvent
from agentdeck.engine.errors import PersistenceError
from agentdeck.engine.scheduler import ScheduledTask, TaskScheduler
from agentdeck.shared.services.persistence import (
    SessionPointer,
    SessionPointerStore,
    now_ms,
    project_id_for,
)

logger = logging.getLogger(__name__)

__all__ = ["SessionTracker", "project_id_for"]


class SessionTracker:
    def __init__(
        self,
        store: SessionPointerStore,
        scheduler: TaskScheduler,
        project_path: str,
        provider: str,
        *,
        reconcile: Callable[[], Any],
        is_pending_send: Callable[[], bool],
        debounce: float = 0.05,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self.project_path = project_path
        self.provider = provider
        self._reconcile = reconcile
        self._is_pending_send = is_pending_send
        self._debounce = debounce

        self._session_id: str | None = None
        self._reconcile_timer: ScheduledTask | None = None
        self.reconcile_count = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def project_id(self) -> str:
        return project_id_for(self.project_path)

    def observe_init(self, event: StreamEvent) -> bool:
        """Track the id from a system/init event. True if the id changed."""
        if not event.is_init or not event.session_id:
            return False
        previous = self._session_id
        self._session_id = event.session_id
        if event.session_id == previous:
            return False
        logger.info(
            "Session id for %s is now %s (was %s)", self.project_path, event.session_id, previous,
        )
        self._schedule_reconcile()
        return True

    def adopt(self, session_id: str | None) -> None:
        """Take over an id from restore, without reconciling."""
        self._session_id = session_id

    def reset(self) -> None:
        self._cancel_reconcile()
        self._session_id = None

    def _schedule_reconcile(self) -> None:
        self._cancel_reconcile()
        self._reconcile_timer = self._scheduler.call_later(
            self._debounce, self._run_reconcile, name=f"session-sync:{self.project_path}",
        )

    async def _run_reconcile(self) -> None:
        self._reconcile_timer = None
        if self._is_pending_send():
            logger.debug("Skipping session reconciliation while a send is pending")
            return
        self.reconcile_count += 1
        result = self._reconcile()
        if inspect.isawaitable(result):
            await result

    def _cancel_reconcile(self) -> None:
        if self._reconcile_timer is not None:
            self._reconcile_timer.cancel()
            self._reconcile_timer = None

    # ── persistence ─────────────────────────────────────────────────

    def persist(self, message_count: int) -> bool:
        """Save the current pointer. Failures are logged, never raised."""
        if not self._session_id or not self.project_path:
            return False
        pointer = SessionPointer(
            session_id=self._session_id,
            project_id=self.project_id,
            project_path=self.project_path,
            provider=self.provider,
            message_count=message_count,
            timestamp=now_ms(),
        )
        try:
            self._store.save(pointer)
        except PersistenceError as exc:
            logger.warning("Could not persist session pointer: %s", exc)
            return False
        return True

    def find_latest(self) -> SessionPointer | None:
        if not self.project_path:
            return None
        return self._store.find_latest(self.project_path, self.provider)

    def dispose(self) -> None:
        self._cancel_reconcile()
