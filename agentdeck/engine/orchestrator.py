"""Session orchestrator: wires the core for one project path.

Owns the ledger, process state, prompt queue, session tracker and
metrics of one conversation, subscribes them to the project's event
channels, and exposes the user operations (send, cancel, clear, switch
provider) plus read-only derived views for a renderer.

Data flow:
    output channel → ledger (→ tool correlation, displayable view)
    complete / cancelled / error channel → process state → queue drain
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from agentdeck.adapters.channels import ProjectChannels, error_text, parse_completion
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import StreamEvent, text_event
from agentdeck.engine.backend import HistoryLoader, ProcessBackend, ProjectRegistry
from agentdeck.engine.config import StreamConfig
from agentdeck.engine.errors import ProjectPathRequiredError
from agentdeck.engine.ledger import MessageLedger, is_delta_event
from agentdeck.engine.metrics import SessionMetrics
from agentdeck.engine.process_state import ProcessState, ProcessStateSynchronizer
from agentdeck.engine.prompt_queue import PromptQueue, QueuedPrompt
from agentdeck.engine.scheduler import TaskScheduler
from agentdeck.engine.session_identity import SessionTracker
from agentdeck.engine.tool_index import ToolCorrelation, build_tool_correlation
from agentdeck.engine.view_filter import filter_displayable
from agentdeck.shared.services.persistence import SessionPointerStore

logger = logging.getLogger(__name__)

CANCELLED_TEXT = "Session cancelled by user"
CLEARED_TEXT = "Conversation cleared. Starting fresh!"


class SessionOrchestrator:
    def __init__(
        self,
        project_path: str,
        provider: str,
        backend: ProcessBackend,
        history: HistoryLoader,
        bus: EventBus,
        store: SessionPointerStore,
        config: StreamConfig | None = None,
        session: str | None = None,
        scheduler: TaskScheduler | None = None,
        projects: ProjectRegistry | None = None,
    ) -> None:
        self.config = config or StreamConfig()
        self.project_path = project_path
        self.provider = provider or self.config.default_provider
        self._backend = backend
        self._history = history
        self._projects = projects
        self._initial_session = session
        self._scheduler = scheduler or TaskScheduler()
        self._channels = ProjectChannels(bus, project_path)

        self._ledger = MessageLedger(self._scheduler, self.config.delta_flush_interval)
        self._process = ProcessStateSynchronizer(
            backend,
            self._scheduler,
            project_path,
            self.provider,
            pending_send_timeout=self.config.pending_send_timeout,
            poll_interval=self.config.poll_interval,
        )
        self._queue = PromptQueue(
            self._scheduler,
            self._query_is_running,
            self._dispatch_queued,
            settle_delay=self.config.queue_settle_delay,
            state=lambda: self._process.state,
        )
        self._tracker = SessionTracker(
            store,
            self._scheduler,
            project_path,
            self.provider,
            reconcile=self._process.sync,
            is_pending_send=lambda: self._process.is_pending_send,
            debounce=self.config.session_sync_debounce,
        )
        self._metrics = SessionMetrics(default_model=self.config.default_model)
        self._is_first_prompt = True
        self._started = False
        self._closed = False

        self._process.add_listener(self._queue.on_process_state)

        # Derived views, recomputed at most once per ledger revision
        self._correlation: ToolCorrelation | None = None
        self._correlation_rev = -1
        self._displayable: list[StreamEvent] = []
        self._displayable_rev = -1

    # ── read-only accessors ─────────────────────────────────────────

    @property
    def entries(self) -> tuple[StreamEvent, ...]:
        return self._ledger.entries

    @property
    def ledger(self) -> MessageLedger:
        return self._ledger

    @property
    def displayable_entries(self) -> list[StreamEvent]:
        rev = self._ledger.revision
        if rev != self._displayable_rev:
            self._displayable = filter_displayable(self._ledger.entries, self.config.widget_tools)
            self._displayable_rev = rev
        return list(self._displayable)

    @property
    def tool_correlation(self) -> ToolCorrelation:
        rev = self._ledger.revision
        if self._correlation is None or rev != self._correlation_rev:
            self._correlation = build_tool_correlation(
                self._ledger.entries, self.config.agent_output_tool,
            )
            self._correlation_rev = rev
        return self._correlation

    @property
    def queued_prompts(self) -> tuple[QueuedPrompt, ...]:
        return self._queue.items

    @property
    def queue(self) -> PromptQueue:
        return self._queue

    @property
    def process_state(self) -> ProcessState:
        return self._process.state

    @property
    def process(self) -> ProcessStateSynchronizer:
        return self._process

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def total_tokens(self) -> int:
        return self._ledger.total_tokens

    @property
    def session_id(self) -> str | None:
        return self._tracker.session_id

    @property
    def tracker(self) -> SessionTracker:
        return self._tracker

    @property
    def is_first_prompt(self) -> bool:
        return self._is_first_prompt

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to the project's channels, restore, and read liveness once."""
        if self._started:
            return
        self._started = True
        self._channels.attach(
            on_output=self.handle_output,
            on_error=self.handle_error,
            on_complete=self.handle_complete,
            on_cancelled=self.handle_cancelled,
        )
        await self._restore()
        await self._process.sync()

    async def aclose(self) -> None:
        """Unsubscribe, stop every timer, and persist the session pointer."""
        if self._closed:
            return
        self._closed = True
        self._channels.detach()
        self._ledger.flush()
        self._process.dispose()
        self._tracker.dispose()
        await self._scheduler.aclose()
        self._tracker.persist(len(self._ledger))
        logger.info("Session orchestrator for %s closed", self.project_path)

    async def __aenter__(self) -> SessionOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _restore(self) -> None:
        if self._initial_session:
            if await self._load_history(self._initial_session):
                self._tracker.persist(len(self._ledger))
            return
        if not self.project_path:
            return
        pointer = self._tracker.find_latest()
        if pointer is None:
            logger.debug("No stored %s session for %s", self.provider, self.project_path)
            return
        logger.info(
            "Restoring %s session %s for %s", pointer.provider, pointer.session_id, self.project_path,
        )
        await self._load_history(pointer.session_id)

    async def _load_history(self, session_id: str) -> bool:
        try:
            history = await self._history.load_history(
                session_id, self._tracker.project_id, self.provider,
            )
        except Exception as exc:
            logger.warning("Failed to restore session %s: %s", session_id, exc)
            return False
        count = self._ledger.replace(history)
        self._tracker.adopt(session_id)
        self._is_first_prompt = False
        self._metrics.was_resumed = True
        logger.info("Loaded %d history entries for session %s", count, session_id)
        return True

    # ── user operations ─────────────────────────────────────────────

    async def send_prompt(
        self,
        prompt: str,
        model: str | None = None,
        api_config_id: str | None = None,
    ) -> QueuedPrompt | None:
        """Submit a prompt, or queue it while the agent is busy.

        Returns the queued item when the prompt was queued, else None.
        Submission failures are reported in the ledger, not raised.
        """
        if not self.project_path:
            raise ProjectPathRequiredError("send a prompt")
        model = model or self.config.default_model
        if self._process.is_loading:
            logger.info("Session for %s is busy; queueing prompt", self.project_path)
            return self._queue.add_to_queue(prompt, model)

        self._process.begin_send()
        self._ledger.ingest(text_event("user", prompt))
        self._metrics.track_prompt_sent(model)

        session_id = self._tracker.session_id
        try:
            if session_id and not self._is_first_prompt:
                logger.info("Resuming session %s for %s", session_id, self.project_path)
                await self._backend.resume_session(
                    self.project_path, session_id, prompt, model, self.provider, api_config_id,
                )
            else:
                logger.info("Starting new %s session for %s", self.provider, self.project_path)
                self._is_first_prompt = False
                await self._backend.submit_new_session(
                    self.project_path, prompt, model, self.provider, api_config_id,
                )
        except Exception as exc:
            logger.error("Failed to send prompt for %s: %s", self.project_path, exc)
            self._ledger.ingest(
                StreamEvent(type="error", extra={"error": f"Failed to send prompt: {exc}"})
            )
            self._metrics.track_error()
            self._process.mark_idle("submission failed")
            return None

        self._process.arm_pending_timeout()
        return None

    async def _dispatch_queued(self, item: QueuedPrompt) -> None:
        if self._closed:
            return
        if self._process.is_loading:
            # Something else started in the settle window; wait for the next edge
            self._queue.requeue(item)
            return
        await self.send_prompt(item.prompt, item.model)

    async def _query_is_running(self) -> bool:
        return await self._backend.query_is_running(self.project_path, self.provider)

    async def cancel(self) -> bool:
        """Stop the running agent. No-op (False) unless a run is in progress."""
        if not self.project_path or not self._process.is_loading:
            return False
        # Clear first so a completion racing the cancel call cannot drain it
        self._queue.clear_queue()
        self._process.begin_cancel()
        try:
            await self._backend.cancel_session(self.project_path)
        except Exception as exc:
            logger.warning("Cancel request for %s failed: %s", self.project_path, exc)
        finally:
            self._process.end_cancel()
        self._process.mark_idle("cancelled by user")
        self._ledger.ingest(
            StreamEvent(
                type="system",
                subtype="info",
                extra={"result": CANCELLED_TEXT, "timestamp": _iso_now()},
            )
        )
        return True

    def clear_conversation(self) -> None:
        self._ledger.clear()
        self._tracker.reset()
        self._is_first_prompt = True
        self._metrics.reset()
        self._ledger.ingest(text_event("system", CLEARED_TEXT, subtype="info"))
        logger.info("Conversation for %s cleared", self.project_path)

    async def switch_provider(self, provider: str) -> None:
        """Move this project to *provider* and restore its latest session."""
        if provider == self.provider:
            return
        if self._process.is_loading:
            await self.cancel()
        self._ledger.flush()
        self._tracker.persist(len(self._ledger))
        logger.info("Switching %s from %s to %s", self.project_path, self.provider, provider)

        self.provider = provider
        self._process.provider = provider
        self._tracker.provider = provider
        self._queue.clear_queue()
        self._ledger.clear()
        self._tracker.reset()
        self._metrics.reset()
        self._is_first_prompt = True
        self._initial_session = None
        await self._restore()
        await self._process.sync()

    async def wait_until_idle(self, timeout: float | None = None) -> None:
        """Wait until nothing runs and nothing is queued.

        Raises asyncio.TimeoutError if *timeout* elapses first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._process.is_loading or len(self._queue) or self._queue.is_draining:
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError()
            await asyncio.sleep(self.config.poll_interval)

    # ── channel handlers ────────────────────────────────────────────

    def handle_output(self, payload: Any) -> None:
        event = self._ledger.ingest_payload(payload)
        if event is None:
            return
        if event.is_init:
            self._tracker.observe_init(event)
            self._process.mark_started()
            self._tracker.persist(len(self._ledger))
            if event.session_id and self._projects is not None and not self._closed:
                session_id = event.session_id
                self._scheduler.spawn(
                    lambda: self._record_project_session(session_id),
                    name="update-provider-session",
                )
            return
        if is_delta_event(event):
            return
        self._metrics.observe(event)
        if event.type == "assistant":
            self._tracker.persist(len(self._ledger))

    async def _record_project_session(self, session_id: str) -> None:
        try:
            await self._projects.update_provider_session(
                self.project_path, self.provider, session_id,
            )
        except Exception as exc:
            # The project may not be registered in the backend yet
            if "no rows in result set" in str(exc):
                logger.debug("Project %s not registered; session id not recorded", self.project_path)
            else:
                logger.warning("Could not record session %s for %s: %s", session_id, self.project_path, exc)

    def handle_error(self, payload: Any) -> None:
        text = error_text(payload)
        logger.warning("Agent error for %s: %s", self.project_path, text)
        self._ledger.ingest(StreamEvent(type="error", extra={"error": text}))
        self._metrics.track_error()
        self._process.mark_idle("error")

    def handle_complete(self, payload: Any) -> None:
        completion = parse_completion(payload)
        logger.info(
            "Agent run for %s finished (success=%s, status=%s)",
            self.project_path, completion.success, completion.status,
        )
        self._finish("complete")

    def handle_cancelled(self, payload: Any) -> None:
        self._finish("cancelled")

    def _finish(self, reason: str) -> None:
        self._process.mark_idle(reason)
        # cancel() owns the transition while its request is in flight
        if not self._closed and not self._process.is_cancelling:
            self._scheduler.spawn(self._process.sync, name=f"post-{reason}-sync")


def _iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
