"""Message ledger: the ordered in-memory transcript of one session.

Streamed assistant text arrives as many tiny ``is_delta`` events. The
ledger buffers their text and merges it into the trailing assistant
entry at most one flush window later, instead of appending an entry
(and triggering a recompute downstream) per fragment.

Rules:
- Only the trailing assistant entry without usage is a merge target.
  Anything else gets a fresh assistant entry.
- A complete event arriving while text is buffered flushes the buffer
  first, so text never lands after the event that followed it.
- Entries are never mutated in place; a merge replaces the trailing
  entry with a modified copy, so snapshots handed out earlier stay
  valid.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

from agentdeck.adapters.events import (
    MessageBody,
    StreamEvent,
    TextBlock,
    dict_to_stream_event,
    parse_stream_event,
)
from agentdeck.engine.errors import MalformedEventError
from agentdeck.engine.scheduler import ScheduledTask, TaskScheduler

logger = logging.getLogger(__name__)

LedgerListener = Callable[[tuple[StreamEvent, ...]], None]


def is_delta_event(event: StreamEvent) -> bool:
    return event.type == "assistant" and event.is_delta and bool(event.content)


def is_open_assistant(entry: StreamEvent | None) -> bool:
    """True for an assistant entry that can still receive streamed text."""
    return entry is not None and entry.type == "assistant" and not entry.has_usage


def _usage_tokens(usage: dict[str, Any] | None) -> int:
    if not usage:
        return 0
    total = 0
    for key in ("input_tokens", "output_tokens"):
        try:
            total += int(usage.get(key) or 0)
        except (TypeError, ValueError):
            continue
    return total


def _append_text(entry: StreamEvent, text: str) -> StreamEvent:
    """Return a copy of *entry* with *text* appended to its last text block."""
    message = entry.message or MessageBody(role="assistant")
    content = list(message.content or [])
    if content and isinstance(content[-1], TextBlock):
        content[-1] = TextBlock(text=content[-1].text + text)
    else:
        content.append(TextBlock(text=text))
    return replace(entry, message=replace(message, content=content))


def _finalize(entry: StreamEvent, final: StreamEvent) -> StreamEvent:
    """Attach the usage and message metadata of *final* to *entry*."""
    message = entry.message or MessageBody(role="assistant")
    final_message = final.message
    if final_message is not None:
        message = replace(
            message,
            usage=final_message.usage if final_message.usage is not None else message.usage,
            extra={**message.extra, **final_message.extra},
        )
    return replace(
        entry,
        message=message,
        usage=final.usage if final.usage is not None else entry.usage,
        session_id=entry.session_id or final.session_id,
        extra={**entry.extra, **final.extra},
    )


class MessageLedger:
    """Append-only transcript with delta batching.

    All writes go through ``_commit``; listeners registered with
    ``add_listener`` receive the new snapshot after every change.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        flush_interval: float = 0.05,
    ) -> None:
        self._scheduler = scheduler
        self._flush_interval = flush_interval
        self._entries: list[StreamEvent] = []
        self._revision = 0
        self._listeners: list[LedgerListener] = []

        # Delta batching state
        self._delta_buffer: list[str] = []
        self._flush_task: ScheduledTask | None = None

    # ── read access ──────────────────────────────────────────────────

    @property
    def entries(self) -> tuple[StreamEvent, ...]:
        return tuple(self._entries)

    @property
    def revision(self) -> int:
        """Incremented on every committed change."""
        return self._revision

    @property
    def has_pending_delta(self) -> bool:
        return bool(self._delta_buffer)

    @property
    def total_tokens(self) -> int:
        total = 0
        for entry in self._entries:
            if entry.message is not None and entry.message.usage:
                total += _usage_tokens(entry.message.usage)
            elif entry.usage:
                total += _usage_tokens(entry.usage)
        return total

    def __len__(self) -> int:
        return len(self._entries)

    def add_listener(self, listener: LedgerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ── ingestion ────────────────────────────────────────────────────

    def ingest_payload(self, payload: str | bytes | dict[str, Any]) -> StreamEvent | None:
        """Parse and ingest one serialized event; malformed ones are dropped."""
        try:
            event = parse_stream_event(payload)
        except MalformedEventError as exc:
            preview = payload if isinstance(payload, dict) else str(payload)[:200]
            logger.warning("Dropping malformed stream event: %s (%s)", exc.reason, preview)
            return None
        self.ingest(event)
        return event

    def ingest(self, event: StreamEvent) -> None:
        if is_delta_event(event):
            self._buffer_delta(event.text)
            return

        # Complete message: flush buffered text first so ordering holds
        self.flush()
        entries = self._entries
        last = entries[-1] if entries else None
        if (
            event.type == "assistant"
            and event.has_usage
            and not event.content
            and is_open_assistant(last)
        ):
            self._commit([*entries[:-1], _finalize(last, event)])
            return
        self._commit([*entries, event])

    def _buffer_delta(self, text: str) -> None:
        if not text:
            return
        self._delta_buffer.append(text)
        # The timer is armed by the first fragment only, which bounds
        # how long any fragment can sit in the buffer.
        if self._flush_task is None or self._flush_task.done:
            self._flush_task = self._scheduler.call_later(
                self._flush_interval, self.flush, name="ledger-delta-flush",
            )

    def flush(self) -> bool:
        """Merge buffered delta text into the ledger. Returns False if empty."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        if not self._delta_buffer:
            return False
        text = "".join(self._delta_buffer)
        self._delta_buffer.clear()

        entries = self._entries
        last = entries[-1] if entries else None
        if is_open_assistant(last):
            self._commit([*entries[:-1], _append_text(last, text)])
        else:
            self._commit([
                *entries,
                StreamEvent(
                    type="assistant",
                    message=MessageBody(role="assistant", content=[TextBlock(text=text)]),
                ),
            ])
        return True

    # ── bulk writes ──────────────────────────────────────────────────

    def replace(self, events: Iterable[StreamEvent | dict[str, Any]]) -> int:
        """Replace the transcript (history load). Malformed items are skipped."""
        self._discard_buffer()
        loaded: list[StreamEvent] = []
        for item in events:
            if isinstance(item, StreamEvent):
                loaded.append(item)
                continue
            try:
                loaded.append(dict_to_stream_event(item))
            except MalformedEventError as exc:
                logger.warning("Skipping malformed history entry: %s", exc.reason)
        self._commit(loaded)
        return len(loaded)

    def clear(self) -> None:
        self._discard_buffer()
        self._commit([])

    def _discard_buffer(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        self._delta_buffer.clear()

    # ── the single setter ────────────────────────────────────────────

    def _commit(self, entries: list[StreamEvent]) -> None:
        self._entries = entries
        self._revision += 1
        snapshot = tuple(entries)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Ledger listener failed")
