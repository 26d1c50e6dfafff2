"""Per-project channel subscriptions and payload decoding."""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentdeck.adapters.event_bus import EventBus, channel_name

logger = logging.getLogger(__name__)


def error_text(payload: Any) -> str:
    """Human-readable text of an error-channel payload.

    Accepts a mapping with an ``error`` or ``message`` field, the same
    serialized as JSON, or any raw string (used verbatim).
    """
    raw = payload
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return raw or "Unknown error"
    if isinstance(data, dict):
        text = data.get("error") or data.get("message")
        return str(text) if text else "Unknown error"
    if isinstance(raw, str) and raw:
        return raw
    return "Unknown error"


@dataclass(frozen=True)
class Completion:
    success: bool = True
    status: str | None = None
    session_id: str | None = None


def parse_completion(payload: Any) -> Completion:
    """Decode a complete/cancelled payload: bool, empty, JSON or mapping."""
    data = payload
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        if not data.strip():
            return Completion()
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Completion payload is not JSON: %r", data[:200])
            return Completion()
    if data is None:
        return Completion()
    if isinstance(data, bool):
        return Completion(success=data)
    if isinstance(data, dict):
        return Completion(
            success=bool(data.get("success", True)),
            status=data.get("status"),
            session_id=data.get("session_id"),
        )
    return Completion()


class ProjectChannels:
    """Subscribes one project's handlers to its four channels."""

    def __init__(self, bus: EventBus, project_path: str) -> None:
        self._bus = bus
        self.project_path = project_path
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribers)

    def attach(
        self,
        *,
        on_output: Callable[[Any], None],
        on_error: Callable[[Any], None],
        on_complete: Callable[[Any], None],
        on_cancelled: Callable[[Any], None],
    ) -> None:
        if self.attached:
            self.detach()
        if not self.project_path:
            logger.debug("No project path; not subscribing to any channel")
            return
        handlers = {
            "output": on_output,
            "error": on_error,
            "complete": on_complete,
            "cancelled": on_cancelled,
        }
        for kind, handler in handlers.items():
            self._unsubscribers.append(
                self._bus.subscribe(channel_name(kind, self.project_path), handler)
            )
        logger.debug("Subscribed to channels of %s", self.project_path)

    def detach(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
