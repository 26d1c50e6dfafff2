"""Stream event types emitted by external agent processes.

Each ``output`` payload on the bus is one serialized StreamEvent. This
module parses those payloads into typed dataclasses for safe
consumption by the ledger, and serializes them back for export.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from agentdeck.engine.errors import MalformedEventError

KNOWN_EVENT_TYPES = frozenset({"system", "assistant", "user", "result", "error", "info"})


@dataclass
class TextBlock:
    text: str = ""
    type: str = "text"


@dataclass
class ThinkingBlock:
    thinking: str = ""
    type: str = "thinking"


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"


@dataclass
class ToolResultBlock:
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False
    type: str = "tool_result"


@dataclass
class RawBlock:
    """A content block of a type the core does not interpret (images, …)."""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.data.get("type") or "")


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, RawBlock]


@dataclass
class MessageBody:
    role: str | None = None
    content: list[ContentBlock] | None = None
    usage: dict[str, Any] | None = None
    # id, model, stop_reason and anything else the provider sends
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamEvent:
    """One discrete message unit emitted by an agent process."""
    type: str = ""
    subtype: str | None = None
    session_id: str | None = None
    message: MessageBody | None = None
    is_delta: bool = False
    usage: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    # ── convenience accessors ───────────────────────────────────────

    @property
    def content(self) -> list[ContentBlock]:
        if self.message is None or not self.message.content:
            return []
        return self.message.content

    @property
    def has_usage(self) -> bool:
        return self.usage is not None or (
            self.message is not None and self.message.usage is not None
        )

    @property
    def is_meta(self) -> bool:
        return bool(self.extra.get("isMeta"))

    @property
    def is_init(self) -> bool:
        return self.type == "system" and self.subtype == "init"

    @property
    def text(self) -> str:
        """Concatenated text of every text block."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


# ── parsing ─────────────────────────────────────────────────────────


def _block_from_dict(data: Any) -> ContentBlock:
    if isinstance(data, str):
        return TextBlock(text=data)
    if not isinstance(data, dict):
        raise MalformedEventError(
            f"content block must be an object, got {type(data).__name__}", data
        )
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(data.get("thinking") or ""))
    if block_type == "tool_use":
        tool_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id") or ""),
            content=data.get("content"),
            is_error=bool(data.get("is_error", False)),
        )
    return RawBlock(data=dict(data))


def _content_from_wire(raw: Any) -> list[ContentBlock] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return [TextBlock(text=raw)]
    if not isinstance(raw, list):
        raise MalformedEventError(
            f"message.content must be a list or string, got {type(raw).__name__}", raw
        )
    return [_block_from_dict(item) for item in raw]


def _usage_from_wire(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedEventError("usage must be an object", raw)
    return dict(raw)


def normalize_event_type(data: dict[str, Any]) -> str:
    """Infer a missing type tag from the other fields of a wire event.

    History files and some providers omit ``type``; guessing
    ``assistant`` for everything would mislabel user turns.
    """
    event_type = data.get("type")
    if isinstance(event_type, str) and event_type:
        return event_type
    message = data.get("message")
    message_role = message.get("role") if isinstance(message, dict) else None
    if data.get("role") == "user" or message_role == "user" or data.get("user_message"):
        return "user"
    if data.get("subtype") == "init" or data.get("session_id"):
        return "system"
    return "assistant"


_TOP_LEVEL_FIELDS = {"type", "subtype", "session_id", "message", "is_delta", "usage"}


def dict_to_stream_event(data: Any) -> StreamEvent:
    """Convert a decoded wire payload to a StreamEvent.

    Raises MalformedEventError when the payload is not an object or a
    known field has the wrong shape.
    """
    if not isinstance(data, dict):
        raise MalformedEventError(
            f"event must be an object, got {type(data).__name__}", data
        )

    extra = {k: v for k, v in data.items() if k not in _TOP_LEVEL_FIELDS}
    message: MessageBody | None = None
    raw_message = data.get("message")
    if isinstance(raw_message, dict):
        message = MessageBody(
            role=raw_message.get("role"),
            content=_content_from_wire(raw_message.get("content")),
            usage=_usage_from_wire(raw_message.get("usage")),
            extra={
                k: v for k, v in raw_message.items()
                if k not in ("role", "content", "usage")
            },
        )
    elif raw_message is not None:
        # stderr/info lines carry a plain string here
        extra["message"] = raw_message

    subtype = data.get("subtype")
    session_id = data.get("session_id")
    return StreamEvent(
        type=normalize_event_type(data),
        subtype=str(subtype) if subtype is not None else None,
        session_id=str(session_id) if session_id else None,
        message=message,
        is_delta=bool(data.get("is_delta", False)),
        usage=_usage_from_wire(data.get("usage")),
        extra=extra,
    )


def parse_stream_event(payload: str | bytes | dict[str, Any]) -> StreamEvent:
    """Decode a serialized StreamEvent (JSON text or an already-decoded dict)."""
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedEventError(f"invalid JSON: {exc}", payload) from exc
    else:
        data = payload
    return dict_to_stream_event(data)


# ── serialization ───────────────────────────────────────────────────


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, RawBlock):
        return dict(block.data)
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


def stream_event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a StreamEvent back to a plain dict for JSON serialization."""
    d: dict[str, Any] = dict(event.extra)
    d["type"] = event.type
    if event.subtype is not None:
        d["subtype"] = event.subtype
    if event.session_id is not None:
        d["session_id"] = event.session_id
    if event.is_delta:
        d["is_delta"] = True
    if event.usage is not None:
        d["usage"] = event.usage
    if event.message is not None:
        m: dict[str, Any] = dict(event.message.extra)
        if event.message.role is not None:
            m["role"] = event.message.role
        if event.message.content is not None:
            m["content"] = [block_to_dict(b) for b in event.message.content]
        if event.message.usage is not None:
            m["usage"] = event.message.usage
        d["message"] = m
    return d


def text_event(event_type: str, text: str, **extra: Any) -> StreamEvent:
    """Build a locally synthesized event holding a single text block."""
    subtype = extra.pop("subtype", None)
    return StreamEvent(
        type=event_type,
        subtype=subtype,
        message=MessageBody(
            role=event_type if event_type in ("user", "assistant") else None,
            content=[TextBlock(text=text)],
        ),
        extra=extra,
    )
