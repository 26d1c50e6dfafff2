"""Displayable view filter.

Pure functions: the same ledger and allow-list always give the same
output, and nothing here mutates its input.

Filters out:
- meta entries without a leaf marker or summary
- internal debug/trace stderr lines
- user entries whose only content is tool results already shown by a
  dedicated tool widget
"""
from __future__ import annotations

from collections.abc import Iterable

from agentdeck.adapters.events import StreamEvent, TextBlock, ToolResultBlock
from agentdeck.engine.config import DEFAULT_WIDGET_TOOLS

_INTERNAL_LOG_MARKERS = ("[CodexProvider", "DEBUG:", "TRACE:")


def _log_text(entry: StreamEvent) -> str:
    raw = entry.extra.get("message")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("message"), str):
        return raw["message"]
    return entry.text


def is_internal_log(entry: StreamEvent) -> bool:
    text = _log_text(entry)
    return (
        not text
        or text.startswith("⚙️")
        or any(marker in text for marker in _INTERNAL_LOG_MARKERS)
    )


def _has_widget(tool_name: str, widget_tools: frozenset[str]) -> bool:
    return tool_name.lower() in widget_tools or tool_name.startswith("mcp__")


def _has_visible_content(
    entry: StreamEvent,
    seen: dict[str, str],
    widget_tools: frozenset[str],
) -> bool:
    if entry.extra.get("user_message"):
        return True
    if entry.message is None or entry.message.content is None:
        # No content to judge; keep it rather than lose a user turn
        return True
    content = entry.message.content
    if not content:
        return False
    for block in content:
        if isinstance(block, ToolResultBlock):
            name = seen.get(block.tool_use_id) if block.tool_use_id else None
            if name is None or not _has_widget(name, widget_tools):
                return True
            continue
        if isinstance(block, TextBlock) or block.type:
            return True
    return False


def filter_displayable(
    entries: Iterable[StreamEvent],
    widget_tools: Iterable[str] = DEFAULT_WIDGET_TOOLS,
) -> list[StreamEvent]:
    """Return the entries that should be rendered, in ledger order."""
    tools = frozenset(t.lower() for t in widget_tools)
    # tool_use id → name of the nearest earlier invocation
    seen: dict[str, str] = {}

    visible: list[StreamEvent] = []
    for entry in list(entries):
        if entry.type == "assistant":
            for use in entry.tool_uses():
                if use.id:
                    seen[use.id] = use.name
        if entry.is_meta and not entry.extra.get("leafUuid") and not entry.extra.get("summary"):
            continue
        if entry.type == "info" and entry.subtype == "stderr" and is_internal_log(entry):
            continue
        if entry.type == "user" and entry.message is not None:
            if entry.is_meta:
                continue
            if not _has_visible_content(entry, seen, tools):
                continue
        visible.append(entry)
    return visible
