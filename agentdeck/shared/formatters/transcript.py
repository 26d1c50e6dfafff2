"""Rich rendering of a displayable transcript for the console.

Each entry becomes one Rich renderable. Tool invocations are summarized
through a small per-tool registry and shown with the status of their
correlated result:

    @tool_summary("Bash")
    def _bash(tool_input):
        return "$ " + tool_input.get("command", "")
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import Any

from rich.console import Group, RenderableType
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from agentdeck.adapters.events import (
    StreamEvent,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from agentdeck.engine.tool_index import ToolCorrelation

_SUMMARIES: dict[str, Callable[[dict], str]] = {}


def tool_summary(name: str):
    """Register a one-line summary for a tool, keyed by lowercase name."""

    def decorator(fn: Callable[[dict], str]):
        _SUMMARIES[name.lower()] = fn
        return fn

    return decorator


def _trunc(text: str, length: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[: length - 1] + "…"


@tool_summary("Bash")
def _bash(tool_input: dict) -> str:
    return "$ " + _trunc(str(tool_input.get("command", "")))


@tool_summary("Read")
def _read(tool_input: dict) -> str:
    return str(tool_input.get("file_path", ""))


@tool_summary("Write")
def _write(tool_input: dict) -> str:
    return str(tool_input.get("file_path", ""))


@tool_summary("Edit")
def _edit(tool_input: dict) -> str:
    return str(tool_input.get("file_path", ""))


@tool_summary("MultiEdit")
def _multi_edit(tool_input: dict) -> str:
    edits = tool_input.get("edits") or []
    return f"{tool_input.get('file_path', '')} ({len(edits)} edits)"


@tool_summary("Grep")
def _grep(tool_input: dict) -> str:
    return f"/{tool_input.get('pattern', '')}/ {tool_input.get('path', '')}".rstrip()


@tool_summary("Glob")
def _glob(tool_input: dict) -> str:
    return str(tool_input.get("pattern", ""))


@tool_summary("Task")
def _task(tool_input: dict) -> str:
    return _trunc(str(tool_input.get("description") or tool_input.get("prompt") or ""))


@tool_summary("TodoWrite")
def _todo_write(tool_input: dict) -> str:
    todos = tool_input.get("todos") or []
    done = sum(1 for t in todos if isinstance(t, dict) and t.get("status") == "completed")
    return f"{done}/{len(todos)} done"


def summarize_tool(name: str, tool_input: dict) -> str:
    fn = _SUMMARIES.get(name.lower())
    if fn is not None:
        try:
            return fn(tool_input)
        except (AttributeError, TypeError, ValueError):
            pass
    if not tool_input:
        return ""
    return _trunc(json.dumps(tool_input, default=str))


def _result_status(result: ToolResultBlock | None) -> tuple[str, str]:
    if result is None:
        return "…", "yellow"
    if result.is_error:
        return "✗", "red"
    return "✓", "green"


def _tool_line(block: ToolUseBlock, correlation: ToolCorrelation | None) -> Text:
    result = correlation.result_for(block.id) if correlation is not None else None
    mark, style = _result_status(result)
    line = Text()
    line.append(f"{mark} ", style=style)
    line.append(block.name, style="bold cyan")
    summary = summarize_tool(block.name, block.input)
    if summary:
        line.append(f"  {summary}", style="dim")
    return line


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            item.get("text", "") for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return "" if content is None else json.dumps(content, default=str)


def render_entry(entry: StreamEvent, correlation: ToolCorrelation | None = None) -> RenderableType | None:
    """Render one displayable entry, or None if it has nothing to show."""
    if entry.type == "error":
        message = entry.extra.get("error") or entry.extra.get("message") or entry.text
        return Text(f"Error: {message}", style="bold red")

    if entry.type == "system":
        if entry.is_init:
            model = entry.extra.get("model")
            label = f"Session {entry.session_id}" + (f" ({model})" if model else "")
            return Text(label, style="dim")
        text = entry.text or str(entry.extra.get("result") or "")
        return Text(text, style="italic yellow") if text else None

    if entry.type == "result":
        text = str(entry.extra.get("result") or "")
        return Text(_trunc(text, 200), style="dim") if text else None

    if entry.type == "info":
        raw = entry.extra.get("message")
        text = raw if isinstance(raw, str) else entry.text
        return Text(text, style="dim") if text else None

    parts: list[RenderableType] = []
    for block in entry.content:
        if isinstance(block, TextBlock) and block.text:
            parts.append(Markdown(block.text) if entry.type == "assistant" else Text(block.text))
        elif isinstance(block, ThinkingBlock) and block.thinking:
            parts.append(Text(_trunc(block.thinking, 160), style="dim italic"))
        elif isinstance(block, ToolUseBlock):
            parts.append(_tool_line(block, correlation))
        elif isinstance(block, ToolResultBlock):
            text = _result_text(block.content)
            if text:
                parts.append(Text(_trunc(text, 200), style="red" if block.is_error else "dim"))
    if not parts:
        return None
    if entry.type == "user":
        return Panel(Group(*parts), title="you", title_align="left", border_style="blue")
    return Group(*parts)


def render_transcript(
    entries: Iterable[StreamEvent], correlation: ToolCorrelation | None = None,
) -> Group:
    renderables = [r for r in (render_entry(e, correlation) for e in entries) if r is not None]
    return Group(*renderables)
