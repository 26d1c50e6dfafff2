from __future__ import annotations

from rich.console import Console

from agentdeck.adapters.events import StreamEvent, dict_to_stream_event, text_event
from agentdeck.engine.tool_index import build_tool_correlation
from agentdeck.shared.formatters.transcript import (
    render_entry,
    render_transcript,
    summarize_tool,
)


def _render(renderable) -> str:
    console = Console(record=True, width=120, color_system=None)
    console.print(renderable)
    return console.export_text()


def test_summaries_for_known_and_unknown_tools() -> None:
    assert summarize_tool("Bash", {"command": "ls   -la\n/tmp"}) == "$ ls -la /tmp"
    assert summarize_tool("read", {"file_path": "src/app.py"}) == "src/app.py"
    assert summarize_tool("MultiEdit", {"file_path": "a.py", "edits": [{}, {}]}) == "a.py (2 edits)"
    assert summarize_tool("TodoWrite", {"todos": [{"status": "completed"}, {"status": "pending"}]}) == "1/2 done"
    assert summarize_tool("CustomTool", {"x": 1}) == '{"x": 1}'
    assert summarize_tool("CustomTool", {}) == ""


def test_long_summaries_are_truncated() -> None:
    summary = summarize_tool("Bash", {"command": "echo " + "x" * 200})
    assert len(summary) == 82
    assert summary.endswith("…")


def test_tool_status_follows_correlated_result() -> None:
    entries = [
        dict_to_stream_event({"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "ok", "name": "Read", "input": {"file_path": "a.py"}},
            {"type": "tool_use", "id": "bad", "name": "Bash", "input": {"command": "make"}},
            {"type": "tool_use", "id": "open", "name": "Grep", "input": {"pattern": "TODO"}},
        ]}}),
        dict_to_stream_event({"type": "user", "message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "ok", "content": "print(1)"},
            {"type": "tool_result", "tool_use_id": "bad", "content": "make: *** error", "is_error": True},
        ]}}),
    ]
    correlation = build_tool_correlation(entries, "AgentOutputTool")

    text = _render(render_entry(entries[0], correlation))

    assert "✓ Read  a.py" in text
    assert "✗ Bash  $ make" in text
    assert "… Grep  /TODO/" in text


def test_transcript_renders_each_kind() -> None:
    entries = [
        StreamEvent(type="system", subtype="init", session_id="S1", extra={"model": "opus"}),
        text_event("user", "fix the bug"),
        text_event("assistant", "Done. The bug is **fixed**."),
        StreamEvent(type="error", extra={"error": "rate limited"}),
        StreamEvent(type="system", subtype="info", extra={"result": "Session cancelled by user"}),
    ]

    text = _render(render_transcript(entries))

    assert "Session S1 (opus)" in text
    assert "you" in text and "fix the bug" in text
    assert "Done. The bug is fixed." in text
    assert "Error: rate limited" in text
    assert "Session cancelled by user" in text


def test_entries_without_content_render_nothing() -> None:
    assert render_entry(StreamEvent(type="assistant")) is None
    assert render_entry(StreamEvent(type="result")) is None
