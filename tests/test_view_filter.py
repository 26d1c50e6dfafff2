from __future__ import annotations

from agentdeck.adapters.events import dict_to_stream_event
from agentdeck.engine.view_filter import filter_displayable, is_internal_log


def _ev(raw: dict):
    return dict_to_stream_event(raw)


def _tool_use(tool_id: str, name: str):
    return _ev({"type": "assistant", "message": {"role": "assistant", "content": [
        {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
    ]}})


def _tool_result(tool_id: str):
    return _ev({"type": "user", "message": {"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": tool_id, "content": "ok"},
    ]}})


def _stderr(text: str):
    return _ev({"type": "info", "subtype": "stderr", "message": text})


def test_meta_entries_need_leaf_or_summary() -> None:
    plain_meta = _ev({"type": "system", "isMeta": True})
    leaf_meta = _ev({"type": "system", "isMeta": True, "leafUuid": "L1"})
    summary_meta = _ev({"type": "summary", "isMeta": True, "summary": "Earlier work"})

    shown = filter_displayable([plain_meta, leaf_meta, summary_meta])

    assert shown == [leaf_meta, summary_meta]


def test_internal_stderr_lines_are_hidden() -> None:
    noisy = [
        _stderr("[CodexProvider] spawning"),
        _stderr("DEBUG: token refresh"),
        _stderr("TRACE: frame 3"),
        _stderr("⚙️ loading config"),
        _stderr(""),
    ]
    useful = _stderr("npm WARN deprecated package")

    assert filter_displayable([*noisy, useful]) == [useful]
    assert all(is_internal_log(e) for e in noisy)


def test_tool_results_of_widget_tools_are_hidden() -> None:
    entries = [
        _tool_use("t1", "Read"),
        _tool_result("t1"),
        _tool_use("t2", "mcp__github__create_issue"),
        _tool_result("t2"),
        _tool_use("t3", "WebFetch"),
        _tool_result("t3"),
    ]

    shown = filter_displayable(entries)

    assert entries[1] not in shown
    assert entries[3] not in shown
    assert entries[5] in shown
    assert [e.type for e in shown].count("assistant") == 3


def test_widget_tool_match_is_case_insensitive_and_configurable() -> None:
    entries = [_tool_use("t1", "WebFetch"), _tool_result("t1")]

    assert len(filter_displayable(entries)) == 2
    assert len(filter_displayable(entries, widget_tools=["WEBFETCH"])) == 1


def test_result_before_its_invocation_stays_visible() -> None:
    entries = [_tool_result("t1"), _tool_use("t1", "Read")]

    assert filter_displayable(entries) == entries


def test_user_entries_with_text_or_user_message_flag_are_kept() -> None:
    mixed = _ev({"type": "user", "message": {"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": "t1", "content": "ok"},
        {"type": "text", "text": "also this"},
    ]}})
    flagged = _ev({"type": "user", "user_message": True, "message": {"role": "user", "content": []}})
    empty = _ev({"type": "user", "message": {"role": "user", "content": []}})
    meta_user = _ev({"type": "user", "isMeta": True, "leafUuid": "L", "message": {"role": "user", "content": "x"}})

    shown = filter_displayable([_tool_use("t1", "Read"), mixed, flagged, empty, meta_user])

    assert mixed in shown
    assert flagged in shown
    assert empty not in shown
    assert meta_user not in shown


def test_filter_is_idempotent_and_does_not_mutate_input() -> None:
    entries = [
        _ev({"type": "system", "subtype": "init", "session_id": "S1"}),
        _tool_use("t1", "Bash"),
        _tool_result("t1"),
        _stderr("DEBUG: noise"),
        _ev({"type": "assistant", "message": {"role": "assistant", "content": "done"}}),
    ]
    original = list(entries)

    first = filter_displayable(entries)
    second = filter_displayable(entries)

    assert first == second
    assert entries == original
    assert filter_displayable(first) == first


def test_reused_tool_id_follows_the_nearest_earlier_invocation() -> None:
    first_read = _tool_use("dup", "Read")
    custom = _tool_use("dup", "CustomTool")
    result = _tool_result("dup")

    shown = filter_displayable([first_read, custom, result])

    assert result in shown


def test_reused_tool_id_hidden_when_latest_invocation_has_widget() -> None:
    custom = _tool_use("dup", "CustomTool")
    later_read = _tool_use("dup", "Read")
    result = _tool_result("dup")

    shown = filter_displayable([custom, later_read, result])

    assert result not in shown
