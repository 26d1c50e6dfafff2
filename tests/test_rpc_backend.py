from __future__ import annotations

import asyncio
import json

import pytest

from agentdeck.adapters.event_bus import EventBus, channel_name
from agentdeck.adapters.rpc_backend import RpcProcessBackend, payload_cwd
from agentdeck.engine.errors import (
    BackendCallTimeoutError,
    BackendError,
    BackendNotConnectedError,
)


class FakeWebSocket:
    """Answers each request through the backend's own frame handler."""

    def __init__(self, backend: RpcProcessBackend) -> None:
        self.backend = backend
        self.closed = False
        self.sent = []
        self.results = {}
        self.errors = {}
        self.silent = False

    async def send_json(self, envelope) -> None:
        self.sent.append(envelope)
        if self.silent:
            return
        request = envelope["request"]
        method = request["method"]
        response = {"id": request["id"], "result": self.results.get(method)}
        if method in self.errors:
            response["error"] = self.errors[method]
        await self.backend.handle_message(json.dumps({"kind": "rpc_response", "response": response}))

    async def close(self) -> None:
        self.closed = True


def _connected(timeout: float = 1.0) -> tuple[RpcProcessBackend, FakeWebSocket, EventBus]:
    bus = EventBus()
    backend = RpcProcessBackend("ws://localhost:9/ws", bus, timeout_seconds=timeout)
    ws = FakeWebSocket(backend)
    backend._ws = ws
    return backend, ws, bus


def _params(ws: FakeWebSocket) -> tuple[str, list]:
    request = ws.sent[-1]["request"]
    return request["method"], request["params"]


def test_payload_cwd() -> None:
    assert payload_cwd({"cwd": "/work/app"}) == "/work/app"
    assert payload_cwd(json.dumps({"cwd": "/work/app", "type": "assistant"})) == "/work/app"
    assert payload_cwd("not json") is None
    assert payload_cwd({"cwd": ""}) is None
    assert payload_cwd(["/work/app"]) is None


@pytest.mark.asyncio
async def test_call_before_connect_raises() -> None:
    backend = RpcProcessBackend("ws://localhost:9/ws", EventBus())

    with pytest.raises(BackendNotConnectedError):
        await backend.query_is_running("/work/app", "claude")


@pytest.mark.asyncio
async def test_new_session_methods_per_provider() -> None:
    backend, ws, _bus = _connected()

    await backend.submit_new_session("/work/app", "hi", "opus", "claude")
    assert _params(ws) == ("ExecuteClaudeCode", ["/work/app", "hi", "opus", "", ""])

    await backend.submit_new_session("/work/app", "hi", "gpt-5", "codex", "cfg-1")
    assert _params(ws) == ("StartProviderSession", ["codex", "/work/app", "hi", "gpt-5", "cfg-1"])


@pytest.mark.asyncio
async def test_resume_cancel_and_liveness_methods() -> None:
    backend, ws, _bus = _connected()
    ws.results["IsClaudeSessionRunningForProject"] = True

    await backend.resume_session("/work/app", "S1", "more", "sonnet")
    assert _params(ws) == ("ResumeClaudeCode", ["/work/app", "more", "sonnet", "S1", ""])

    await backend.resume_session("/work/app", "G1", "more", "pro", provider="gemini")
    assert _params(ws) == ("ResumeProviderSession", ["gemini", "/work/app", "more", "pro", "G1", ""])

    await backend.cancel_session("/work/app")
    assert _params(ws) == ("CancelClaudeExecutionByProject", ["/work/app"])

    assert await backend.query_is_running("/work/app", "claude") is True
    assert _params(ws) == ("IsClaudeSessionRunningForProject", ["/work/app", "claude"])


@pytest.mark.asyncio
async def test_load_history_keeps_only_objects() -> None:
    backend, ws, _bus = _connected()
    ws.results["LoadProviderSessionHistory"] = [{"type": "user"}, "junk", {"type": "assistant"}]

    history = await backend.load_history("S1", "-work-app", "claude")

    assert history == [{"type": "user"}, {"type": "assistant"}]
    assert _params(ws) == ("LoadProviderSessionHistory", ["S1", "-work-app", "claude"])

    ws.results["LoadProviderSessionHistory"] = None
    assert await backend.load_history("S1", "-work-app", "claude") == []

    ws.results["LoadProviderSessionHistory"] = {"not": "a list"}
    with pytest.raises(BackendError):
        await backend.load_history("S1", "-work-app", "claude")


@pytest.mark.asyncio
async def test_error_response_raises_backend_error() -> None:
    backend, ws, _bus = _connected()
    ws.errors["ExecuteClaudeCode"] = "project not found"

    with pytest.raises(BackendError) as excinfo:
        await backend.submit_new_session("/missing", "hi", "opus", "claude")

    assert excinfo.value.method == "ExecuteClaudeCode"
    assert "project not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unanswered_call_times_out() -> None:
    backend, ws, _bus = _connected(timeout=0.02)
    ws.silent = True

    with pytest.raises(BackendCallTimeoutError):
        await backend.cancel_session("/work/app")

    assert backend._pending == {}


@pytest.mark.asyncio
async def test_events_are_published_on_the_project_channel() -> None:
    backend, _ws, bus = _connected()
    output = json.dumps({"type": "assistant", "cwd": "/work/app"})

    await backend.handle_message(json.dumps(
        {"kind": "event", "event": {"type": "claude-output", "payload": output}}
    ))
    await backend.handle_message(json.dumps(
        {"kind": "event", "event": {"type": "claude-complete", "payload": {"cwd": "/work/app"}}}
    ))
    # Ignored: unknown kind, foreign event, no cwd, broken frame
    await backend.handle_message(json.dumps(
        {"kind": "event", "event": {"type": "claude-unknown", "payload": {"cwd": "/work/app"}}}
    ))
    await backend.handle_message(json.dumps(
        {"kind": "event", "event": {"type": "window-resized", "payload": {"cwd": "/work/app"}}}
    ))
    await backend.handle_message(json.dumps(
        {"kind": "event", "event": {"type": "claude-error", "payload": "no cwd here"}}
    ))
    await backend.handle_message("{broken")
    await backend.handle_message(json.dumps(["not", "an", "object"]))

    received = []
    async for item in bus.consume():
        received.append(item)
        if len(received) == 2:
            bus.close()

    assert received == [
        (channel_name("output", "/work/app"), output),
        (channel_name("complete", "/work/app"), {"cwd": "/work/app"}),
    ]


@pytest.mark.asyncio
async def test_close_fails_pending_calls() -> None:
    backend, ws, _bus = _connected(timeout=5)
    ws.silent = True

    call = asyncio.ensure_future(backend.query_is_running("/work/app", "claude"))
    await asyncio.sleep(0)
    await backend.close()

    with pytest.raises(BackendError):
        await call


@pytest.mark.asyncio
async def test_update_provider_session_method() -> None:
    backend, ws, _bus = _connected()

    await backend.update_provider_session("/work/app", "gemini", "G1")

    assert _params(ws) == ("UpdateProviderSession", ["/work/app", "gemini", "G1"])
