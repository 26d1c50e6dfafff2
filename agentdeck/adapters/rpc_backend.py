"""WebSocket RPC client for the process-management backend.

Every frame is a JSON envelope:

    {"kind": "rpc_request",  "request":  {"id", "method", "params": [...]}}
    {"kind": "rpc_response", "response": {"id", "result", "error"}}
    {"kind": "event",        "event":    {"type", "payload"}}

Requests are matched to responses by id. Backend events named
``claude-output``/``claude-error``/``claude-complete``/``claude-cancelled``
are re-published on the EventBus as ``<kind>:<cwd>``, routed by the
``cwd`` carried inside their payload.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

import aiohttp

from agentdeck.adapters.event_bus import CHANNEL_KINDS, EventBus, channel_name
from agentdeck.engine.errors import (
    BackendCallTimeoutError,
    BackendError,
    BackendNotConnectedError,
)

logger = logging.getLogger(__name__)

_EVENT_PREFIX = "claude-"


def payload_cwd(payload: Any) -> str | None:
    """Project path a backend event belongs to, if it names one."""
    data = payload
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return None
    if isinstance(data, dict):
        cwd = data.get("cwd")
        return cwd if isinstance(cwd, str) and cwd else None
    return None


class RpcProcessBackend:
    """ProcessBackend, HistoryLoader and ProjectRegistry over one WebSocket connection."""

    def __init__(
        self,
        url: str,
        bus: EventBus,
        *,
        auth_key: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._url = url
        self._bus = bus
        self._auth_key = auth_key
        self._timeout = timeout_seconds
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self.connected:
            return
        if self._http is None:
            self._http = aiohttp.ClientSession()
        params = {"authKey": self._auth_key} if self._auth_key else None
        try:
            self._ws = await self._http.ws_connect(self._url, params=params, heartbeat=30.0)
        except aiohttp.ClientError as exc:
            raise BackendError("connect", f"{self._url}: {exc}") from exc
        logger.info("Connected to backend %s", self._url)
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(), name="rpc-backend-reader"
        )

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._http is not None:
            await self._http.close()
            self._http = None
        self._fail_pending("close")

    async def __aenter__(self) -> RpcProcessBackend:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── transport ───────────────────────────────────────────────────

    async def call(self, method: str, *params: Any) -> Any:
        """Send one RPC request and wait for its response."""
        if not self.connected:
            raise BackendNotConnectedError(method)
        request_id = str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        envelope = {
            "kind": "rpc_request",
            "request": {"id": request_id, "method": method, "params": list(params)},
        }
        try:
            await self._ws.send_json(envelope)
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise BackendCallTimeoutError(method, self._timeout) from None
        except ConnectionError as exc:
            raise BackendError(method, str(exc)) from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Backend websocket error: %s", ws.exception())
                    break
        finally:
            logger.info("Backend connection to %s closed", self._url)
            self._fail_pending("connection closed")

    def _fail_pending(self, reason: str) -> None:
        for request_id, (method, future) in list(self._pending.items()):
            if not future.done():
                future.set_exception(BackendError(method, reason))
            self._pending.pop(request_id, None)

    async def handle_message(self, raw: str | bytes) -> None:
        """Dispatch one incoming frame."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Unparseable backend frame: %s", exc)
            return
        if not isinstance(msg, dict):
            logger.warning("Backend frame is not an object; ignoring")
            return
        kind = msg.get("kind")
        if kind == "rpc_response" and isinstance(msg.get("response"), dict):
            self._resolve(msg["response"])
        elif kind == "event" and isinstance(msg.get("event"), dict):
            event = msg["event"]
            await self._route_event(str(event.get("type", "")), event.get("payload"))
        else:
            logger.debug("Ignoring backend frame of kind %r", kind)

    def _resolve(self, response: dict) -> None:
        entry = self._pending.get(str(response.get("id")))
        if entry is None or entry[1].done():
            logger.debug("Response for unknown or expired request %s", response.get("id"))
            return
        method, future = entry
        error = response.get("error")
        if error:
            future.set_exception(BackendError(method, str(error)))
        else:
            future.set_result(response.get("result"))

    async def _route_event(self, event_type: str, payload: Any) -> None:
        if not event_type.startswith(_EVENT_PREFIX):
            return
        kind = event_type[len(_EVENT_PREFIX):]
        if kind not in CHANNEL_KINDS:
            return
        cwd = payload_cwd(payload)
        if cwd is None:
            logger.debug("Dropping %s event without cwd", event_type)
            return
        await self._bus.publish(channel_name(kind, cwd), payload)

    # ── ProcessBackend ──────────────────────────────────────────────

    async def submit_new_session(
        self,
        project_path: str,
        prompt: str,
        model: str,
        provider: str,
        api_config_id: str | None = None,
    ) -> None:
        if provider == "claude":
            await self.call("ExecuteClaudeCode", project_path, prompt, model, "", api_config_id or "")
        else:
            await self.call(
                "StartProviderSession", provider, project_path, prompt, model, api_config_id or "",
            )

    async def resume_session(
        self,
        project_path: str,
        session_id: str,
        prompt: str,
        model: str,
        provider: str = "claude",
        api_config_id: str | None = None,
    ) -> None:
        if provider == "claude":
            await self.call(
                "ResumeClaudeCode", project_path, prompt, model, session_id, api_config_id or "",
            )
        else:
            await self.call(
                "ResumeProviderSession",
                provider, project_path, prompt, model, session_id, api_config_id or "",
            )

    async def cancel_session(self, project_path: str) -> None:
        await self.call("CancelClaudeExecutionByProject", project_path)

    async def query_is_running(self, project_path: str, provider: str) -> bool:
        return bool(await self.call("IsClaudeSessionRunningForProject", project_path, provider))

    # ── ProjectRegistry ─────────────────────────────────────────────

    async def update_provider_session(self, project_path: str, provider: str, session_id: str) -> None:
        await self.call("UpdateProviderSession", project_path, provider, session_id)

    # ── HistoryLoader ───────────────────────────────────────────────

    async def load_history(self, session_id: str, project_id: str, provider: str) -> list[dict[str, Any]]:
        result = await self.call("LoadProviderSessionHistory", session_id, project_id, provider)
        if result is None:
            return []
        if not isinstance(result, list):
            raise BackendError("LoadProviderSessionHistory", "history is not a list")
        return [m for m in result if isinstance(m, dict)]
