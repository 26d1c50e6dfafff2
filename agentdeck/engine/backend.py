"""Collaborator interfaces the core calls out to.

The process-management backend spawns, resumes, cancels and reports on
agent processes; the history loader reads a stored transcript; the
project registry records which session a project is on. All are
injected into the orchestrator, never looked up globally.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ProcessBackend(Protocol):
    async def submit_new_session(
        self,
        project_path: str,
        prompt: str,
        model: str,
        provider: str,
        api_config_id: str | None = None,
    ) -> None: ...

    async def resume_session(
        self,
        project_path: str,
        session_id: str,
        prompt: str,
        model: str,
        provider: str = "claude",
        api_config_id: str | None = None,
    ) -> None: ...

    async def cancel_session(self, project_path: str) -> None: ...

    async def query_is_running(self, project_path: str, provider: str) -> bool: ...


@runtime_checkable
class HistoryLoader(Protocol):
    async def load_history(
        self, session_id: str, project_id: str, provider: str
    ) -> list[dict[str, Any]]: ...


@runtime_checkable
class ProjectRegistry(Protocol):
    """Backend project list; keeps each project's current session id per provider."""

    async def update_provider_session(
        self, project_path: str, provider: str, session_id: str
    ) -> None: ...
