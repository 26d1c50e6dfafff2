"""Exception hierarchy for the session stream core.

Specific exceptions for each failure mode. Callers in the core catch
these at the seams where a failure must degrade instead of propagate.
"""
from __future__ import annotations


class AgentDeckError(Exception):
    """Base exception for all agentdeck errors."""


class MalformedEventError(AgentDeckError):
    """A stream payload could not be parsed into a StreamEvent."""
    def __init__(self, reason: str, payload: object = None):
        self.reason = reason
        self.payload = payload
        super().__init__(f"Malformed stream event: {reason}")


class BackendError(AgentDeckError):
    """A call to the process-management backend failed."""
    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"Backend call {method} failed: {reason}")


class BackendNotConnectedError(BackendError):
    """The backend connection is not open."""
    def __init__(self, method: str):
        super().__init__(method, "not connected")


class BackendCallTimeoutError(BackendError):
    """A backend call did not answer in time."""
    def __init__(self, method: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(method, f"timed out after {timeout_seconds}s")


class ProjectPathRequiredError(AgentDeckError):
    """An operation needs a project path and none is set."""
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: select a project directory first"
        )


class PersistenceError(AgentDeckError):
    """A session pointer could not be read or written."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session pointer {session_id}: {reason}")


class ConfigError(AgentDeckError):
    """Configuration file or value is invalid."""
