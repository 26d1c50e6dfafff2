"""agentdeck engine: session stream orchestration for AI coding-agent processes."""
from .config import StreamConfig
from .errors import (
    AgentDeckError,
    BackendCallTimeoutError,
    BackendError,
    BackendNotConnectedError,
    ConfigError,
    MalformedEventError,
    PersistenceError,
    ProjectPathRequiredError,
)
