"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDECK_* env vars,
or layer an ``agentdeck.yaml`` on top with ``load_yaml_config``.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Tools whose results are rendered by a dedicated widget; a user entry
# holding only results of these tools is hidden from the transcript.
DEFAULT_WIDGET_TOOLS: frozenset[str] = frozenset({
    "task",
    "edit",
    "multiedit",
    "todowrite",
    "ls",
    "read",
    "glob",
    "bash",
    "write",
    "grep",
})

DEFAULT_AGENT_OUTPUT_TOOL = "AgentOutputTool"

SUPPORTED_PROVIDERS: tuple[str, ...] = ("claude", "codex", "gemini")


@dataclass
class StreamConfig:
    """Session stream core configuration."""

    # Provider/model used when the caller does not name one
    default_provider: str = "claude"
    default_model: str = "sonnet"

    # Timing (seconds)
    # Upper bound on how long a streamed text fragment waits before
    # it is merged into the transcript.
    delta_flush_interval: float = 0.05
    # Pending-send guard lifetime after the submit call returns.
    pending_send_timeout: float = 0.5
    # Liveness poll while a process is believed running.
    poll_interval: float = 0.2
    # Delay before re-checking liveness after a new session id shows up.
    session_sync_debounce: float = 0.05
    # Delay between dequeuing a prompt and dispatching it.
    queue_settle_delay: float = 0.1

    # Tool correlation / view
    agent_output_tool: str = DEFAULT_AGENT_OUTPUT_TOOL
    widget_tools: frozenset[str] = field(default_factory=lambda: DEFAULT_WIDGET_TOOLS)

    # Backend connection
    backend_url: str = "ws://127.0.0.1:7070/ws"
    backend_auth_key: str | None = field(default=None, repr=False)
    rpc_timeout_seconds: float = 30.0
    event_queue_size: int = 5000

    # Persistence
    sessions_dir: str | None = None

    # Logging
    log_level: str = "INFO"

    @property
    def sessions_path(self) -> Path | None:
        return Path(self.sessions_dir).expanduser() if self.sessions_dir else None

    def validate(self) -> None:
        """Clamp values into usable ranges."""
        for name in (
            "delta_flush_interval",
            "pending_send_timeout",
            "poll_interval",
            "session_sync_debounce",
            "queue_settle_delay",
        ):
            if getattr(self, name) < 0:
                logger.warning("StreamConfig.%s is negative; using 0", name)
                setattr(self, name, 0.0)
        if self.poll_interval == 0:
            # A zero poll interval would spin the event loop.
            self.poll_interval = StreamConfig.poll_interval
        if self.default_provider not in SUPPORTED_PROVIDERS:
            logger.warning(
                "Unknown default provider %r (known: %s)",
                self.default_provider, ", ".join(SUPPORTED_PROVIDERS),
            )
        self.widget_tools = frozenset(t.lower() for t in self.widget_tools)

    @classmethod
    def from_env(cls) -> StreamConfig:
        """Load configuration from AGENTDECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTDECK_")
        }
        if deck_vars:
            logger.info(
                "StreamConfig.from_env: AGENTDECK_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if 'KEY' in k else v}"
                    for k, v in sorted(deck_vars.items())
                ),
            )
        else:
            logger.debug("StreamConfig.from_env: no AGENTDECK_* env vars set, using defaults")

        config = cls(
            default_provider=os.getenv(
                "AGENTDECK_PROVIDER", cls.default_provider
            ),
            default_model=os.getenv("AGENTDECK_MODEL", cls.default_model),
            delta_flush_interval=float(os.getenv(
                "AGENTDECK_DELTA_FLUSH", str(cls.delta_flush_interval)
            )),
            pending_send_timeout=float(os.getenv(
                "AGENTDECK_PENDING_SEND_TIMEOUT", str(cls.pending_send_timeout)
            )),
            poll_interval=float(os.getenv(
                "AGENTDECK_POLL_INTERVAL", str(cls.poll_interval)
            )),
            session_sync_debounce=float(os.getenv(
                "AGENTDECK_SESSION_SYNC_DEBOUNCE", str(cls.session_sync_debounce)
            )),
            queue_settle_delay=float(os.getenv(
                "AGENTDECK_QUEUE_SETTLE_DELAY", str(cls.queue_settle_delay)
            )),
            agent_output_tool=os.getenv(
                "AGENTDECK_AGENT_OUTPUT_TOOL", cls.agent_output_tool
            ),
            backend_url=os.getenv("AGENTDECK_BACKEND_URL", cls.backend_url),
            backend_auth_key=os.getenv("AGENTDECK_BACKEND_AUTH_KEY") or None,
            rpc_timeout_seconds=float(os.getenv(
                "AGENTDECK_RPC_TIMEOUT", str(cls.rpc_timeout_seconds)
            )),
            event_queue_size=int(os.getenv(
                "AGENTDECK_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            sessions_dir=os.getenv("AGENTDECK_SESSIONS_DIR") or None,
            log_level=os.getenv("AGENTDECK_LOG_LEVEL", cls.log_level).upper(),
        )
        config.validate()
        logger.info(
            "StreamConfig.from_env: provider=%s model=%s backend=%s log_level=%s",
            config.default_provider, config.default_model,
            config.backend_url, config.log_level,
        )
        return config
