"""YAML configuration loader.

Layers a single YAML file over the env-derived StreamConfig. When no
YAML is provided, env vars work exactly as before.

Example YAML:
    defaults:
      provider: codex
      model: gpt-5.2-codex

    timing:
      delta_flush_interval: 0.05
      pending_send_timeout: 0.5
      poll_interval: 0.2
      session_sync_debounce: 0.05
      queue_settle_delay: 0.1

    backend:
      url: ws://127.0.0.1:7070/ws
      auth_key_env: AGENTDECK_BACKEND_AUTH_KEY
      rpc_timeout: 30

    view:
      agent_output_tool: AgentOutputTool
      widget_tools: [task, edit, read, bash]

    sessions_dir: ~/.agentdeck/sessions
"""
from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

import yaml

from .config import StreamConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_TIMING_KEYS = (
    "delta_flush_interval",
    "pending_send_timeout",
    "poll_interval",
    "session_sync_debounce",
    "queue_settle_delay",
)


def find_config_file(cwd: Path) -> Path | None:
    """Return ``.agentdeck/agentdeck.yaml`` or ``agentdeck.yaml`` under *cwd*."""
    for candidate in (cwd / ".agentdeck" / "agentdeck.yaml", cwd / "agentdeck.yaml"):
        if candidate.is_file():
            return candidate
    return None


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(value).__name__}")
    return value


def load_yaml_config(path: str | Path, base: StreamConfig | None = None) -> StreamConfig:
    """Load *path* and return a StreamConfig layered over *base*.

    *base* defaults to ``StreamConfig.from_env()``. Unknown sections are
    ignored with a debug log.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else StreamConfig.from_env()
    overrides: dict = {}

    defaults = _section(raw, "defaults")
    if "provider" in defaults:
        overrides["default_provider"] = str(defaults["provider"])
    if "model" in defaults:
        overrides["default_model"] = str(defaults["model"])

    timing = _section(raw, "timing")
    for key in _TIMING_KEYS:
        if key in timing:
            try:
                overrides[key] = float(timing[key])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"timing.{key} must be a number") from exc

    backend = _section(raw, "backend")
    if "url" in backend:
        overrides["backend_url"] = str(backend["url"])
    if "auth_key_env" in backend:
        overrides["backend_auth_key"] = os.getenv(str(backend["auth_key_env"])) or None
    if "rpc_timeout" in backend:
        overrides["rpc_timeout_seconds"] = float(backend["rpc_timeout"])

    view = _section(raw, "view")
    if "agent_output_tool" in view:
        overrides["agent_output_tool"] = str(view["agent_output_tool"])
    if "widget_tools" in view:
        tools = view["widget_tools"]
        if not isinstance(tools, list):
            raise ConfigError("view.widget_tools must be a list")
        overrides["widget_tools"] = frozenset(str(t) for t in tools)

    if raw.get("sessions_dir"):
        overrides["sessions_dir"] = str(raw["sessions_dir"])

    for key in top_sections:
        if key not in ("defaults", "timing", "backend", "view", "sessions_dir"):
            logger.debug("load_yaml_config: ignoring unknown section %r", key)

    config = replace(config, **overrides)
    config.validate()
    return config
