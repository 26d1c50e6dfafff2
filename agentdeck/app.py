"""agentdeck command-line entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table

from agentdeck.adapters.event_bus import EventBus, channel_name
from agentdeck.engine.config import StreamConfig
from agentdeck.engine.errors import AgentDeckError, BackendError
from agentdeck.engine.orchestrator import SessionOrchestrator
from agentdeck.engine.yaml_config import find_config_file, load_yaml_config
from agentdeck.shared.formatters.transcript import render_transcript
from agentdeck.shared.services.persistence import SessionPointerStore

logger = logging.getLogger(__name__)

console = Console()


def _configure_logging(level_name: str) -> Path:
    log_level = os.getenv("AGENTDECK_LOG_LEVEL", level_name).upper()
    log_dir = Path.home() / ".agentdeck" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentdeck.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Console output is the transcript; only warnings go to stderr
    stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(args) -> StreamConfig:
    config = StreamConfig.from_env()
    config_path = Path(args.config) if args.config else find_config_file(Path.cwd())
    if config_path is not None:
        logger.info("Using config file %s", config_path)
        config = load_yaml_config(config_path, base=config)
    if getattr(args, "sessions_dir", None):
        config.sessions_dir = args.sessions_dir
    return config


def _store_for(config: StreamConfig) -> SessionPointerStore:
    return SessionPointerStore(config.sessions_path)


class _OfflineBackend:
    """Backend stand-in for replay: nothing runs, nothing can be submitted."""

    async def submit_new_session(self, project_path, prompt, model, provider, api_config_id=None):
        raise BackendError("submit_new_session", "replay mode has no backend")

    async def resume_session(self, project_path, session_id, prompt, model, provider="claude", api_config_id=None):
        raise BackendError("resume_session", "replay mode has no backend")

    async def cancel_session(self, project_path):
        return None

    async def query_is_running(self, project_path, provider):
        return False

    async def load_history(self, session_id, project_id, provider):
        return []


def _print_summary(orchestrator: SessionOrchestrator) -> None:
    correlation = orchestrator.tool_correlation
    metrics = orchestrator.metrics
    console.print(
        f"[dim]{len(orchestrator.entries)} entries, "
        f"{len(orchestrator.displayable_entries)} shown, "
        f"{orchestrator.total_tokens} tokens, "
        f"{metrics.tools_executed} tool calls "
        f"({len(correlation.unlinked_result_ids)} unlinked results)[/dim]"
    )


# ── subcommands ────────────────────────────────────────────────────


async def _replay(args, config: StreamConfig) -> int:
    path = Path(args.file)
    project = args.project or str(Path.cwd())
    bus = EventBus(maxsize=config.event_queue_size)
    backend = _OfflineBackend()
    orchestrator = SessionOrchestrator(
        project, args.provider or config.default_provider, backend, backend, bus,
        _store_for(config), config,
    )
    await orchestrator.start()
    channel = channel_name("output", project)
    lines = 0
    try:
        with path.open(encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                bus.deliver(channel, raw)
                lines += 1
        orchestrator.ledger.flush()
        entries = orchestrator.entries if args.all else orchestrator.displayable_entries
        console.print(render_transcript(entries, orchestrator.tool_correlation))
        _print_summary(orchestrator)
    finally:
        await orchestrator.aclose()
    logger.info("Replayed %d lines from %s", lines, path)
    return 0


async def _run(args, config: StreamConfig) -> int:
    from agentdeck.adapters.rpc_backend import RpcProcessBackend

    project = args.project or str(Path.cwd())
    bus = EventBus(maxsize=config.event_queue_size)
    backend = RpcProcessBackend(
        config.backend_url,
        bus,
        auth_key=config.backend_auth_key,
        timeout_seconds=config.rpc_timeout_seconds,
    )
    pump = None
    try:
        await backend.connect()
        pump = asyncio.get_running_loop().create_task(bus.run(), name="event-bus-pump")
        async with SessionOrchestrator(
            project, args.provider or config.default_provider, backend, backend, bus,
            _store_for(config), config, session=args.session, projects=backend,
        ) as orchestrator:
            if args.new:
                orchestrator.clear_conversation()
            await orchestrator.send_prompt(args.prompt, args.model or config.default_model)
            try:
                await orchestrator.wait_until_idle(timeout=args.timeout)
            except asyncio.TimeoutError:
                console.print(f"[yellow]Still running after {args.timeout}s; cancelling[/yellow]")
                await orchestrator.cancel()
            console.print(render_transcript(
                orchestrator.displayable_entries, orchestrator.tool_correlation,
            ))
            _print_summary(orchestrator)
    finally:
        bus.close()
        if pump is not None:
            await pump
        await backend.close()
    return 0


def _sessions(args, config: StreamConfig) -> int:
    store = _store_for(config)
    pointers = store.list_pointers(project_path=args.project, provider=args.provider)
    if not pointers:
        console.print("No saved sessions.")
        return 0
    table = Table(title=f"Sessions in {store.directory}")
    table.add_column("Session")
    table.add_column("Provider")
    table.add_column("Project")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for pointer in pointers:
        updated = datetime.fromtimestamp(pointer.timestamp / 1000).isoformat(timespec="seconds")
        table.add_row(
            pointer.session_id, pointer.provider, pointer.project_path,
            str(pointer.message_count), updated,
        )
    console.print(table)
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="Drive AI coding-agent sessions from the terminal",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./.agentdeck/agentdeck.yaml or ./agentdeck.yaml)",
    )
    parser.add_argument(
        "--sessions-dir", metavar="DIR",
        help="Directory of saved session pointers",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        help="Log level when AGENTDECK_LOG_LEVEL is unset (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Replay a JSONL stream capture and print the transcript")
    replay.add_argument("file", help="File with one serialized stream event per line")
    replay.add_argument("--project", metavar="PATH", help="Project path the capture belongs to")
    replay.add_argument("--provider", help="Provider name (default from config)")
    replay.add_argument("--all", action="store_true", help="Show every ledger entry, unfiltered")

    run = sub.add_parser("run", help="Send one prompt to the backend and wait for the agent")
    run.add_argument("prompt")
    run.add_argument("--project", metavar="PATH", help="Project directory (default: cwd)")
    run.add_argument("--provider", help="claude, codex or gemini (default from config)")
    run.add_argument("--model", help="Model name (default from config)")
    run.add_argument("--session", metavar="ID", help="Resume this session id")
    run.add_argument("--new", action="store_true", help="Start fresh instead of resuming")
    run.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait (default: 600)")

    sessions = sub.add_parser("sessions", help="List saved session pointers")
    sessions.add_argument("--project", metavar="PATH", help="Only this project path")
    sessions.add_argument("--provider", help="Only this provider")

    args = parser.parse_args()
    log_file = _configure_logging(args.log_level)
    logger.info("agentdeck %s cwd=%s log=%s", args.command, Path.cwd(), log_file)

    try:
        config = _load_config(args)
        if args.command == "sessions":
            code = _sessions(args, config)
        elif args.command == "replay":
            code = asyncio.run(_replay(args, config))
        else:
            code = asyncio.run(_run(args, config))
    except FileNotFoundError as exc:
        console.print(f"[red]Error:[/red] file not found: {exc.filename}")
        code = 1
    except AgentDeckError as exc:
        logger.error("%s", exc)
        console.print(f"[red]Error:[/red] {exc}")
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
