"""Session pointer persistence.

Storage layout:
    ~/.agentdeck/sessions/index.json          known session ids, newest last
    ~/.agentdeck/sessions/{session_id}.json   one SessionPointer per session

A pointer is the small record needed to find a conversation again after
a reload: which project and provider it belongs to and when it was last
touched. Records written before providers existed have no "provider"
field and are read as claude sessions.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from agentdeck.engine.errors import PersistenceError

logger = logging.getLogger(__name__)

_IMPORTED_BASE_DIR = Path.home() / ".agentdeck" / "sessions"
BASE_DIR = _IMPORTED_BASE_DIR

_INDEX_NAME = "index.json"
_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


def _resolve_base_dir() -> Path:
    """Resolve the sessions dir at call time so a patched BASE_DIR or HOME wins."""
    base_dir = Path(BASE_DIR)
    if base_dir != _IMPORTED_BASE_DIR:
        return base_dir
    return Path.home() / ".agentdeck" / "sessions"


def project_id_for(project_path: str) -> str:
    """Every non-alphanumeric character becomes '-'."""
    return re.sub(r"[^a-zA-Z0-9]", "-", project_path)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionPointer:
    session_id: str
    project_id: str
    project_path: str
    provider: str = "claude"
    message_count: int = 0
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: dict) -> SessionPointer:
        return cls(
            session_id=str(data["session_id"]),
            project_id=str(data.get("project_id") or project_id_for(data.get("project_path", ""))),
            project_path=str(data.get("project_path", "")),
            provider=str(data.get("provider") or "claude"),
            message_count=int(data.get("message_count", 0)),
            timestamp=int(data.get("timestamp", 0)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _fsync_dir(dir_path: Path) -> None:
    try:
        fd = os.open(str(dir_path), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem supports directory fsync
        pass
    finally:
        os.close(fd)


def _write_json_atomic(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class SessionPointerStore:
    """JSON-file store of SessionPointers with a session-id index."""

    def __init__(self, base_dir: Path | None = None) -> None:
        self._dir = Path(base_dir) if base_dir is not None else _resolve_base_dir()

    @property
    def directory(self) -> Path:
        return self._dir

    def _pointer_path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id):
            raise PersistenceError(session_id, "session id is not a safe file name")
        return self._dir / f"{session_id}.json"

    # ── index ───────────────────────────────────────────────────────

    def session_index(self) -> list[str]:
        """Known session ids, oldest first. A corrupt index reads as empty."""
        path = self._dir / _INDEX_NAME
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Session index %s unreadable: %s", path, exc)
            return []
        if not isinstance(data, list):
            logger.warning("Session index %s is not a list; ignoring", path)
            return []
        return [str(s) for s in data if isinstance(s, str)]

    def _write_index(self, ids: list[str]) -> None:
        _write_json_atomic(self._dir / _INDEX_NAME, ids)

    # ── records ─────────────────────────────────────────────────────

    def save(self, pointer: SessionPointer) -> Path:
        """Write the pointer and register it in the index.

        Raises PersistenceError on any filesystem failure.
        """
        path = self._pointer_path(pointer.session_id)
        try:
            _write_json_atomic(path, pointer.to_dict())
            ids = self.session_index()
            if pointer.session_id in ids:
                ids.remove(pointer.session_id)
            ids.append(pointer.session_id)
            self._write_index(ids)
        except OSError as exc:
            raise PersistenceError(pointer.session_id, str(exc)) from exc
        logger.debug(
            "Saved session pointer %s (%s, %d messages)",
            pointer.session_id, pointer.provider, pointer.message_count,
        )
        return path

    def load(self, session_id: str) -> SessionPointer | None:
        try:
            path = self._pointer_path(session_id)
        except PersistenceError:
            logger.warning("Ignoring unsafe session id in index: %r", session_id)
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return SessionPointer.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to read session pointer %s: %s", session_id, exc)
            return None

    def delete(self, session_id: str) -> bool:
        path = self._pointer_path(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(session_id, str(exc)) from exc
        ids = [s for s in self.session_index() if s != session_id]
        try:
            self._write_index(ids)
        except OSError as exc:
            raise PersistenceError(session_id, str(exc)) from exc
        return True

    def list_pointers(
        self, project_path: str | None = None, provider: str | None = None,
    ) -> list[SessionPointer]:
        """Readable pointers, most recent first, optionally filtered."""
        pointers = []
        for session_id in self.session_index():
            pointer = self.load(session_id)
            if pointer is None:
                continue
            if project_path is not None and pointer.project_path != project_path:
                continue
            if provider is not None and pointer.provider != provider:
                continue
            pointers.append(pointer)
        pointers.sort(key=lambda p: p.timestamp, reverse=True)
        return pointers

    def find_latest(self, project_path: str, provider: str) -> SessionPointer | None:
        matches = self.list_pointers(project_path=project_path, provider=provider)
        return matches[0] if matches else None
