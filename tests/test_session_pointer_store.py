from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

import agentdeck.shared.services.persistence as persistence
from agentdeck.engine.errors import PersistenceError
from agentdeck.shared.services.persistence import (
    SessionPointer,
    SessionPointerStore,
    project_id_for,
)


def _pointer(session_id: str, project: str = "/work/app", provider: str = "claude", ts: int = 1000):
    return SessionPointer(
        session_id=session_id,
        project_id=project_id_for(project),
        project_path=project,
        provider=provider,
        message_count=3,
        timestamp=ts,
    )


def test_project_id_replaces_non_alphanumerics() -> None:
    assert project_id_for("/Users/me/my.app") == "-Users-me-my-app"
    assert project_id_for("C:\\work\\x_y") == "C--work-x-y"


def test_save_writes_record_and_index() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))

        path = store.save(_pointer("S1"))

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["session_id"] == "S1"
        assert payload["project_id"] == "-work-app"
        assert payload["provider"] == "claude"
        assert store.session_index() == ["S1"]
        assert store.load("S1") == _pointer("S1")
        assert not list(Path(tmpdir).glob("*.tmp"))


def test_resaving_moves_session_to_end_of_index() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))
        store.save(_pointer("S1"))
        store.save(_pointer("S2"))
        store.save(_pointer("S1", ts=5000))

        assert store.session_index() == ["S2", "S1"]
        assert store.load("S1").timestamp == 5000


def test_find_latest_filters_by_project_and_provider() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))
        store.save(_pointer("old", ts=1000))
        store.save(_pointer("new", ts=3000))
        store.save(_pointer("other-project", project="/work/other", ts=9000))
        store.save(_pointer("codex", provider="codex", ts=9000))

        assert store.find_latest("/work/app", "claude").session_id == "new"
        assert store.find_latest("/work/app", "codex").session_id == "codex"
        assert store.find_latest("/work/app", "gemini") is None


def test_legacy_record_without_provider_reads_as_claude() -> None:
    with TemporaryDirectory() as tmpdir:
        base = Path(tmpdir)
        (base / "legacy.json").write_text(json.dumps({
            "session_id": "legacy",
            "project_path": "/work/app",
            "timestamp": 10,
        }), encoding="utf-8")
        (base / "index.json").write_text(json.dumps(["legacy"]), encoding="utf-8")

        pointer = SessionPointerStore(base).find_latest("/work/app", "claude")

        assert pointer is not None
        assert pointer.provider == "claude"
        assert pointer.project_id == "-work-app"


def test_corrupt_files_are_skipped() -> None:
    with TemporaryDirectory() as tmpdir:
        base = Path(tmpdir)
        store = SessionPointerStore(base)
        store.save(_pointer("good"))
        (base / "bad.json").write_text("{not json", encoding="utf-8")
        (base / "index.json").write_text(json.dumps(["bad", "missing", "good", "../evil"]), encoding="utf-8")

        assert [p.session_id for p in store.list_pointers()] == ["good"]

        (base / "index.json").write_text("{}", encoding="utf-8")
        assert store.session_index() == []


def test_delete_removes_record_and_index_entry() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))
        store.save(_pointer("S1"))
        store.save(_pointer("S2"))

        assert store.delete("S1") is True
        assert store.delete("S1") is False
        assert store.session_index() == ["S2"]
        assert store.load("S1") is None


def test_unsafe_session_id_is_rejected() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))
        with pytest.raises(PersistenceError):
            store.save(_pointer("../escape"))


def test_write_failure_raises_persistence_error(monkeypatch) -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionPointerStore(Path(tmpdir))

        def _fail(path, data):
            raise OSError("disk full")

        monkeypatch.setattr(persistence, "_write_json_atomic", _fail)
        with pytest.raises(PersistenceError, match="disk full"):
            store.save(_pointer("S1"))


def test_default_directory_respects_patched_base_dir(monkeypatch) -> None:
    with TemporaryDirectory() as tmpdir:
        monkeypatch.setattr(persistence, "BASE_DIR", Path(tmpdir) / "sessions")

        store = SessionPointerStore()

        assert store.directory == Path(tmpdir) / "sessions"
