from __future__ import annotations

from pathlib import Path

from jobsync import storage
from jobsync.settings import settings


def test_sync_session_lifecycle(tmp_path: Path):
    settings.journal_base_dir = str(tmp_path)

    session_id = storage.create_session("https://api.example.com")
    run = storage.get_session(session_id)
    assert run is not None
    assert run["status"] == "running"
    assert run["finished_at"] is None

    storage.finish_session(session_id, status="error", error_message="Network error: refused")
    run = storage.get_session(session_id)
    assert run["started_at"] is not None
    assert run["finished_at"] is not None
    assert run["status"] == "error"
    assert run["error_message"] == "Network error: refused"


def test_unknown_session():
    assert storage.get_session("does-not-exist") is None
    assert storage.get_last_journal_hash("does-not-exist") is None
    assert storage.get_journal_steps("does-not-exist") == []
