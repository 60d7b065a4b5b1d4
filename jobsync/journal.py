from __future__ import annotations

import asyncio
import threading
import time
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

from .schemas import JournalEvent
from .settings import settings
from . import storage


def chain_next(prev_hash: str, payload: Dict[str, Any]) -> str:
    """sha256 over the previous hash followed by the payload as sorted-key JSON."""
    if prev_hash is None:
        prev_hash = ""
    if not isinstance(prev_hash, str):
        raise TypeError("prev_hash must be a string")
    h = sha256()
    h.update(prev_hash.encode("utf-8"))
    h.update(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS))
    return h.hexdigest()


def _in_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class SyncJournal:
    """Append-only, hash-chained record of what one sync session did.

    Lines go to ``<journal_dir>/<session_id>/journal.jsonl`` and into the
    ``journal_events`` table. Events logged while an event loop is running
    are chained at once but only written on ``flush``; outside a loop they
    are written immediately.
    """

    def __init__(self, session_id: str, persist: bool = True) -> None:
        self.session_id = session_id
        self._persist = persist
        self._last_hash: Optional[str] = None
        self._pending: List[JournalEvent] = []
        self._flush_lock = threading.Lock()

    @classmethod
    def start(cls, base_url: str) -> "SyncJournal":
        journal = cls(storage.create_session(base_url))
        journal.log_event("session_started", "ok", {"base_url": base_url, "cfg_hash": settings.cfg_hash})
        return journal

    @property
    def path(self) -> Path:
        return settings.journal_dir_for(self.session_id) / "journal.jsonl"

    def _resolve_prev_hash(self) -> str:
        if self._last_hash is not None:
            return self._last_hash
        if self._persist:
            return storage.get_last_journal_hash(self.session_id) or ""
        return ""

    def log_event(self, step: str, status: str, details: Optional[Dict[str, Any]] = None) -> JournalEvent:
        event_dict = {
            "session_id": self.session_id,
            "step": step,
            "status": status,
            "ts_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "ts_ns": time.perf_counter_ns(),
            "details": details or {},
            "prev_event_hash": self._resolve_prev_hash(),
        }
        event = JournalEvent(**event_dict, event_hash=chain_next(event_dict["prev_event_hash"], event_dict))
        self._last_hash = event.event_hash
        self._pending.append(event)

        if not _in_event_loop():
            self.flush()
        return event

    @property
    def pending(self) -> int:
        return len(self._pending)

    def flush(self) -> int:
        """Write buffered events to the JSONL file and the database, in chain order."""
        with self._flush_lock:
            events, self._pending = self._pending, []
            if not events:
                return 0
            with open(self.path, "ab") as f:
                for event in events:
                    f.write(orjson.dumps(event.model_dump(), option=orjson.OPT_SORT_KEYS) + b"\n")
            if self._persist:
                for event in events:
                    storage.append_journal(event)
            return len(events)

    async def flush_async(self) -> int:
        return await asyncio.to_thread(self.flush)

    def finish(self, status: str = "ok", error_message: Optional[str] = None) -> None:
        self.log_event("session_finished", "ok" if status == "ok" else "error", {"status": status})
        self.flush()
        if self._persist:
            storage.finish_session(self.session_id, status=status, error_message=error_message)


def verify_chain(journal_path: Path) -> Dict[str, Any]:
    count = 0
    prev = ""
    session_id = None
    break_index = -1
    for idx, line in enumerate(journal_path.read_text(encoding="utf-8").splitlines()):
        if not line.strip():
            continue
        ev = orjson.loads(line)
        if ev.get("prev_event_hash", "") != prev:
            break_index = idx
            break
        payload = {k: v for k, v in ev.items() if k != "event_hash"}
        if chain_next(prev, payload) != ev.get("event_hash"):
            break_index = idx
            break
        prev = ev["event_hash"]
        session_id = session_id or ev.get("session_id")
        count += 1
    return {
        "session_id": session_id,
        "events": count,
        "valid": break_index == -1,
        "break_index": None if break_index == -1 else break_index,
    }
