from __future__ import annotations

import datetime as _dt
import uuid
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import Column, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import declarative_base, sessionmaker

from .schemas import JournalEvent
from .settings import project_root

_DB_PATH = project_root() / "jobsync.db"

engine = create_engine(f"sqlite:///{_DB_PATH}", echo=False, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class SyncSession(Base):
    __tablename__ = "sync_sessions"
    session_id = Column(String, primary_key=True)
    base_url = Column(Text, nullable=False)
    started_at = Column(String, nullable=False)
    finished_at = Column(String, nullable=True)
    status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)


class JournalRow(Base):
    __tablename__ = "journal_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False)
    step = Column(String, nullable=False)
    status = Column(String, nullable=False)
    ts_iso = Column(String, nullable=False)
    ts_ns = Column(Integer, nullable=False)
    prev_event_hash = Column(String, nullable=False)
    event_hash = Column(String, nullable=False)
    details_json = Column(Text, nullable=False)


Base.metadata.create_all(engine)


def create_session(base_url: str) -> str:
    session_id = str(uuid.uuid4())
    with SessionLocal() as db:
        db.add(
            SyncSession(
                session_id=session_id,
                base_url=base_url,
                started_at=_utc_now_iso(),
                finished_at=None,
                status="running",
                error_message=None,
            )
        )
        db.commit()
    return session_id


def finish_session(session_id: str, status: str, error_message: Optional[str] = None) -> None:
    with SessionLocal() as db:
        stmt = (
            update(SyncSession)
            .where(SyncSession.session_id == session_id)
            .values(finished_at=_utc_now_iso(), status=status, error_message=error_message)
        )
        db.execute(stmt)
        db.commit()


def append_journal(event: JournalEvent) -> None:
    with SessionLocal() as db:
        db.add(
            JournalRow(
                session_id=event.session_id,
                step=event.step,
                status=event.status,
                ts_iso=event.ts_iso,
                ts_ns=event.ts_ns,
                prev_event_hash=event.prev_event_hash,
                event_hash=event.event_hash,
                details_json=orjson.dumps(event.details, option=orjson.OPT_SORT_KEYS).decode(),
            )
        )
        db.commit()


def get_last_journal_hash(session_id: str) -> Optional[str]:
    with SessionLocal() as db:
        stmt = (
            select(JournalRow)
            .where(JournalRow.session_id == session_id)
            .order_by(JournalRow.id.desc())
            .limit(1)
        )
        row = db.execute(stmt).scalars().first()
        return row.event_hash if row else None


def get_journal_steps(session_id: str) -> List[Dict[str, Any]]:
    with SessionLocal() as db:
        stmt = select(JournalRow).where(JournalRow.session_id == session_id).order_by(JournalRow.id.asc())
        rows = db.execute(stmt).scalars().all()
        return [
            {"step": r.step, "status": r.status, "details": orjson.loads(r.details_json), "event_hash": r.event_hash}
            for r in rows
        ]


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as db:
        row = db.get(SyncSession, session_id)
        if not row:
            return None
        return {
            "session_id": row.session_id,
            "base_url": row.base_url,
            "started_at": row.started_at,
            "finished_at": row.finished_at,
            "status": row.status,
            "error_message": row.error_message,
        }
