from __future__ import annotations

import datetime as _dt
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Stage(str, Enum):
    SAVED = "SAVED"
    APPLIED = "APPLIED"
    INTERVIEW = "INTERVIEW"
    OFFER = "OFFER"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


STAGES: List[Stage] = list(Stage)


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    DONE = "DONE"


class _Wire(BaseModel):
    """Immutable record exchanged with the API (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Application(_Wire):
    id: int
    company: str
    role: str
    job_url: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    stage: Stage = Stage.SAVED
    last_touch_at: Optional[_dt.datetime] = None
    stage_changed_at: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    updated_at: Optional[_dt.datetime] = None


class Task(_Wire):
    id: int
    application_id: int
    title: str
    status: TaskStatus = TaskStatus.OPEN
    due_at: Optional[_dt.datetime] = None
    snooze_until: Optional[_dt.datetime] = None
    notes: Optional[str] = None
    completed_at: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    updated_at: Optional[_dt.datetime] = None


class StageEvent(_Wire):
    id: int
    application_id: int
    from_stage: Optional[Stage] = None
    to_stage: Stage
    note: Optional[str] = None
    actor: Optional[str] = None
    created_at: Optional[_dt.datetime] = None


class AuditEvent(_Wire):
    id: int
    type: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    payload: Optional[str] = None  # opaque JSON, display only
    correlation_id: Optional[str] = None
    created_at: Optional[_dt.datetime] = None


class AuthResponse(_Wire):
    user_id: Any
    email: str
    token: str
    refresh_token: Optional[str] = None


class Profile(_Wire):
    user_id: Any
    email: str


class DashboardSummary(_Wire):
    stage_counts: Dict[str, int] = Field(default_factory=dict)
    overdue_tasks: int = 0

    def count_for(self, stage: Stage) -> int:
        return int(self.stage_counts.get(stage.value, 0))


class NextActions(_Wire):
    due_soon_tasks: List[Task] = Field(default_factory=list)
    stale_applications: List[Application] = Field(default_factory=list)


class ActivityPoint(_Wire):
    date: _dt.date
    stage_transitions: int = 0
    task_completions: int = 0


class ActivityResponse(_Wire):
    days: int
    items: List[ActivityPoint] = Field(default_factory=list)


class ErrorBody(_Wire):
    status: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    path: Optional[str] = None


class ApplicationPayload(_Wire):
    company: str = ""
    role: str = ""
    job_url: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class TaskPayload(_Wire):
    title: str = ""
    due_at: Optional[_dt.datetime] = None
    snooze_until: Optional[_dt.datetime] = None
    notes: Optional[str] = None

    @field_validator("due_at", "snooze_until", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class JournalEvent(BaseModel):
    session_id: str
    step: str
    status: Literal["ok", "error"]
    ts_iso: str  # UTC ISO 8601
    ts_ns: int   # monotonic clock nanoseconds
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_event_hash: str
    event_hash: str
