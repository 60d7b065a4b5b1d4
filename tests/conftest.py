from __future__ import annotations

import asyncio
import datetime as _dt
import itertools
from typing import Dict, List, Optional

import pytest

from jobsync.errors import ServerRejected
from jobsync.journal import SyncJournal
from jobsync.schemas import (
    ActivityPoint,
    ActivityResponse,
    Application,
    ApplicationPayload,
    AuditEvent,
    AuthResponse,
    DashboardSummary,
    NextActions,
    Profile,
    Stage,
    StageEvent,
    Task,
    TaskPayload,
    TaskStatus,
)
from jobsync.session import TrackerSession
from jobsync.settings import settings

# Wednesday; the week runs Mon 2026-03-02 .. Sun 2026-03-08
NOW = _dt.datetime(2026, 3, 4, 10, 30)


class FakeGateway:
    """In-memory stand-in for the REST API with the same coroutine surface."""

    def __init__(self) -> None:
        self.base_url = "http://fake.test/api"
        self.token: Optional[str] = None
        self.apps: Dict[int, Application] = {}
        self.tasks: Dict[int, Task] = {}
        self.stage_events: List[StageEvent] = []
        self.audit: List[AuditEvent] = []
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.stale: List[Application] = []
        self.activity_items: List[ActivityPoint] = []
        self.overdue_count = 0
        self._ids = itertools.count(100)
        self._tick = itertools.count(1)

    # -- helpers -------------------------------------------------------------

    def fail_next(self, op: str, exc: Exception) -> None:
        self.failures.setdefault(op, []).append(exc)

    def server_now(self) -> _dt.datetime:
        # deliberately different from the client clock
        return _dt.datetime(2026, 3, 4, 11, 0) + _dt.timedelta(seconds=next(self._tick))

    def seed_application(self, company="Acme", role="Engineer", stage=Stage.SAVED, **extra) -> Application:
        now = self.server_now()
        app = Application(
            id=next(self._ids),
            company=company,
            role=role,
            stage=stage,
            last_touch_at=now,
            created_at=now,
            updated_at=now,
            **extra,
        )
        self.apps[app.id] = app
        return app

    def seed_task(self, application_id: int, title="Follow up", status=TaskStatus.OPEN, due_at=None, **extra) -> Task:
        now = self.server_now()
        task = Task(
            id=next(self._ids),
            application_id=application_id,
            title=title,
            status=status,
            due_at=due_at,
            completed_at=now if status is TaskStatus.DONE else None,
            created_at=now,
            updated_at=now,
            **extra,
        )
        self.tasks[task.id] = task
        return task

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        await asyncio.sleep(0)
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def _missing(self) -> ServerRejected:
        return ServerRejected(404, "Not found")

    # -- auth ----------------------------------------------------------------

    async def signup(self, email, password):
        await self._enter("signup")
        return AuthResponse(user_id=1, email=email, token="signup-token")

    async def login(self, email, password):
        await self._enter("login")
        return AuthResponse(user_id=1, email=email, token="login-token")

    async def me(self):
        await self._enter("me")
        return Profile(user_id=1, email="me@example.com")

    # -- applications --------------------------------------------------------

    async def list_applications(self, stage=None):
        await self._enter("list_applications")
        return [a for a in sorted(self.apps.values(), key=lambda a: a.id) if stage is None or a.stage == stage]

    async def create_application(self, payload: ApplicationPayload):
        await self._enter("create_application")
        now = self.server_now()
        app = Application(
            id=next(self._ids),
            company=payload.company,
            role=payload.role,
            job_url=payload.job_url,
            location=payload.location,
            notes=payload.notes,
            stage=Stage.SAVED,
            last_touch_at=now,
            created_at=now,
            updated_at=now,
        )
        self.apps[app.id] = app
        return app

    async def update_application(self, application_id, payload: ApplicationPayload):
        await self._enter("update_application")
        if application_id not in self.apps:
            raise self._missing()
        now = self.server_now()
        app = self.apps[application_id].model_copy(
            update={
                "company": payload.company,
                "role": payload.role,
                "job_url": payload.job_url,
                "location": payload.location,
                "notes": payload.notes,
                "last_touch_at": now,
                "updated_at": now,
            }
        )
        self.apps[application_id] = app
        return app

    async def transition_stage(self, application_id, stage):
        await self._enter("transition_stage")
        if application_id not in self.apps:
            raise self._missing()
        now = self.server_now()
        before = self.apps[application_id]
        app = before.model_copy(update={"stage": stage, "stage_changed_at": now, "last_touch_at": now, "updated_at": now})
        self.apps[application_id] = app
        self.stage_events.append(
            StageEvent(
                id=next(self._ids),
                application_id=application_id,
                from_stage=before.stage,
                to_stage=stage,
                created_at=now,
            )
        )
        return app

    async def delete_application(self, application_id):
        await self._enter("delete_application")
        if self.apps.pop(application_id, None) is None:
            raise self._missing()

    async def list_stage_events(self, application_id):
        await self._enter("list_stage_events")
        return [e for e in self.stage_events if e.application_id == application_id]

    async def list_stale_applications(self, days):
        await self._enter(f"list_stale_applications:{days}")
        return list(self.stale)

    # -- tasks ---------------------------------------------------------------

    async def list_tasks(self, application_id):
        await self._enter("list_tasks")
        return [t for t in self.tasks.values() if t.application_id == application_id]

    async def create_task(self, application_id, payload: TaskPayload):
        await self._enter("create_task")
        return self.seed_task(application_id, payload.title, due_at=payload.due_at, notes=payload.notes)

    async def update_task(self, task_id, payload: TaskPayload):
        await self._enter("update_task")
        task = self.tasks[task_id].model_copy(
            update={
                "title": payload.title,
                "due_at": payload.due_at,
                "snooze_until": payload.snooze_until,
                "notes": payload.notes,
                "updated_at": self.server_now(),
            }
        )
        self.tasks[task_id] = task
        return task

    async def update_task_status(self, task_id, status):
        await self._enter("update_task_status")
        now = self.server_now()
        task = self.tasks[task_id].model_copy(
            update={"status": status, "completed_at": now if status is TaskStatus.DONE else None, "updated_at": now}
        )
        self.tasks[task_id] = task
        return task

    async def delete_task(self, task_id):
        await self._enter("delete_task")
        self.tasks.pop(task_id, None)

    async def list_tasks_due_today(self):
        await self._enter("list_tasks_due_today")
        return [t for t in self.tasks.values() if t.title.startswith("today")]

    async def list_tasks_due_week(self):
        await self._enter("list_tasks_due_week")
        return [t for t in self.tasks.values() if t.title.startswith("week")]

    async def list_tasks_overdue(self):
        await self._enter("list_tasks_overdue")
        return [t for t in self.tasks.values() if t.title.startswith("late")]

    # -- dashboard / audit ---------------------------------------------------

    async def dashboard_summary(self):
        await self._enter("dashboard_summary")
        counts: Dict[str, int] = {}
        for app in self.apps.values():
            counts[app.stage.value] = counts.get(app.stage.value, 0) + 1
        return DashboardSummary(stage_counts=counts, overdue_tasks=self.overdue_count)

    async def dashboard_next_actions(self, days):
        await self._enter(f"dashboard_next_actions:{days}")
        return NextActions(due_soon_tasks=[], stale_applications=list(self.stale))

    async def dashboard_activity(self, days):
        await self._enter(f"dashboard_activity:{days}")
        return ActivityResponse(days=days, items=list(self.activity_items))

    async def list_audit_events(self, page=0, size=25):
        await self._enter("list_audit_events")
        return list(self.audit)[page * size:(page + 1) * size]


@pytest.fixture
def now() -> _dt.datetime:
    return NOW


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def journal(tmp_path) -> SyncJournal:
    settings.journal_base_dir = str(tmp_path)
    return SyncJournal("test-session", persist=False)


@pytest.fixture
def session(gateway, journal) -> TrackerSession:
    return TrackerSession(gateway=gateway, journal=journal, clock=lambda: NOW)
