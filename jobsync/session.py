from __future__ import annotations

import asyncio
import datetime as _dt
from typing import Callable, Dict, List, Optional, Tuple

from .aggregation import AggregationEngine
from .buckets import TaskFilter, bucket_tasks
from .coordinator import BackgroundRunner, MutationCoordinator
from .gateway import RemoteGateway
from .history import AuditFeed, StageHistory
from .journal import SyncJournal
from .lifecycle import StageLifecycle, TransitionPolicy
from .normalize import matches_query
from .schemas import STAGES, Application, AuthResponse, Profile, Stage, Task
from .settings import settings
from .store import EntityStore


class TrackerSession:
    """Everything one signed-in browser tab holds, wired around a single store.

    Views receive this object (or its parts) and read from ``store``; they
    never keep copies of their own.
    """

    def __init__(
        self,
        gateway=None,
        journal: Optional[SyncJournal] = None,
        policy: Optional[TransitionPolicy] = None,
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        self.gateway = gateway or RemoteGateway()
        if journal is None and settings.journal.get("enabled", True):
            journal = SyncJournal.start(getattr(self.gateway, "base_url", settings.api_base_url))
        self.journal = journal
        self.clock = clock or _dt.datetime.now
        self.store = EntityStore(self.gateway, journal)
        self.aggregation = AggregationEngine(self.gateway, journal)
        self.audit_feed = AuditFeed(self.gateway)
        self.stage_history = StageHistory(self.gateway)
        self.runner = BackgroundRunner(journal)
        self.coordinator = MutationCoordinator(
            self.store,
            self.gateway,
            runner=self.runner,
            journal=journal,
            aggregation=self.aggregation,
            audit_feed=self.audit_feed,
            stage_history=self.stage_history,
            clock=self.clock,
        )
        self.lifecycle = StageLifecycle(self.coordinator, policy)
        self.profile: Optional[Profile] = None

    # -- auth ----------------------------------------------------------------

    async def login(self, email: str, password: str) -> AuthResponse:
        auth = await self.gateway.login(email, password)
        self.gateway.token = auth.token
        return auth

    async def signup(self, email: str, password: str) -> AuthResponse:
        auth = await self.gateway.signup(email, password)
        self.gateway.token = auth.token
        return auth

    async def me(self) -> Profile:
        self.profile = await self.gateway.me()
        return self.profile

    async def logout(self) -> None:
        await self.drain()
        self.gateway.token = None
        self.profile = None
        self.store.clear()
        self.stage_history.close()
        self.audit_feed.reset()
        self.aggregation.reset()

    # -- views ---------------------------------------------------------------

    async def start(self, stage_filter: Optional[Stage] = None) -> None:
        """Initial load after sign-in: applications plus the dashboard read models."""
        await asyncio.gather(
            self.store.load(stage_filter),
            self.aggregation.refresh_dashboard(),
            self.aggregation.load_stale(),
            self.audit_feed.load(),
        )

    async def open_application(self, application_id: int) -> Tuple[List[Task], list]:
        tasks, events = await asyncio.gather(
            self.store.load_tasks_for(application_id),
            self.stage_history.load(application_id),
        )
        return tasks, events

    def close_application(self) -> None:
        self.store.close_application()
        self.stage_history.close()

    def visible_tasks(self, task_filter: TaskFilter = TaskFilter.ALL, now: Optional[_dt.datetime] = None) -> List[Task]:
        return bucket_tasks(self.store.tasks, task_filter, now or self.clock())

    def board(self, query: str = "") -> Dict[Stage, List[Application]]:
        columns: Dict[Stage, List[Application]] = {stage: [] for stage in STAGES}
        for app in self.store.applications:
            if matches_query(query, app.company, app.role, app.location):
                columns[app.stage].append(app)
        return columns

    async def drain(self) -> None:
        """Wait for background refreshes, then write out buffered journal events."""
        await self.runner.drain()
        if self.journal is not None:
            await self.journal.flush_async()

    async def close(self, status: str = "ok", error_message: Optional[str] = None) -> None:
        await self.drain()
        if self.journal is not None:
            await asyncio.to_thread(self.journal.finish, status, error_message)
