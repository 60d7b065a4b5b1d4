from __future__ import annotations

import asyncio
import datetime as _dt
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .errors import GatewayError, NetworkError, ServerRejected, ValidationFailed
from .normalize import validated_application, validated_task
from .schemas import Application, ApplicationPayload, Stage, Task, TaskPayload, TaskStatus
from .store import APPLICATIONS, TASKS, EntityStore, Snapshot

logger = logging.getLogger(__name__)

Refresh = Tuple[str, Callable[[], Awaitable[Any]]]


class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    RECONCILING = "reconciling"


@dataclass(frozen=True)
class MutationResult:
    outcome: Outcome
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.CONFIRMED


@dataclass
class Mutation:
    """One optimistic change: what it touches, how to apply it, and how to settle it."""

    name: str
    touches: Dict[str, Set[int]]
    apply: Callable[[], None]
    remote: Callable[[], Awaitable[Any]]
    reconcile: Callable[[Any], None]
    refetch: Callable[[], Awaitable[Any]]
    refreshes: Sequence[Refresh] = ()
    # False: a rejected change only puts back the touched entities
    restore_whole: bool = True
    details: Dict[str, Any] = field(default_factory=dict)


class BackgroundRunner:
    """Fire-and-forget refreshes; their gateway failures are logged, never raised."""

    def __init__(self, journal=None) -> None:
        self._journal = journal
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, name: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guard(name, factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            await factory()
        except GatewayError as e:
            logger.warning("background refresh %s failed: %s", name, e)
            if self._journal is not None:
                self._journal.log_event("refresh.failed", "error", {"refresh": name, "error": str(e)})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class MutationCoordinator:
    def __init__(
        self,
        store: EntityStore,
        gateway,
        runner: Optional[BackgroundRunner] = None,
        journal=None,
        aggregation=None,
        audit_feed=None,
        stage_history=None,
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.journal = journal
        self.runner = runner or BackgroundRunner(journal)
        self.aggregation = aggregation
        self.audit_feed = audit_feed
        self.stage_history = stage_history
        self.clock = clock or _dt.datetime.now
        self._temp_ids = itertools.count(-1, -1)

    # -- protocol ----------------------------------------------------------

    def _log(self, step: str, outcome: str, mutation: Mutation, **extra: Any) -> None:
        if self.journal is not None:
            self.journal.log_event(step, outcome, {"mutation": mutation.name, **mutation.details, **extra})

    async def run(self, mutation: Mutation) -> MutationResult:
        snap = self.store.snapshot(*mutation.touches)
        mutation.apply()
        applied = {c: self.store.revision(c) for c in mutation.touches}
        self._log("mutation.applied", "ok", mutation)

        try:
            value = await mutation.remote()
        except NetworkError as e:
            # The server may have applied it; keep the optimistic state and refetch
            logger.info("%s outcome unknown (%s); reconciling", mutation.name, e)
            self._log("mutation.reconciling", "error", mutation, error=str(e))
            self.runner.schedule(f"{mutation.name}.refetch", mutation.refetch)
            return MutationResult(Outcome.RECONCILING, error=str(e))
        except ServerRejected as e:
            self._rollback(mutation, snap, applied)
            self._log("mutation.rolled_back", "error", mutation, status=e.status, error=e.message)
            return MutationResult(Outcome.ROLLED_BACK, error=e.message)

        mutation.reconcile(value)
        self._log("mutation.confirmed", "ok", mutation)
        for name, factory in mutation.refreshes:
            self.runner.schedule(name, factory)
        return MutationResult(Outcome.CONFIRMED, value=value)

    def _rollback(self, mutation: Mutation, snap: Snapshot, applied: Dict[str, int]) -> None:
        for collection, ids in mutation.touches.items():
            if mutation.restore_whole and self.store.revision(collection) == applied[collection]:
                self.store.restore(Snapshot({collection: snap.lists[collection]}, {}, snap.tasks_application_id))
                continue
            if collection == TASKS and snap.tasks_application_id != self.store.tasks_application_id:
                continue
            before = {e.id: (i, e) for i, e in enumerate(snap.lists[collection])}
            for entity_id in ids:
                if entity_id not in before:
                    self.store.remove_local(collection, lambda e, i=entity_id: e.id == i)
                    continue
                index, previous = before[entity_id]
                if not self.store.apply_local(collection, lambda e, i=entity_id: e.id == i, lambda _, p=previous: p):
                    self.store.insert_local(collection, previous, index)

    def next_temp_id(self) -> int:
        return next(self._temp_ids)

    # -- secondary refreshes -------------------------------------------------

    def application_refreshes(self, application_id: Optional[int] = None, history: bool = False) -> List[Refresh]:
        refreshes: List[Refresh] = [("applications.reload", self.store.reload)]
        if history and application_id is not None and self.stage_history is not None:
            refreshes.append(("stage_history.reload", lambda: self.stage_history.reload(application_id)))
        if self.audit_feed is not None:
            refreshes.append(("audit_feed.load", self.audit_feed.load))
        if self.aggregation is not None:
            refreshes.append(("stale.load", self.aggregation.load_stale))
            refreshes.append(("summary.load", self.aggregation.load_summary))
        return refreshes

    def task_refreshes(self) -> List[Refresh]:
        refreshes: List[Refresh] = []
        if self.audit_feed is not None:
            refreshes.append(("audit_feed.load", self.audit_feed.load))
        if self.aggregation is not None:
            refreshes.append(("summary.load", self.aggregation.load_summary))
        return refreshes

    def _visible(self, app: Application) -> bool:
        return self.store.stage_filter is None or app.stage == self.store.stage_filter

    # -- applications --------------------------------------------------------

    async def create_application(self, payload: ApplicationPayload) -> MutationResult:
        data = validated_application(payload)
        now = self.clock()
        temp = Application(
            id=self.next_temp_id(),
            company=data.company,
            role=data.role,
            job_url=data.job_url,
            location=data.location,
            notes=data.notes,
            stage=Stage.SAVED,
            last_touch_at=now,
            created_at=now,
            updated_at=now,
        )

        def apply() -> None:
            if self._visible(temp):
                self.store.insert_local(APPLICATIONS, temp)

        def reconcile(created: Application) -> None:
            if self._visible(created):
                self.store.upsert_local(APPLICATIONS, created, replaces=temp.id)
            else:
                self.store.remove_local(APPLICATIONS, lambda a: a.id == temp.id)

        return await self.run(
            Mutation(
                name="application.create",
                touches={APPLICATIONS: {temp.id}},
                apply=apply,
                remote=lambda: self.gateway.create_application(data),
                reconcile=reconcile,
                refetch=self.store.reload,
                refreshes=self.application_refreshes(),
                details={"temp_id": temp.id},
            )
        )

    def _require_application(self, application_id: int) -> Application:
        app = self.store.find_application(application_id)
        if app is None:
            raise ValidationFailed("Application not found.")
        return app

    async def update_application(self, application_id: int, payload: ApplicationPayload) -> MutationResult:
        data = validated_application(payload)
        self._require_application(application_id)
        now = self.clock()

        def apply() -> None:
            self.store.apply_local(
                APPLICATIONS,
                lambda a: a.id == application_id,
                lambda a: a.model_copy(
                    update={
                        "company": data.company,
                        "role": data.role,
                        "job_url": data.job_url,
                        "location": data.location,
                        "notes": data.notes,
                        "last_touch_at": now,
                        "updated_at": now,
                    }
                ),
            )

        return await self.run(
            Mutation(
                name="application.update",
                touches={APPLICATIONS: {application_id}},
                apply=apply,
                remote=lambda: self.gateway.update_application(application_id, data),
                reconcile=lambda updated: self.store.upsert_local(APPLICATIONS, updated),
                refetch=self.store.reload,
                refreshes=self.application_refreshes(application_id),
                details={"application_id": application_id},
            )
        )

    async def delete_application(self, application_id: int) -> MutationResult:
        self._require_application(application_id)

        def reconcile(_: Any) -> None:
            if self.store.tasks_application_id == application_id:
                self.store.close_application()
            if self.aggregation is not None:
                self.aggregation.forget_application(application_id)

        return await self.run(
            Mutation(
                name="application.delete",
                touches={APPLICATIONS: {application_id}},
                apply=lambda: self.store.remove_local(APPLICATIONS, lambda a: a.id == application_id),
                remote=lambda: self.gateway.delete_application(application_id),
                reconcile=reconcile,
                refetch=self.store.reload,
                refreshes=self.application_refreshes(application_id),
                details={"application_id": application_id},
            )
        )

    # -- tasks ---------------------------------------------------------------

    def _task_refetch(self, application_id: int) -> Callable[[], Awaitable[Any]]:
        return lambda: self.store.reload_tasks(application_id)

    def _require_task(self, task_id: int) -> Task:
        task = self.store.find_task(task_id)
        if task is None:
            raise ValidationFailed("Task not found.")
        return task

    async def create_task(self, application_id: int, payload: TaskPayload) -> MutationResult:
        data = validated_task(payload)
        now = self.clock()
        temp = Task(
            id=self.next_temp_id(),
            application_id=application_id,
            title=data.title,
            status=TaskStatus.OPEN,
            due_at=data.due_at,
            snooze_until=data.snooze_until,
            notes=data.notes,
            created_at=now,
            updated_at=now,
        )
        def is_open() -> bool:
            return self.store.tasks_application_id == application_id

        def apply() -> None:
            if is_open():
                self.store.insert_local(TASKS, temp)

        def reconcile(created: Task) -> None:
            if is_open():
                self.store.upsert_local(TASKS, created, replaces=temp.id)

        return await self.run(
            Mutation(
                name="task.create",
                touches={TASKS: {temp.id}},
                apply=apply,
                remote=lambda: self.gateway.create_task(application_id, data),
                reconcile=reconcile,
                refetch=self._task_refetch(application_id),
                refreshes=self.task_refreshes(),
                details={"application_id": application_id, "temp_id": temp.id},
            )
        )

    async def update_task(self, task_id: int, payload: TaskPayload) -> MutationResult:
        data = validated_task(payload)
        task = self._require_task(task_id)
        now = self.clock()

        def apply() -> None:
            self.store.apply_local(
                TASKS,
                lambda t: t.id == task_id,
                lambda t: t.model_copy(
                    update={
                        "title": data.title,
                        "due_at": data.due_at,
                        "snooze_until": data.snooze_until,
                        "notes": data.notes,
                        "updated_at": now,
                    }
                ),
            )

        return await self.run(
            Mutation(
                name="task.update",
                touches={TASKS: {task_id}},
                apply=apply,
                remote=lambda: self.gateway.update_task(task_id, data),
                reconcile=lambda updated: self.store.apply_local(TASKS, lambda t: t.id == updated.id, lambda _: updated),
                refetch=self._task_refetch(task.application_id),
                refreshes=self.task_refreshes(),
                details={"task_id": task_id},
            )
        )

    async def delete_task(self, task_id: int) -> MutationResult:
        task = self._require_task(task_id)
        return await self.run(
            Mutation(
                name="task.delete",
                touches={TASKS: {task_id}},
                apply=lambda: self.store.remove_local(TASKS, lambda t: t.id == task_id),
                remote=lambda: self.gateway.delete_task(task_id),
                reconcile=lambda _: None,
                refetch=self._task_refetch(task.application_id),
                refreshes=self.task_refreshes(),
                details={"task_id": task_id},
            )
        )

    async def toggle_task_status(self, task_id: int, status: TaskStatus) -> MutationResult:
        task = self._require_task(task_id)
        status = TaskStatus(status)
        completed_at = self.clock() if status is TaskStatus.DONE else None

        return await self.run(
            Mutation(
                name="task.status",
                touches={TASKS: {task_id}},
                apply=lambda: self.store.apply_local(
                    TASKS,
                    lambda t: t.id == task_id,
                    lambda t: t.model_copy(update={"status": status, "completed_at": completed_at}),
                ),
                remote=lambda: self.gateway.update_task_status(task_id, status),
                reconcile=lambda updated: self.store.apply_local(TASKS, lambda t: t.id == updated.id, lambda _: updated),
                refetch=self._task_refetch(task.application_id),
                refreshes=self.task_refreshes(),
                restore_whole=False,
                details={"task_id": task_id, "status": status.value},
            )
        )
