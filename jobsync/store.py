from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional

from .buckets import sort_tasks
from .errors import GatewayError
from .schemas import Application, Stage, Task

logger = logging.getLogger(__name__)

APPLICATIONS = "applications"
TASKS = "tasks"
COLLECTIONS = (APPLICATIONS, TASKS)

Listener = Callable[[str], None]


@dataclass
class CollectionState:
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class Snapshot:
    lists: Dict[str, List[Any]]
    revisions: Dict[str, int]
    tasks_application_id: Optional[int] = None


class Generations:
    """Per-key counters; a result is committed only if its token is still the latest."""

    def __init__(self) -> None:
        self._current: Dict[Hashable, int] = {}

    def begin(self, key: Hashable) -> int:
        token = self._current.get(key, 0) + 1
        self._current[key] = token
        return token

    def is_current(self, key: Hashable, token: int) -> bool:
        return self._current.get(key, 0) == token

    def invalidate(self, key: Hashable) -> None:
        self.begin(key)


@dataclass
class _Collections:
    applications: List[Application] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)


class EntityStore:
    """Single source of truth for the signed-in user's applications and tasks.

    Every write swaps in a brand new list, so a list obtained from a property is
    never modified afterwards. Only load operations and the mutation coordinator
    write here; everything else derives from it.
    """

    def __init__(self, gateway, journal=None) -> None:
        self._gateway = gateway
        self._journal = journal
        self._data = _Collections()
        self._tasks_application_id: Optional[int] = None
        self._revisions: Dict[str, int] = {c: 0 for c in COLLECTIONS}
        self._listeners: List[Listener] = []
        self.stage_filter: Optional[Stage] = None
        self.state: Dict[str, CollectionState] = {c: CollectionState() for c in COLLECTIONS}
        self.generations = Generations()

    # -- read side ---------------------------------------------------------

    @property
    def applications(self) -> List[Application]:
        return self._data.applications

    @property
    def tasks(self) -> List[Task]:
        return self._data.tasks

    @property
    def tasks_application_id(self) -> Optional[int]:
        return self._tasks_application_id

    def revision(self, collection: str) -> int:
        return self._revisions[collection]

    def find_application(self, application_id: int) -> Optional[Application]:
        return next((a for a in self._data.applications if a.id == application_id), None)

    def find_task(self, task_id: int) -> Optional[Task]:
        return next((t for t in self._data.tasks if t.id == task_id), None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- write side --------------------------------------------------------

    def _commit(self, collection: str, items: List[Any]) -> None:
        if collection == TASKS:
            items = sort_tasks(items)
        setattr(self._data, collection, list(items))
        self._revisions[collection] += 1
        for listener in list(self._listeners):
            listener(collection)

    def _items(self, collection: str) -> List[Any]:
        if collection not in COLLECTIONS:
            raise KeyError(f"Unknown collection: {collection}")
        return getattr(self._data, collection)

    def apply_local(self, collection: str, predicate: Callable[[Any], bool], transform: Callable[[Any], Any]) -> int:
        """Replace matching entities in place; returns how many matched."""
        count = 0
        out = []
        for item in self._items(collection):
            if predicate(item):
                item = transform(item)
                count += 1
            out.append(item)
        if count:
            self._commit(collection, out)
        return count

    def insert_local(self, collection: str, item: Any, index: Optional[int] = None) -> None:
        out = list(self._items(collection))
        if index is None or index >= len(out):
            out.append(item)
        else:
            out.insert(max(index, 0), item)
        self._commit(collection, out)

    def upsert_local(self, collection: str, item: Any, replaces: Optional[int] = None) -> None:
        """Put ``item`` where the entity with id ``replaces`` (default: item.id) was, or append it."""
        ids = {item.id if replaces is None else replaces, item.id}
        out, placed = [], False
        for e in self._items(collection):
            if e.id in ids:
                # a reload may already have brought in the server copy too
                if not placed:
                    out.append(item)
                    placed = True
                continue
            out.append(e)
        if not placed:
            out.append(item)
        self._commit(collection, out)

    def remove_local(self, collection: str, predicate: Callable[[Any], bool]) -> List[Any]:
        """Only delete mutations remove entities."""
        kept, removed = [], []
        for item in self._items(collection):
            (removed if predicate(item) else kept).append(item)
        if removed:
            self._commit(collection, kept)
        return removed

    def snapshot(self, *collections: str) -> Snapshot:
        names = collections or COLLECTIONS
        return Snapshot(
            lists={c: self._items(c) for c in names},
            revisions={c: self._revisions[c] for c in names},
            tasks_application_id=self._tasks_application_id,
        )

    def restore(self, snap: Snapshot) -> None:
        for collection, items in snap.lists.items():
            if collection == TASKS and snap.tasks_application_id != self._tasks_application_id:
                continue
            self._commit(collection, items)

    def clear(self) -> None:
        for c in COLLECTIONS:
            self.generations.invalidate(c)
            self.state[c] = CollectionState()
            self._commit(c, [])
        self._tasks_application_id = None
        self.stage_filter = None

    # -- loads -------------------------------------------------------------

    def _discarded(self, collection: str, **details: Any) -> None:
        logger.debug("discarding late %s result %s", collection, details)
        if self._journal is not None:
            self._journal.log_event("load.discarded", "ok", {"collection": collection, **details})

    async def load(self, stage_filter: Optional[Stage] = None) -> List[Application]:
        """Fetch applications (optionally one stage) and replace the local list."""
        self.stage_filter = stage_filter
        token = self.generations.begin(APPLICATIONS)
        state = self.state[APPLICATIONS]
        state.loading = True
        try:
            apps = await self._gateway.list_applications(stage_filter)
        except GatewayError as e:
            if self.generations.is_current(APPLICATIONS, token):
                state.loading = False
                state.error = str(e)
            raise
        if not self.generations.is_current(APPLICATIONS, token):
            self._discarded(APPLICATIONS, stage=stage_filter.value if stage_filter else None)
            return apps
        self._commit(APPLICATIONS, apps)
        state.loading = False
        state.error = None
        return apps

    async def reload(self) -> List[Application]:
        return await self.load(self.stage_filter)

    async def load_tasks_for(self, application_id: int) -> List[Task]:
        """Make ``application_id`` the open application and replace its task list."""
        if self._tasks_application_id != application_id:
            self._tasks_application_id = application_id
            self._commit(TASKS, [])
        token = self.generations.begin(TASKS)
        state = self.state[TASKS]
        state.loading = True
        try:
            tasks = await self._gateway.list_tasks(application_id)
        except GatewayError as e:
            if self.generations.is_current(TASKS, token):
                state.loading = False
                state.error = str(e)
            raise
        if not self.generations.is_current(TASKS, token) or self._tasks_application_id != application_id:
            self._discarded(TASKS, application_id=application_id)
            return tasks
        self._commit(TASKS, tasks)
        state.loading = False
        state.error = None
        return tasks

    async def reload_tasks(self, application_id: Optional[int] = None) -> List[Task]:
        """Reload the open application's tasks; a no-op when another one is open."""
        current = self._tasks_application_id
        if current is None or (application_id is not None and application_id != current):
            return []
        return await self.load_tasks_for(current)

    def close_application(self) -> None:
        self.generations.invalidate(TASKS)
        self._tasks_application_id = None
        self.state[TASKS] = CollectionState()
        self._commit(TASKS, [])
