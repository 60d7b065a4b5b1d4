from __future__ import annotations

import asyncio
import datetime as _dt
from dataclasses import dataclass
from typing import Dict, List, Optional

from .buckets import TaskFilter, sort_tasks
from .errors import GatewayError, ValidationFailed
from .schemas import ActivityResponse, Application, DashboardSummary, NextActions, Stage, Task
from .settings import settings
from .store import CollectionState, Generations

STALE_THRESHOLDS = (7, 14, 30)
WINDOWS = (7, 30)


@dataclass(frozen=True)
class ActivityBucket:
    date: _dt.date
    stage_transitions: int
    task_completions: int
    transitions_ratio: float
    completions_ratio: float

    @property
    def total(self) -> int:
        return self.stage_transitions + self.task_completions


def activity_histogram(
    activity: Optional[ActivityResponse],
    days: int,
    today: Optional[_dt.date] = None,
) -> List[ActivityBucket]:
    """One bucket per calendar day, oldest first, ending ``today``.

    Bar ratios share one scale: count / max(1, largest count of either series).
    """
    today = today or _dt.date.today()
    counts: Dict[_dt.date, List[int]] = {}
    for point in activity.items if activity else []:
        c = counts.setdefault(point.date, [0, 0])
        c[0] += point.stage_transitions
        c[1] += point.task_completions

    dates = [today - _dt.timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    rows = [(d, *counts.get(d, (0, 0))) for d in dates]
    peak = max([1] + [max(t, c) for _, t, c in rows])
    return [ActivityBucket(d, t, c, t / peak, c / peak) for d, t, c in rows]


def _checked_window(days: int, allowed=WINDOWS) -> int:
    days = int(days)
    if days not in allowed:
        raise ValidationFailed(f"Window must be one of {', '.join(str(d) for d in allowed)} days.")
    return days


class AggregationEngine:
    """Dashboard aggregates; every number comes from the server's aggregate endpoints."""

    def __init__(self, gateway, journal=None) -> None:
        self._gateway = gateway
        self._journal = journal
        dash = settings.dashboard
        self.stale_days: int = int(dash.get("stale_days", 14))
        self.next_actions_days: int = int(dash.get("next_actions_days", 7))
        self.activity_days: int = int(dash.get("activity_days", 7))
        self.summary: Optional[DashboardSummary] = None
        self.next_actions: Optional[NextActions] = None
        self.activity: Optional[ActivityResponse] = None
        self.stale_applications: List[Application] = []
        self.task_buckets: Dict[TaskFilter, List[Task]] = {
            TaskFilter.DUE_TODAY: [],
            TaskFilter.DUE_WEEK: [],
            TaskFilter.OVERDUE: [],
        }
        self.state: Dict[str, CollectionState] = {
            k: CollectionState() for k in ("dashboard", "summary", "stale", "task_buckets")
        }
        self.generations = Generations()

    async def _guarded(self, key: str, coro):
        """Await ``coro``; returns (is_current, value). Errors land in ``state[key]``."""
        token = self.generations.begin(key)
        state = self.state[key]
        state.loading = True
        try:
            value = await coro
        except GatewayError as e:
            if self.generations.is_current(key, token):
                state.loading = False
                state.error = str(e)
            raise
        current = self.generations.is_current(key, token)
        if current:
            state.loading = False
            state.error = None
        elif self._journal is not None:
            self._journal.log_event("load.discarded", "ok", {"collection": key})
        return current, value

    async def refresh_dashboard(self) -> None:
        """Fetch summary, next actions and activity together; commit all three or none."""
        current, (summary, next_actions, activity) = await self._guarded(
            "dashboard",
            asyncio.gather(
                self._gateway.dashboard_summary(),
                self._gateway.dashboard_next_actions(self.next_actions_days),
                self._gateway.dashboard_activity(self.activity_days),
            ),
        )
        if current:
            self.summary, self.next_actions, self.activity = summary, next_actions, activity

    async def load_summary(self) -> Optional[DashboardSummary]:
        current, summary = await self._guarded("summary", self._gateway.dashboard_summary())
        if current:
            self.summary = summary
        return summary

    async def load_stale(self, days: Optional[int] = None) -> List[Application]:
        days = _checked_window(days or self.stale_days, STALE_THRESHOLDS)
        current, apps = await self._guarded("stale", self._gateway.list_stale_applications(days))
        if current:
            self.stale_applications = list(apps)
        return apps

    async def set_stale_days(self, days: int) -> List[Application]:
        self.stale_days = _checked_window(days, STALE_THRESHOLDS)
        return await self.load_stale()

    async def set_windows(self, next_actions_days: Optional[int] = None, activity_days: Optional[int] = None) -> None:
        if next_actions_days is not None:
            self.next_actions_days = _checked_window(next_actions_days)
        if activity_days is not None:
            self.activity_days = _checked_window(activity_days)
        await self.refresh_dashboard()

    async def load_task_buckets(self) -> Dict[TaskFilter, List[Task]]:
        current, (today, week, overdue) = await self._guarded(
            "task_buckets",
            asyncio.gather(
                self._gateway.list_tasks_due_today(),
                self._gateway.list_tasks_due_week(),
                self._gateway.list_tasks_overdue(),
            ),
        )
        buckets = {
            TaskFilter.DUE_TODAY: sort_tasks(today),
            TaskFilter.DUE_WEEK: sort_tasks(week),
            TaskFilter.OVERDUE: sort_tasks(overdue),
        }
        if current:
            self.task_buckets = buckets
        return buckets

    def reset(self) -> None:
        for key in self.state:
            self.generations.invalidate(key)
            self.state[key] = CollectionState()
        self.summary = None
        self.next_actions = None
        self.activity = None
        self.stale_applications = []
        self.task_buckets = {f: [] for f in self.task_buckets}

    def forget_application(self, application_id: int) -> None:
        """Drop a deleted application from the stale list until the next refresh."""
        self.stale_applications = [a for a in self.stale_applications if a.id != application_id]
        if self.next_actions is not None:
            self.next_actions = self.next_actions.model_copy(
                update={
                    "stale_applications": [a for a in self.next_actions.stale_applications if a.id != application_id],
                    "due_soon_tasks": [t for t in self.next_actions.due_soon_tasks if t.application_id != application_id],
                }
            )

    def stage_count(self, stage: Stage) -> int:
        return self.summary.count_for(stage) if self.summary else 0

    @property
    def overdue_tasks(self) -> int:
        return self.summary.overdue_tasks if self.summary else 0

    def histogram(self, today: Optional[_dt.date] = None) -> List[ActivityBucket]:
        days = self.activity.days if self.activity and self.activity.days else self.activity_days
        return activity_histogram(self.activity, days, today)
