from __future__ import annotations

import datetime as _dt
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .schemas import Task, TaskStatus


class TaskFilter(str, Enum):
    ALL = "ALL"
    DUE_TODAY = "DUE_TODAY"
    DUE_WEEK = "DUE_WEEK"
    OVERDUE = "OVERDUE"
    DONE = "DONE"


def as_local(ts: Optional[_dt.datetime]) -> Optional[_dt.datetime]:
    """Naive local wall-clock time; the API sends offset-less local timestamps."""
    if ts is None:
        return None
    if ts.tzinfo is not None:
        return ts.astimezone().replace(tzinfo=None)
    return ts


def start_of_day(now: _dt.datetime) -> _dt.datetime:
    return as_local(now).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: _dt.datetime) -> _dt.datetime:
    # Weeks start on Monday; a Sunday steps back six days
    today = start_of_day(now)
    return today - _dt.timedelta(days=today.weekday())


def bucket_bounds(now: _dt.datetime) -> Dict[str, _dt.datetime]:
    today = start_of_day(now)
    week = start_of_week(now)
    return {
        "today": today,
        "tomorrow": today + _dt.timedelta(days=1),
        "week": week,
        "next_week": week + _dt.timedelta(days=7),
    }


def filter_tasks(tasks: Iterable[Task], task_filter: TaskFilter, now: _dt.datetime) -> List[Task]:
    """Tasks matching ``task_filter`` at wall-clock ``now``, in input order."""
    task_filter = TaskFilter(task_filter)
    if task_filter is TaskFilter.ALL:
        return list(tasks)
    if task_filter is TaskFilter.DONE:
        return [t for t in tasks if t.status is TaskStatus.DONE]

    b = bucket_bounds(now)
    out = []
    for t in tasks:
        due = as_local(t.due_at)
        if t.status is not TaskStatus.OPEN or due is None:
            continue
        if task_filter is TaskFilter.DUE_TODAY:
            hit = b["today"] <= due < b["tomorrow"]
        elif task_filter is TaskFilter.DUE_WEEK:
            # past-due days of this week belong to OVERDUE only
            hit = max(b["week"], b["today"]) <= due < b["next_week"]
        else:
            hit = due < b["today"]
        if hit:
            out.append(t)
    return out


def task_sort_key(task: Task) -> Tuple[int, bool, _dt.datetime, int]:
    due = as_local(task.due_at)
    return (0 if task.status is TaskStatus.OPEN else 1, due is None, due or _dt.datetime.min, task.id)


def sort_tasks(tasks: Iterable[Task]) -> List[Task]:
    """OPEN before DONE, then due date (undated last), then id.

    The key is total over distinct ids, so re-sorting after one task changes
    never reorders the others.
    """
    return sorted(tasks, key=task_sort_key)


def bucket_tasks(tasks: Iterable[Task], task_filter: TaskFilter, now: _dt.datetime) -> List[Task]:
    return sort_tasks(filter_tasks(tasks, task_filter, now))
