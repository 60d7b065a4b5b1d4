from __future__ import annotations

import argparse
import asyncio
import datetime as _dt
import logging
import os
import sys
from typing import Any, Dict

import orjson

from .buckets import TaskFilter
from .errors import GatewayError, ServerRejected, ValidationFailed
from .lifecycle import TransitionPolicy
from .schemas import Stage, TaskStatus
from .session import TrackerSession


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _emit(summary: Dict[str, Any], stream=None) -> None:
    print(orjson.dumps(summary, option=orjson.OPT_SORT_KEYS).decode(), file=stream or sys.stdout)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Job tracker sync engine CLI")
    parser.add_argument("--email", help="Sign in with this email (otherwise JOBSYNC_TOKEN is used)")
    parser.add_argument("--password", default=os.getenv("JOBSYNC_PASSWORD"))
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    board = sub.add_parser("board", help="Applications grouped by stage")
    board.add_argument("--stage", choices=[s.value for s in Stage])
    board.add_argument("--query", default="")

    tr = sub.add_parser("transition", help="Move an application to another stage")
    tr.add_argument("--id", type=int, required=True)
    tr.add_argument("--stage", choices=[s.value for s in Stage], required=True)
    tr.add_argument("--permissive", action="store_true", help="Allow any target stage (board move)")

    tasks = sub.add_parser("tasks", help="Tasks of one application")
    tasks.add_argument("--application", type=int, required=True)
    tasks.add_argument("--filter", choices=[f.value for f in TaskFilter], default=TaskFilter.ALL.value)

    toggle = sub.add_parser("toggle-task", help="Mark a task OPEN or DONE")
    toggle.add_argument("--application", type=int, required=True)
    toggle.add_argument("--task", type=int, required=True)
    toggle.add_argument("--status", choices=[s.value for s in TaskStatus], required=True)

    dash = sub.add_parser("dashboard", help="Aggregates, stale applications and activity")
    dash.add_argument("--days", type=int, choices=[7, 30])
    dash.add_argument("--stale-days", type=int, choices=[7, 14, 30])
    return parser


async def _run(args: argparse.Namespace, session: TrackerSession) -> Dict[str, Any]:
    if args.email:
        await session.login(args.email, args.password or "")

    if args.command == "board":
        stage = Stage(args.stage) if args.stage else None
        await session.store.load(stage)
        columns = session.board(args.query)
        return {
            "status": "ok",
            "columns": {s.value: [a.to_wire() for a in apps] for s, apps in columns.items()},
        }

    if args.command == "transition":
        await session.store.load()
        policy = TransitionPolicy.PERMISSIVE if args.permissive else None
        result = await session.lifecycle.request_transition(args.id, Stage(args.stage), policy)
        await session.drain()
        app = session.store.find_application(args.id)
        return {
            "status": "ok" if result.ok else "error",
            "outcome": result.outcome.value,
            "error": result.error,
            "application": app.to_wire() if app else None,
        }

    if args.command == "tasks":
        await session.open_application(args.application)
        tasks = session.visible_tasks(TaskFilter(args.filter))
        return {"status": "ok", "filter": args.filter, "tasks": [t.to_wire() for t in tasks]}

    if args.command == "toggle-task":
        await session.open_application(args.application)
        result = await session.coordinator.toggle_task_status(args.task, TaskStatus(args.status))
        await session.drain()
        task = session.store.find_task(args.task)
        return {
            "status": "ok" if result.ok else "error",
            "outcome": result.outcome.value,
            "error": result.error,
            "task": task.to_wire() if task else None,
        }

    # dashboard
    agg = session.aggregation
    if args.days:
        agg.next_actions_days = agg.activity_days = args.days
    if args.stale_days:
        agg.stale_days = args.stale_days
    await asyncio.gather(agg.refresh_dashboard(), agg.load_stale())
    return {
        "status": "ok",
        "stage_counts": {s.value: agg.stage_count(s) for s in Stage},
        "overdue_tasks": agg.overdue_tasks,
        "stale_applications": [a.to_wire() for a in agg.stale_applications],
        "activity": [
            {
                "date": b.date.isoformat(),
                "stage_transitions": b.stage_transitions,
                "task_completions": b.task_completions,
                "transitions_ratio": round(b.transitions_ratio, 3),
                "completions_ratio": round(b.completions_ratio, 3),
            }
            for b in agg.histogram(_dt.date.today())
        ],
    }


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.verbose)

    session = TrackerSession()

    async def _go() -> Dict[str, Any]:
        try:
            return await _run(args, session)
        finally:
            await session.drain()

    try:
        summary = asyncio.run(_go())
    except ValidationFailed as exc:
        if session.journal is not None:
            session.journal.finish("error", str(exc))
        _emit({"status": "error", "error_type": "validation", "error_message": str(exc)}, sys.stderr)
        return 2
    except GatewayError as exc:
        if session.journal is not None:
            session.journal.finish("error", str(exc))
        error_type = type(exc).__name__
        if isinstance(exc, ServerRejected) and exc.is_unauthorized:
            error_type = "unauthorized"
        _emit({"status": "error", "error_type": error_type, "error_message": str(exc)}, sys.stderr)
        return 1

    if session.journal is not None:
        session.journal.finish(summary.get("status", "ok"))
        summary["journal"] = str(session.journal.path)
    _emit(summary)
    return 0 if summary.get("status") == "ok" else 1


if __name__ == "__main__":
    raise SystemExit(main())
