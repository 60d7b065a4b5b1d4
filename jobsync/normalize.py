from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationFailed
from .schemas import ApplicationPayload, TaskPayload


_ws_re = re.compile(r"\s+")
_url_re = re.compile(r"^https?://", re.I)


def normalize_ws(s: Optional[str]) -> str:
    return _ws_re.sub(" ", (s or "").strip())


def _or_none(s: Optional[str]) -> Optional[str]:
    s = (s or "").strip()
    return s or None


def normalize_application_payload(payload: ApplicationPayload) -> ApplicationPayload:
    return ApplicationPayload(
        company=(payload.company or "").strip(),
        role=(payload.role or "").strip(),
        job_url=_or_none(payload.job_url),
        location=_or_none(payload.location),
        notes=_or_none(payload.notes),
    )


def application_error(payload: ApplicationPayload) -> str:
    """Return the first validation message for an application form, or ''."""
    if len((payload.company or "").strip()) < 2:
        return "Company name must be at least 2 characters."
    if len((payload.role or "").strip()) < 2:
        return "Role must be at least 2 characters."
    url = (payload.job_url or "").strip()
    if url and not _url_re.match(url):
        return "Job URL must start with http:// or https://"
    return ""


def validated_application(payload: ApplicationPayload) -> ApplicationPayload:
    message = application_error(payload)
    if message:
        raise ValidationFailed(message)
    return normalize_application_payload(payload)


def normalize_task_payload(payload: TaskPayload) -> TaskPayload:
    return TaskPayload(
        title=(payload.title or "").strip(),
        due_at=payload.due_at,
        snooze_until=payload.snooze_until,
        notes=_or_none(payload.notes),
    )


def task_error(payload: TaskPayload) -> str:
    if len((payload.title or "").strip()) < 3:
        return "Task title must be at least 3 characters."
    return ""


def validated_task(payload: TaskPayload) -> TaskPayload:
    message = task_error(payload)
    if message:
        raise ValidationFailed(message)
    return normalize_task_payload(payload)


def matches_query(query: str, *values: Optional[str]) -> bool:
    """Case-insensitive substring match of ``query`` against any of ``values``."""
    q = normalize_ws(query).lower()
    if not q:
        return True
    return any(q in (v or "").lower() for v in values)
