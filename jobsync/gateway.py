from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, TypeVar

import orjson
import requests
from pydantic import TypeAdapter, ValidationError
from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import MalformedResponse, NetworkError, ServerRejected
from .schemas import (
    ActivityResponse,
    Application,
    ApplicationPayload,
    AuditEvent,
    AuthResponse,
    DashboardSummary,
    ErrorBody,
    NextActions,
    Profile,
    Stage,
    StageEvent,
    Task,
    TaskPayload,
    TaskStatus,
)
from .settings import settings

# Gateway/proxy answers: the request may or may not have been processed upstream.
_AMBIGUOUS_STATUSES = {502, 503, 504}

_applications = TypeAdapter(List[Application])
_tasks = TypeAdapter(List[Task])
_stage_events = TypeAdapter(List[StageEvent])
_audit_events = TypeAdapter(List[AuditEvent])

T = TypeVar("T")


def _error_body(resp: requests.Response) -> ErrorBody:
    """Parse a non-2xx answer; the message falls back to the raw text, then the status."""
    text = (resp.text or "").strip()
    try:
        body = ErrorBody.model_validate(orjson.loads(resp.content)) if resp.content else ErrorBody()
    except (orjson.JSONDecodeError, ValidationError):
        body = ErrorBody()
    message = (body.message or "").strip() or text or f"Request failed ({resp.status_code})"
    return body.model_copy(update={"status": resp.status_code, "message": message})


def _parse(validate: Callable[[Any], T], data: Any) -> T:
    try:
        return validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Malformed response: {e.error_count()} invalid field(s)") from e


class RemoteGateway:
    """Authenticated JSON calls against the tracker API.

    Blocking ``requests`` calls run in a worker thread; every public method is a
    coroutine so callers on the event loop only suspend themselves.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_s: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token if token is not None else settings.api_token
        self.timeout_s = float(timeout_s or settings.api.get("timeout_s", 15))
        self._http = session or requests.Session()

    # -- transport -------------------------------------------------------

    def _headers(self, auth: bool, has_body: bool) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if has_body:
            headers["Content-Type"] = "application/json"
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        auth: bool = True,
    ) -> Any:
        data = orjson.dumps(body) if body is not None else None
        try:
            resp = self._http.request(
                method,
                f"{self.base_url}{path}",
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                data=data,
                headers=self._headers(auth, data is not None),
                timeout=self.timeout_s,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"Network error: {e}") from e

        if resp.status_code in _AMBIGUOUS_STATUSES:
            raise NetworkError(f"Network error: upstream answered {resp.status_code}")
        if not 200 <= resp.status_code < 300:
            err = _error_body(resp)
            raise ServerRejected(resp.status_code, err.message, err.error)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return orjson.loads(resp.content)
        except orjson.JSONDecodeError as e:
            raise MalformedResponse(f"Malformed JSON response ({resp.status_code})") from e

    def _send_with_retry(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        cfg = settings.retries
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(int(cfg.get("max_attempts", 3))),
            wait=wait_exponential(
                multiplier=cfg.get("backoff_initial_ms", 300) / 1000,
                min=cfg.get("backoff_initial_ms", 300) / 1000,
                max=cfg.get("backoff_max_ms", 3000) / 1000,
            ),
            retry=retry_if_exception_type(NetworkError) & retry_if_not_exception_type(MalformedResponse),
        )
        for attempt in retrying:
            with attempt:
                return self._send("GET", path, params=params)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._send_with_retry, path, params)

    async def _write(self, method: str, path: str, body: Any = None, auth: bool = True) -> Any:
        # Never retried: a lost answer to a write is an ambiguous outcome
        return await asyncio.to_thread(self._send, method, path, None, body, auth)

    # -- auth --------------------------------------------------------------

    async def signup(self, email: str, password: str) -> AuthResponse:
        data = await self._write("POST", "/auth/signup", {"email": email, "password": password}, auth=False)
        return _parse(AuthResponse.model_validate, data)

    async def login(self, email: str, password: str) -> AuthResponse:
        data = await self._write("POST", "/auth/login", {"email": email, "password": password}, auth=False)
        return _parse(AuthResponse.model_validate, data)

    async def me(self) -> Profile:
        return _parse(Profile.model_validate, await self._get("/me"))

    # -- applications ------------------------------------------------------

    async def list_applications(self, stage: Optional[Stage] = None) -> List[Application]:
        params = {"stage": stage.value} if stage else None
        return _parse(_applications.validate_python, await self._get("/applications", params) or [])

    async def create_application(self, payload: ApplicationPayload) -> Application:
        return _parse(Application.model_validate, await self._write("POST", "/applications", payload.to_wire()))

    async def update_application(self, application_id: int, payload: ApplicationPayload) -> Application:
        data = await self._write("PUT", f"/applications/{application_id}", payload.to_wire())
        return _parse(Application.model_validate, data)

    async def transition_stage(self, application_id: int, stage: Stage) -> Application:
        data = await self._write("PATCH", f"/applications/{application_id}/stage", {"stage": stage.value})
        return _parse(Application.model_validate, data)

    async def delete_application(self, application_id: int) -> None:
        await self._write("DELETE", f"/applications/{application_id}")

    async def list_stage_events(self, application_id: int) -> List[StageEvent]:
        data = await self._get(f"/applications/{application_id}/stage-events")
        return _parse(_stage_events.validate_python, data or [])

    async def list_stale_applications(self, days: int) -> List[Application]:
        data = await self._get("/applications/stale", {"days": int(days)})
        return _parse(_applications.validate_python, data or [])

    # -- tasks -------------------------------------------------------------

    async def list_tasks(self, application_id: int) -> List[Task]:
        return _parse(_tasks.validate_python, await self._get(f"/applications/{application_id}/tasks") or [])

    async def create_task(self, application_id: int, payload: TaskPayload) -> Task:
        data = await self._write("POST", f"/applications/{application_id}/tasks", payload.to_wire())
        return _parse(Task.model_validate, data)

    async def update_task(self, task_id: int, payload: TaskPayload) -> Task:
        return _parse(Task.model_validate, await self._write("PUT", f"/tasks/{task_id}", payload.to_wire()))

    async def update_task_status(self, task_id: int, status: TaskStatus) -> Task:
        data = await self._write("PATCH", f"/tasks/{task_id}/status", {"status": status.value})
        return _parse(Task.model_validate, data)

    async def delete_task(self, task_id: int) -> None:
        await self._write("DELETE", f"/tasks/{task_id}")

    async def list_tasks_due_today(self) -> List[Task]:
        return _parse(_tasks.validate_python, await self._get("/tasks/due/today") or [])

    async def list_tasks_due_week(self) -> List[Task]:
        return _parse(_tasks.validate_python, await self._get("/tasks/due/week") or [])

    async def list_tasks_overdue(self) -> List[Task]:
        return _parse(_tasks.validate_python, await self._get("/tasks/overdue") or [])

    # -- dashboard / audit -------------------------------------------------

    async def dashboard_summary(self) -> DashboardSummary:
        return _parse(DashboardSummary.model_validate, await self._get("/dashboard/summary") or {})

    async def dashboard_next_actions(self, days: int) -> NextActions:
        data = await self._get("/dashboard/next-actions", {"days": int(days)})
        return _parse(NextActions.model_validate, data or {})

    async def dashboard_activity(self, days: int) -> ActivityResponse:
        data = await self._get("/dashboard/activity", {"days": int(days)})
        return _parse(ActivityResponse.model_validate, data or {"days": days})

    async def list_audit_events(self, page: int = 0, size: int = 25) -> List[AuditEvent]:
        data = await self._get("/audit-events", {"page": int(page), "size": int(size)})
        # Some deployments wrap the page in {"content": [...]}
        if isinstance(data, dict):
            data = data.get("content", [])
        return _parse(_audit_events.validate_python, data or [])
