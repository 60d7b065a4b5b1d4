from __future__ import annotations

import asyncio

import orjson
import pytest
import requests

from jobsync.errors import MalformedResponse, NetworkError, ServerRejected
from jobsync.gateway import RemoteGateway
from jobsync.schemas import ApplicationPayload, Stage, TaskStatus
from jobsync.settings import settings


def _response(status, body=None, text=None):
    resp = requests.Response()
    resp.status_code = status
    resp.encoding = "utf-8"
    if body is not None:
        resp._content = orjson.dumps(body)
    else:
        resp._content = (text or "").encode("utf-8")
    return resp


@pytest.fixture
def sent(monkeypatch):
    """Replace the HTTP layer; tests push responses (or exceptions) onto ``replies``."""
    monkeypatch.setitem(settings.retries, "max_attempts", 3)
    monkeypatch.setitem(settings.retries, "backoff_initial_ms", 0)
    monkeypatch.setitem(settings.retries, "backoff_max_ms", 0)
    log = {"requests": [], "replies": []}

    def fake_request(self, method, url, params=None, data=None, headers=None, timeout=None):
        log["requests"].append(
            {"method": method, "url": url, "params": params, "data": data, "headers": headers or {}}
        )
        reply = log["replies"].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(requests.Session, "request", fake_request)
    return log


@pytest.fixture
def remote():
    return RemoteGateway(base_url="http://api.test/api/", token="tok-123", timeout_s=5)


APP = {
    "id": 7,
    "company": "Acme",
    "role": "Engineer",
    "stage": "APPLIED",
    "jobUrl": "https://acme.example/jobs/1",
    "lastTouchAt": "2026-03-04T11:00:00",
    "stageChangedAt": "2026-03-04T11:00:00",
}


def test_bearer_token_and_stage_filter(sent, remote):
    sent["replies"].append(_response(200, [APP]))

    apps = asyncio.run(remote.list_applications(Stage.APPLIED))

    req = sent["requests"][0]
    assert req["method"] == "GET"
    assert req["url"] == "http://api.test/api/applications"
    assert req["params"] == {"stage": "APPLIED"}
    assert req["headers"]["Authorization"] == "Bearer tok-123"
    assert apps[0].job_url == "https://acme.example/jobs/1"
    assert apps[0].stage is Stage.APPLIED


def test_login_sends_no_token(sent, remote):
    sent["replies"].append(_response(200, {"token": "fresh", "userId": "u-1", "email": "a@b.co"}))

    auth = asyncio.run(remote.login("a@b.co", "secret"))

    req = sent["requests"][0]
    assert "Authorization" not in req["headers"]
    assert orjson.loads(req["data"]) == {"email": "a@b.co", "password": "secret"}
    assert auth.token == "fresh"


def test_write_bodies_use_camel_case(sent, remote):
    sent["replies"].append(_response(201, APP))

    asyncio.run(remote.create_application(ApplicationPayload(company="Acme", role="Engineer", job_url="https://x.io")))

    req = sent["requests"][0]
    assert req["method"] == "POST"
    assert orjson.loads(req["data"])["jobUrl"] == "https://x.io"
    assert req["headers"]["Content-Type"] == "application/json"


def test_status_patch_path(sent, remote):
    sent["replies"].append(
        _response(200, {"id": 3, "applicationId": 7, "title": "Call", "status": "DONE", "completedAt": "2026-03-04T11:00:01"})
    )

    task = asyncio.run(remote.update_task_status(3, TaskStatus.DONE))

    req = sent["requests"][0]
    assert (req["method"], req["url"]) == ("PATCH", "http://api.test/api/tasks/3/status")
    assert orjson.loads(req["data"]) == {"status": "DONE"}
    assert task.status is TaskStatus.DONE


def test_rejection_message_from_json_body(sent, remote):
    sent["replies"].append(_response(409, {"status": 409, "error": "Conflict", "message": "Invalid stage transition"}))

    with pytest.raises(ServerRejected) as info:
        asyncio.run(remote.transition_stage(7, Stage.OFFER))

    assert info.value.status == 409
    assert info.value.is_conflict
    assert info.value.message == "Invalid stage transition"
    assert info.value.error == "Conflict"


def test_rejection_message_falls_back_to_text_then_status(sent, remote):
    sent["replies"].append(_response(400, text="bad things"))
    sent["replies"].append(_response(500))

    with pytest.raises(ServerRejected, match="bad things"):
        asyncio.run(remote.delete_task(3))
    with pytest.raises(ServerRejected, match=r"Request failed \(500\)"):
        asyncio.run(remote.delete_task(3))


def test_no_content_is_none(sent, remote):
    sent["replies"].append(_response(204))
    assert asyncio.run(remote.delete_application(7)) is None


def test_gateway_statuses_are_network_errors(sent, remote):
    sent["replies"].append(_response(503))
    with pytest.raises(NetworkError):
        asyncio.run(remote.update_task_status(3, TaskStatus.OPEN))


def test_get_is_retried_on_network_failure(sent, remote):
    sent["replies"].extend([requests.ConnectionError("refused"), _response(200, [])])

    assert asyncio.run(remote.list_tasks(7)) == []
    assert len(sent["requests"]) == 2


def test_get_gives_up_after_max_attempts(sent, remote):
    sent["replies"].extend([requests.Timeout("slow")] * 3)

    with pytest.raises(NetworkError):
        asyncio.run(remote.me())
    assert len(sent["requests"]) == 3


def test_writes_are_never_retried(sent, remote):
    sent["replies"].append(requests.ConnectionError("refused"))

    with pytest.raises(NetworkError):
        asyncio.run(remote.transition_stage(7, Stage.OFFER))
    assert len(sent["requests"]) == 1


def test_rejections_are_not_retried(sent, remote):
    sent["replies"].append(_response(404, {"message": "Application not found"}))

    with pytest.raises(ServerRejected):
        asyncio.run(remote.list_stage_events(99))
    assert len(sent["requests"]) == 1


def test_stale_and_dashboard_queries(sent, remote):
    sent["replies"].extend(
        [
            _response(200, [APP]),
            _response(200, {"days": 30, "items": [{"date": "2026-03-04", "stageTransitions": 2, "taskCompletions": 1}]}),
        ]
    )

    stale = asyncio.run(remote.list_stale_applications(14))
    activity = asyncio.run(remote.dashboard_activity(30))

    assert sent["requests"][0]["url"] == "http://api.test/api/applications/stale"
    assert sent["requests"][0]["params"] == {"days": 14}
    assert stale[0].id == 7
    assert sent["requests"][1]["params"] == {"days": 30}
    assert activity.items[0].stage_transitions == 2


def test_audit_page_unwraps_content(sent, remote):
    sent["replies"].append(_response(200, {"content": [{"id": 1, "type": "TASK_CREATED"}], "totalElements": 1}))

    events = asyncio.run(remote.list_audit_events(0, 10))

    assert sent["requests"][0]["params"] == {"page": 0, "size": 10}
    assert [e.type for e in events] == ["TASK_CREATED"]


def test_wrong_shape_write_answer_is_an_unknown_outcome(sent, remote):
    sent["replies"].append(_response(200, {"message": "ok"}))

    with pytest.raises(MalformedResponse, match="Malformed response") as info:
        asyncio.run(remote.transition_stage(7, Stage.APPLIED))

    # classified with network failures: the write may have landed
    assert isinstance(info.value, NetworkError)
    assert len(sent["requests"]) == 1


def test_wrong_shape_list_is_not_retried(sent, remote):
    sent["replies"].append(_response(200, [{"id": 3, "title": "Call"}]))

    with pytest.raises(MalformedResponse):
        asyncio.run(remote.list_tasks(7))
    assert len(sent["requests"]) == 1


def test_unparseable_json_is_malformed(sent, remote):
    sent["replies"].append(_response(200, text="<html>proxy login</html>"))

    with pytest.raises(MalformedResponse, match=r"Malformed JSON response \(200\)"):
        asyncio.run(remote.list_audit_events())
    assert len(sent["requests"]) == 1
