import asyncio
import json
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from src.classutp.api import create_app
from src.classutp.pool import BrowserPool
from src.classutp.service import ScheduleService

from conftest import VALID_PASSWORD, VALID_USERNAME, make_config

GOOD = {"username": VALID_USERNAME, "password": VALID_PASSWORD}
BAD = {"username": VALID_USERNAME, "password": "incorrecta"}


def _client(launcher, **overrides) -> TestClient:
    config = make_config(**overrides)
    service = ScheduleService(config, pool=BrowserPool.from_config(launcher, config))
    return TestClient(create_app(config, service))


def _sse_events(body: str) -> list:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_fetch_events_returns_schedule(launcher):
    with _client(launcher) as client:
        response = client.post("/api/events", json=GOOD)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["studentName"] == "Juan Pérez"
    assert body["weekInfo"]["currentWeek"] == "Semana 7"
    classes = [e for e in body["events"] if e["kind"] == "class"]
    assert len(classes) == 1
    assert classes[0]["day"] == "Lunes"
    spans = [e for e in body["events"] if e["kind"] == "course-span"]
    assert spans[0]["day"] == "entire term"


def test_wrong_password_is_401_and_frees_everything(launcher):
    with _client(launcher) as client:
        response = client.post("/api/events", json=BAD)
        status = client.get("/status").json()
        health = client.get("/health").json()

    assert response.status_code == 401
    assert response.json()["success"] is False
    assert response.json()["code"] == "InvalidCredentials"
    assert status["busy"] is False
    assert status["mode"] == "single"
    assert health["status"] == "ok"
    assert health["pool"]["inUse"] == 0


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"username": VALID_USERNAME},
        {"username": "ab", "password": VALID_PASSWORD},
        {"username": VALID_USERNAME, "password": "123"},
        {"username": 123, "password": VALID_PASSWORD},
    ],
)
def test_invalid_input_is_400(launcher, body):
    with _client(launcher) as client:
        response = client.post("/api/events", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "InvalidInput"
    assert launcher.launches == 0


def test_malformed_json_is_400(launcher):
    with _client(launcher) as client:
        response = client.post(
            "/api/events", content=b"{no json", headers={"Content-Type": "application/json"}
        )

    assert response.status_code == 400


def test_stream_reports_progress_then_done(launcher):
    with _client(launcher) as client:
        response = client.get("/api/events-stream", params=GOOD)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    tags = [tag for tag, _ in events]
    assert tags[0] == "status"
    assert [t for t in tags if t != "status"] == ["name", "courses", "week", "events", "done"]
    assert events[-1][1]["success"] is True
    assert VALID_PASSWORD not in response.text


def test_stream_accepts_post_body(launcher):
    with _client(launcher) as client:
        response = client.post("/api/events-stream", json=GOOD)

    assert _sse_events(response.text)[-1][0] == "done"


def test_stream_ends_with_error_event_on_bad_login(launcher):
    with _client(launcher) as client:
        response = client.get("/api/events-stream", params=BAD)
        busy = client.get("/status").json()["busy"]

    tag, payload = _sse_events(response.text)[-1]
    assert tag == "error"
    assert payload["code"] == "InvalidCredentials"
    assert payload["step"] == "authenticate"
    assert busy is False


def test_stream_validates_before_streaming(launcher):
    with _client(launcher) as client:
        response = client.get("/api/events-stream", params={"username": VALID_USERNAME})

    assert response.status_code == 400
    assert response.json()["code"] == "InvalidInput"


def test_busy_gate_is_503_with_retry_after(launcher):
    with _client(launcher, busy_retry_after_seconds=15) as client:
        gate = client.app.state.service.gate
        ticket = gate.admit(owner="U19***01")
        busy = client.get("/status").json()
        response = client.post("/api/events", json=GOOD)
        gate.release(ticket)
        retry = client.post("/api/events", json=GOOD)

    assert busy["busy"] is True
    assert busy["currentSessionMasked"] == "U19***01"
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "15"
    assert response.json()["code"] == "CapacityRejected"
    assert retry.status_code == 200


def test_rate_limit_is_429(launcher):
    with _client(launcher, rate_limit_requests=1) as client:
        first = client.post("/api/events", json=GOOD)
        second = client.post("/api/events", json=GOOD)
        other = client.post("/api/events", json=GOOD, headers={"X-Forwarded-For": "10.1.1.1, 10.0.0.1"})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["code"] == "RateLimitExceeded"
    assert int(second.headers["Retry-After"]) >= 1
    assert other.status_code == 200


def test_cors_preflight_allows_configured_origin(launcher):
    with _client(launcher, allowed_origins=["http://localhost:5173"]) as client:
        response = client.options(
            "/api/events",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_stream_client_disconnect_releases_session(launcher, portal):
    portal.goto_sleep = 5
    config = make_config()
    service = ScheduleService(config, pool=BrowserPool.from_config(launcher, config))
    app = create_app(config, service)
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/api/events-stream",
        "raw_path": b"/api/events-stream",
        "root_path": "",
        "query_string": urlencode(GOOD).encode(),
        "headers": [(b"host", b"testserver")],
        "client": ("10.0.0.5", 50000),
        "server": ("testserver", 80),
    }

    async def scenario():
        await service.start()
        disconnected = asyncio.Event()
        requested = False
        sent = []

        async def receive():
            nonlocal requested
            if not requested:
                requested = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        request = asyncio.create_task(app(scope, receive, send))
        await asyncio.wait_for(portal.goto_started.wait(), 1)
        busy_mid = service.gate.busy
        disconnected.set()
        await asyncio.wait_for(request, 2)

        for _ in range(100):
            if not service.gate.busy and service.pool.stats().in_use == 0:
                break
            await asyncio.sleep(0.01)
        stats = service.pool.stats()
        busy_after = service.gate.busy
        await service.shutdown()
        return busy_mid, busy_after, stats, sent

    busy_mid, busy_after, stats, sent = asyncio.run(scenario())

    assert busy_mid is True
    assert busy_after is False
    assert stats.in_use == 0
    assert launcher.open_contexts() == 0
    assert not any(m.get("more_body") is False for m in sent)
