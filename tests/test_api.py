"""
HTTP surface tests for the relay, run against an in-memory provider.

Run with: pytest tests/test_api.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest
from starlette.testclient import TestClient

from relay.app import create_app
from relay.http_client import LoggedHTTPClient
from relay.models import ProjectState
from shared.schemas import CompletedEvent


@pytest.fixture
def app(relay_settings, fake_gateway):
    return create_app(relay_settings, fake_gateway)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_generate_returns_sixteen_indexed_jobs(client, fake_gateway):
    r = client.post("/api/generate", json={"prompt": "battle scene"})

    assert r.status_code == 200
    body = r.json()
    assert body["projectId"] == "P1"
    assert [job["index"] for job in body["jobs"]] == list(range(16))
    assert len({job["id"] for job in body["jobs"]}) == 16

    prompts, render, seed = fake_gateway.started[0]
    assert len(prompts) == 16
    assert all("battle scene" in p for p in prompts)
    assert seed is None


def test_generate_passes_character_scene_and_seed(client, fake_gateway):
    r = client.post(
        "/api/generate",
        json={"prompt": "storm", "character": "Nami", "sceneType": "at sea", "seed": 77},
    )
    assert r.status_code == 200
    prompts, _, seed = fake_gateway.started[0]
    assert seed == 77
    assert all(p.startswith("Nami, storm, at sea") for p in prompts)


@pytest.mark.parametrize("payload", [{}, {"prompt": ""}, {"prompt": "   "}])
def test_generate_without_prompt_is_400(client, fake_gateway, payload):
    r = client.post("/api/generate", json=payload)
    assert r.status_code == 400
    assert r.json() == {"error": "Missing prompt"}
    assert fake_gateway.started == []


def test_generate_with_malformed_body_is_400(client):
    r = client.post("/api/generate", json={"prompt": "x", "seed": "not-a-number"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid request body"
    assert r.json()["detail"]


def test_generate_provider_failure_is_500(client, fake_gateway, provider_down, app):
    fake_gateway.start_error = provider_down
    r = client.post("/api/generate", json={"prompt": "battle scene"})

    assert r.status_code == 500
    assert "HTTP 503" in r.json()["error"]
    assert len(app.state.services.registry) == 0


def test_status_of_started_project(client):
    client.post("/api/generate", json={"prompt": "battle scene"})
    r = client.get("/api/status/P1")

    assert r.status_code == 200
    body = r.json()
    assert body["projectId"] == "P1"
    assert body["state"] == "pending"
    assert body["cancelled"] is False
    assert len(body["jobs"]) == 16
    assert body["jobs"][0] == {
        "id": "P1-J0", "index": 0, "progress": 0, "completed": False,
        "resultUrl": None, "positivePrompt": body["jobs"][0]["positivePrompt"],
    }


def test_status_of_unknown_project_is_404(client):
    r = client.get("/api/status/nope")
    assert r.status_code == 404
    assert r.json() == {"error": "Unknown project"}


def test_cancel_known_project(client, fake_gateway, app):
    client.post("/api/generate", json={"prompt": "battle scene"})
    r = client.get("/api/cancel/P1")

    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert fake_gateway.cancelled == ["P1"]
    assert "P1" not in app.state.services.registry
    assert client.get("/api/status/P1").status_code == 404


def test_cancel_unknown_project_is_ok(client, fake_gateway):
    r = client.get("/api/cancel/ghost")
    assert r.json() == {"ok": True}
    assert fake_gateway.cancelled == []


def test_cancel_upstream_failure_is_502(client, fake_gateway, provider_down, app):
    client.post("/api/generate", json={"prompt": "battle scene"})
    fake_gateway.cancel_error = provider_down

    r = client.get("/api/cancel/P1")

    assert r.status_code == 502
    assert r.json()["ok"] is False
    assert "P1" not in app.state.services.registry


def test_result_for_unknown_job_is_404(client):
    client.post("/api/generate", json={"prompt": "battle scene"})
    assert client.get("/api/result/P1/P1-J0").status_code == 404
    assert client.get("/api/result/ghost/J0").status_code == 404


@pytest.fixture
def cdn(monkeypatch):
    """Route the result proxy's outbound fetches to an in-memory CDN."""
    files = {}

    def handler(request):
        if str(request.url) not in files:
            return httpx.Response(500, text="storage error")
        return httpx.Response(200, content=files[str(request.url)], headers={"content-type": "image/png"})

    class CDNClient(LoggedHTTPClient):
        def __init__(self, service, **kwargs):
            super().__init__(service, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("relay.app.LoggedHTTPClient", CDNClient)
    return files


def _finish_job(app, url):
    app.state.services.registry.get("P1").job("P1-J0").complete(url, None)


def test_result_is_proxied(client, app, cdn):
    cdn["https://cdn.test/J0.png"] = b"\x89PNG-bytes"
    client.post("/api/generate", json={"prompt": "battle scene"})
    _finish_job(app, "https://cdn.test/J0.png")

    r = client.get("/api/result/P1/P1-J0")

    assert r.status_code == 200
    assert r.content == b"\x89PNG-bytes"
    assert r.headers["content-type"] == "image/png"
    assert r.headers["cache-control"] == "no-store"


def test_result_fetch_failure_is_502(client, app, cdn):
    client.post("/api/generate", json={"prompt": "battle scene"})
    _finish_job(app, "https://cdn.test/missing.png")

    r = client.get("/api/result/P1/P1-J0")

    assert r.status_code == 502
    assert "Result fetch failed" in r.json()["error"]


def _stream_events(response):
    return [json.loads(chunk[len("data: "):]) for chunk in response.text.split("\n\n") if chunk.startswith("data: ")]


def test_progress_for_unknown_project_ends_at_once(client, app):
    r = client.get("/api/progress/ghost")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert _stream_events(r) == [
        {"projectId": "ghost", "type": "failed", "error": "Unknown project", "category": "unknown", "cancelled": False}
    ]
    assert app.state.services.hub.subscriber_count("ghost") == 0


def test_progress_for_finished_project_replays_terminal_event(client, app):
    client.post("/api/generate", json={"prompt": "battle scene"})
    project = app.state.services.registry.get("P1")
    project.transition(ProjectState.COMPLETED)
    project.terminal_event = CompletedEvent()

    r = client.get("/api/progress/P1")

    assert _stream_events(r) == [{"projectId": "P1", "type": "completed"}]
    assert app.state.services.hub.subscriber_count("P1") == 0


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "env": "staging"}


def test_cors_allows_configured_origin(client):
    r = client.get("/api/health", headers={"Origin": "http://localhost:5173"})
    assert r.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_lifespan_closes_gateway(app, fake_gateway):
    with TestClient(app) as c:
        assert c.get("/api/health").status_code == 200
    assert fake_gateway.closed is True
