"""
Integration tests for the HTTP API.

The app's startup wires a default service; each test then swaps in a service
built on StubProvider so no real provider is contacted.
"""
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from advisor_ai.main import app
from advisor_ai.services.ai.llm_client import TokenUsage

from conftest import CANDIDATES, CLIENT_PROFILE, RECOMMENDATION, SUITABILITY, StubProvider, make_service

USER = {"X-User-ID": "adviser-1"}


@pytest.fixture
def provider():
    return StubProvider(
        responses=[RECOMMENDATION],
        streams=[["Hello", " there", TokenUsage(prompt_tokens=5, completion_tokens=2)]],
    )


@pytest.fixture
def client(provider, monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    with TestClient(app) as test_client:
        app.state.ai_service = make_service(provider)
        yield test_client


def parse_sse(body):
    frames = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        frames.append((lines["event"], json.loads(lines["data"])))
    return frames


def test_health(client):
    response = client.get("/health/")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["stores"] == "memory"


def test_trace_id_echoed(client):
    response = client.get("/health/", headers={"X-Trace-ID": "trace-abc"})

    assert response.headers["X-Trace-ID"] == "trace-abc"


def test_missing_user_header_is_unauthorized(client):
    response = client.post(
        "/ai/recommendations",
        json={"client_profile": CLIENT_PROFILE, "candidate_products": CANDIDATES},
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Missing X-User-ID header"


def test_recommendations(client, provider):
    response = client.post(
        "/ai/recommendations",
        json={"client_profile": CLIENT_PROFILE, "candidate_products": CANDIDATES},
        headers=USER,
    )

    assert response.status_code == 200
    assert [item["product_id"] for item in response.json()["recommendations"]] == ["p-1", "p-2"]
    assert len(provider.calls) == 1


def test_empty_candidates_rejected(client, provider):
    response = client.post(
        "/ai/recommendations",
        json={"client_profile": CLIENT_PROFILE, "candidate_products": []},
        headers=USER,
    )

    assert response.status_code == 422
    assert provider.calls == []


def test_budget_exceeded_maps_to_429(client, provider):
    app.state.ai_service = make_service(provider, daily_token_limit=10)

    response = client.post(
        "/ai/explanations",
        json={"quote_snapshot": {"premium": 120}},
        headers=USER,
    )

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "budget_exceeded"
    assert body["context"]["remaining"] == 10
    assert provider.calls == []


def test_budget_endpoint(client):
    client.post(
        "/ai/recommendations",
        json={"client_profile": CLIENT_PROFILE, "candidate_products": CANDIDATES},
        headers=USER,
    )

    response = client.get("/ai/budget", headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == "adviser-1"
    assert body["tokens_consumed"] == 150
    assert body["remaining"] == body["limit"] - 150
    assert body["date"] == datetime.now(timezone.utc).date().isoformat()


def test_suitability_acknowledgment_flow(client):
    app.state.ai_service = make_service(StubProvider(responses=[SUITABILITY]))

    created = client.post(
        "/ai/suitability",
        json={
            "application_id": "app-1",
            "application_snapshot": {"annual_income": 18000},
            "product": {"product_id": "p-1"},
        },
        headers=USER,
    )
    assert created.status_code == 200
    assert created.json()["passed"] is False
    assert created.json()["all_acknowledged"] is False
    flag_set_id = created.json()["flag_set"]["id"]

    ack = client.post(
        f"/suitability/flag-sets/{flag_set_id}/items/income-mismatch/acknowledge",
        json={"reason": "Income verified by payslip"},
        headers=USER,
    )
    assert ack.status_code == 200
    assert ack.json()["already_acknowledged"] is False
    assert ack.json()["all_acknowledged"] is True
    assert ack.json()["flag"]["acknowledgment"]["acknowledged_by"] == "adviser-1"

    again = client.post(
        f"/suitability/flag-sets/{flag_set_id}/items/income-mismatch/acknowledge",
        json={"reason": "Second reason"},
        headers=USER,
    )
    assert again.json()["already_acknowledged"] is True

    status = client.get(f"/suitability/flag-sets/{flag_set_id}/status", headers=USER)
    assert status.json()["all_acknowledged"] is True
    assert status.json()["pending_blocking_items"] == []

    history = client.get("/suitability/applications/app-1/flag-sets", headers=USER)
    assert [flag_set["id"] for flag_set in history.json()] == [flag_set_id]


def test_acknowledge_unknown_item_is_404(client):
    app.state.ai_service = make_service(StubProvider(responses=[SUITABILITY]))
    created = client.post(
        "/ai/suitability",
        json={"application_id": "app-1", "application_snapshot": {}, "product": {"product_id": "p-1"}},
        headers=USER,
    )
    flag_set_id = created.json()["flag_set"]["id"]

    response = client.post(
        f"/suitability/flag-sets/{flag_set_id}/items/no-such-item/acknowledge",
        json={"reason": "ok"},
        headers=USER,
    )

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_chat_stream_and_history(client):
    created = client.post("/chat/sessions", json={"context": {"client_name": "Jane"}}, headers=USER)
    assert created.status_code == 201
    session_id = created.json()["session_id"]

    response = client.post(f"/chat/sessions/{session_id}/messages", json={"text": "hi"}, headers=USER)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = parse_sse(response.text)
    assert frames == [
        ("delta", {"text": "Hello", "index": 0}),
        ("delta", {"text": " there", "index": 1}),
        (
            "final",
            {"text": "Hello there", "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
        ),
    ]

    history = client.get(f"/chat/sessions/{session_id}/messages", headers=USER)
    assert [(m["role"], m["content"]) for m in history.json()["messages"]] == [
        ("user", "hi"),
        ("assistant", "Hello there"),
    ]


def test_chat_foreign_session_forbidden(client):
    session_id = client.post("/chat/sessions", json={}, headers=USER).json()["session_id"]

    response = client.post(
        f"/chat/sessions/{session_id}/messages",
        json={"text": "hi"},
        headers={"X-User-ID": "someone-else"},
    )

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_chat_clear_session(client):
    session_id = client.post("/chat/sessions", json={}, headers=USER).json()["session_id"]

    deleted = client.delete(f"/chat/sessions/{session_id}", headers=USER)
    missing = client.get(f"/chat/sessions/{session_id}/messages", headers=USER)

    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_metrics_endpoint(client):
    client.get("/health/")

    response = client.get("/metrics/")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
