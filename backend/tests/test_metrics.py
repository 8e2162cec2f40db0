"""
Unit tests for Prometheus metrics collection.

Tests verify:
- Endpoint normalization keeps label cardinality low
- RED metrics (Rate, Errors, Duration) are recorded correctly
- LLM, cache, budget and chat metrics are incremented/observed
- Metrics endpoint output is valid Prometheus format
"""
import pytest
from prometheus_client import REGISTRY

from advisor_ai.core.metrics import (
    get_metrics,
    get_metrics_content_type,
    normalize_endpoint,
    record_acknowledgment,
    record_budget_commit,
    record_budget_denial,
    record_chat_stream,
    record_chat_stream_started,
    record_http_request,
    record_llm_cache_hit,
    record_llm_request,
    record_llm_retry,
    record_llm_tokens,
)


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/ai/budget", "/ai/budget"),
        ("/ai/budget?date=today", "/ai/budget"),
        (
            "/chat/sessions/6f1c2a7e-93b4-4c1e-9d2f-0a8b7c6d5e4f/messages",
            "/chat/sessions/{id}/messages",
        ),
        ("/suitability/flag-sets/123/status", "/suitability/flag-sets/{id}/status"),
    ],
)
def test_normalize_endpoint(path, expected):
    assert normalize_endpoint(path) == expected


def test_record_http_request_success():
    before = sample("http_requests_total", method="GET", endpoint="/ai/budget", status="200")
    errors_before = sample("http_errors_total", method="GET", endpoint="/ai/budget", status_code="200")

    record_http_request("GET", "/ai/budget", 200, 0.01)

    assert sample("http_requests_total", method="GET", endpoint="/ai/budget", status="200") == before + 1
    assert sample("http_errors_total", method="GET", endpoint="/ai/budget", status_code="200") == errors_before


def test_record_http_request_error():
    before = sample("http_errors_total", method="POST", endpoint="/ai/recommendations", status_code="429")

    record_http_request("POST", "/ai/recommendations", 429, 0.02)

    assert sample("http_errors_total", method="POST", endpoint="/ai/recommendations", status_code="429") == before + 1


def test_record_http_request_duration():
    before = sample("http_request_duration_seconds_count", method="GET", endpoint="/health")

    record_http_request("GET", "/health", 200, 0.003)

    assert sample("http_request_duration_seconds_count", method="GET", endpoint="/health") == before + 1


def test_llm_metrics():
    requests_before = sample("llm_requests_total", feature="explain", mode="sync", outcome="success")
    prompt_before = sample("llm_tokens_total", feature="explain", kind="prompt")
    retries_before = sample("llm_retries_total", feature="explain", reason="transient")

    record_llm_request("explain", "sync", "success", 0.4)
    record_llm_tokens("explain", prompt_tokens=120, completion_tokens=0)
    record_llm_retry("explain", "transient")

    assert sample("llm_requests_total", feature="explain", mode="sync", outcome="success") == requests_before + 1
    assert sample("llm_tokens_total", feature="explain", kind="prompt") == prompt_before + 120
    assert sample("llm_retries_total", feature="explain", reason="transient") == retries_before + 1


def test_cache_hit_metric():
    before = sample("llm_cache_hits_total", feature="recommend")

    record_llm_cache_hit("recommend")

    assert sample("llm_cache_hits_total", feature="recommend") == before + 1


def test_budget_metrics():
    denials_before = sample("budget_denials_total")
    estimate_before = sample("budget_tokens_committed_total", source="estimate")

    record_budget_denial()
    record_budget_commit(300, source="estimate")
    record_budget_commit(0, source="estimate")

    assert sample("budget_denials_total") == denials_before + 1
    assert sample("budget_tokens_committed_total", source="estimate") == estimate_before + 300


def test_chat_stream_gauge_returns_to_baseline():
    active_before = sample("chat_active_streams")
    cancelled_before = sample("chat_streams_total", outcome="cancelled")

    record_chat_stream_started()
    assert sample("chat_active_streams") == active_before + 1
    record_chat_stream("cancelled")

    assert sample("chat_active_streams") == active_before
    assert sample("chat_streams_total", outcome="cancelled") == cancelled_before + 1


def test_acknowledgment_metric():
    before = sample("suitability_acknowledgments_total", result="already_acknowledged")

    record_acknowledgment(already_acknowledged=True)

    assert sample("suitability_acknowledgments_total", result="already_acknowledged") == before + 1


def test_metrics_exposition():
    record_http_request("GET", "/health", 200, 0.001)

    output = get_metrics().decode("utf-8")

    assert "# HELP http_requests_total" in output
    assert "# TYPE llm_requests_total counter" in output
    assert get_metrics_content_type().startswith("text/plain")
