"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: HTTP rate, errors, duration
- LLM Metrics: provider requests, latency, tokens, retries, schema failures
- Cache Metrics: result cache hits, misses, coalesced waits
- Budget Metrics: denials and committed tokens
- Chat / Suitability Metrics: stream outcomes, active streams, acknowledgments

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import re

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

# ============================================================================
# LLM METRICS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of provider calls by feature, mode and outcome",
    ["feature", "mode", "outcome"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Provider call latency in seconds",
    ["feature", "mode"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
    registry=registry,
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Tokens reported by the provider",
    ["feature", "kind"],  # kind: prompt | completion
    registry=registry,
)

llm_retries_total = Counter(
    "llm_retries_total",
    "Automatic retries by feature and reason",
    ["feature", "reason"],  # reason: transient | repair
    registry=registry,
)

llm_schema_validation_failures_total = Counter(
    "llm_schema_validation_failures_total",
    "Model outputs rejected by the output validator",
    ["feature"],
    registry=registry,
)

# ============================================================================
# CACHE METRICS
# ============================================================================

llm_cache_hits_total = Counter(
    "llm_cache_hits_total",
    "Result cache hits",
    ["feature"],
    registry=registry,
)

llm_cache_misses_total = Counter(
    "llm_cache_misses_total",
    "Result cache misses that led a new computation",
    ["feature"],
    registry=registry,
)

llm_cache_coalesced_total = Counter(
    "llm_cache_coalesced_total",
    "Callers that waited on an in-flight computation instead of calling upstream",
    ["feature"],
    registry=registry,
)

# ============================================================================
# BUDGET METRICS
# ============================================================================

budget_denials_total = Counter(
    "budget_denials_total",
    "Reservations denied by the budget ledger",
    registry=registry,
)

budget_tokens_committed_total = Counter(
    "budget_tokens_committed_total",
    "Tokens committed to the budget ledger",
    ["source"],  # source: usage | estimate
    registry=registry,
)

budget_tokens_over_estimate_total = Counter(
    "budget_tokens_over_estimate_total",
    "Reported usage above the reserved estimate (not charged)",
    registry=registry,
)

# ============================================================================
# CHAT / SUITABILITY METRICS
# ============================================================================

chat_streams_total = Counter(
    "chat_streams_total",
    "Chat message streams by terminal outcome",
    ["outcome"],  # completed | error | stalled | cancelled | cleared
    registry=registry,
)

chat_active_streams = Gauge(
    "chat_active_streams",
    "Chat message streams currently open",
    registry=registry,
)

suitability_acknowledgments_total = Counter(
    "suitability_acknowledgments_total",
    "Suitability flag acknowledgments",
    ["result"],  # acknowledged | already_acknowledged
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_ID_SEGMENT = re.compile(r"^(?:[0-9a-fA-F-]{16,}|\d+)$")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces identifier segments with ``{id}`` to avoid high cardinality.

    Examples:
        /chat/sessions/6f1c...e2/messages -> /chat/sessions/{id}/messages
        /ai/budget?x=1 -> /ai/budget
    """
    if "?" in path:
        path = path.split("?")[0]

    parts = ["{id}" if _ID_SEGMENT.match(part) else part for part in path.split("/")]
    return "/".join(parts)


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_llm_request(feature: str, mode: str, outcome: str, duration_seconds: float) -> None:
    llm_requests_total.labels(feature=feature, mode=mode, outcome=outcome).inc()
    llm_request_duration_seconds.labels(feature=feature, mode=mode).observe(duration_seconds)


def record_llm_tokens(feature: str, prompt_tokens: int, completion_tokens: int) -> None:
    if prompt_tokens:
        llm_tokens_total.labels(feature=feature, kind="prompt").inc(prompt_tokens)
    if completion_tokens:
        llm_tokens_total.labels(feature=feature, kind="completion").inc(completion_tokens)


def record_llm_retry(feature: str, reason: str) -> None:
    llm_retries_total.labels(feature=feature, reason=reason).inc()


def record_llm_schema_validation_failure(feature: str) -> None:
    llm_schema_validation_failures_total.labels(feature=feature).inc()


def record_llm_cache_hit(feature: str) -> None:
    llm_cache_hits_total.labels(feature=feature).inc()


def record_llm_cache_miss(feature: str) -> None:
    llm_cache_misses_total.labels(feature=feature).inc()


def record_llm_cache_coalesced(feature: str) -> None:
    llm_cache_coalesced_total.labels(feature=feature).inc()


def record_budget_denial() -> None:
    budget_denials_total.inc()


def record_budget_commit(tokens: int, source: str) -> None:
    if tokens > 0:
        budget_tokens_committed_total.labels(source=source).inc(tokens)


def record_budget_over_estimate(tokens: int) -> None:
    if tokens > 0:
        budget_tokens_over_estimate_total.inc(tokens)


def record_chat_stream_started() -> None:
    chat_active_streams.inc()


def record_chat_stream(outcome: str) -> None:
    """Record a finished chat stream (completed, error, stalled, cancelled, cleared)."""
    chat_active_streams.dec()
    chat_streams_total.labels(outcome=outcome).inc()


def record_acknowledgment(already_acknowledged: bool) -> None:
    result = "already_acknowledged" if already_acknowledged else "acknowledged"
    suitability_acknowledgments_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Get Prometheus metrics in text exposition format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Content type string for the Prometheus metrics endpoint."""
    return CONTENT_TYPE_LATEST
