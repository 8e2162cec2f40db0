"""
Middleware for trace ID propagation and request context management.

This middleware:
- Takes the trace ID from X-Trace-ID / X-Request-ID, the active OpenTelemetry
  span, or generates one
- Generates a unique request ID per request
- Binds the caller identity from X-User-ID into the logging context
- Records RED metrics and echoes the IDs in response headers
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    bind_request_context,
    clear_request_context,
    generate_request_id,
    generate_trace_id,
    get_logger,
)
from .metrics import record_http_request
from .tracing import get_trace_id_from_context, record_exception, set_span_attribute

logger = get_logger(__name__)

USER_ID_HEADER = "X-User-ID"


def _format_otel_trace_id(otel_trace_id: str) -> str:
    if len(otel_trace_id) == 32:
        return (
            f"{otel_trace_id[0:8]}-{otel_trace_id[8:12]}-{otel_trace_id[12:16]}"
            f"-{otel_trace_id[16:20]}-{otel_trace_id[20:32]}"
        )
    return otel_trace_id


class TraceIDMiddleware(BaseHTTPMiddleware):
    """Bind trace/request/user IDs to the request context and record RED metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = request.headers.get("X-Trace-ID") or request.headers.get("X-Request-ID")
        if not trace_id:
            otel_trace_id = get_trace_id_from_context()
            trace_id = _format_otel_trace_id(otel_trace_id) if otel_trace_id else generate_trace_id()

        request_id = generate_request_id()
        user_id = request.headers.get(USER_ID_HEADER)

        bind_request_context(trace_id=trace_id, request_id=request_id, user_id=user_id or None)
        if user_id:
            set_span_attribute("user.id", user_id)

        start_time = time.time()
        request.state.start_time = start_time
        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else None,
        )

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                process_time = time.time() - start_time
                record_exception(e)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=500,
                    duration_seconds=process_time,
                )
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=int(process_time * 1000),
                    exc_info=True,
                )
                raise

            process_time = time.time() - start_time
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration_seconds=process_time,
            )
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=int(process_time * 1000),
            )

            response.headers["X-Trace-ID"] = trace_id
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_request_context()
