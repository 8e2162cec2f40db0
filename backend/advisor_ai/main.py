import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import AISettings, load_environment
from .core.errors import AIServiceError
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.metrics import record_http_request
from .core.middleware import TraceIDMiddleware
from .core.redis import close_redis, initialize_redis
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .routes import ai, chat, health, metrics, suitability
from .services.ai.orchestration import build_ai_orchestration_service

load_environment()

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# Configure distributed tracing (OTLP export only when an endpoint is set)
configure_tracing()

app = FastAPI(
    title="Advisor AI Orchestration API",
    description="Budgeted, cached and validated access to the LLM provider for adviser features",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Wire the AI orchestration service on application startup."""
    logger.info("app_startup_started")
    settings = AISettings.from_env()

    redis_client = None
    if settings.redis_url:
        redis_client = await initialize_redis(settings.redis_url)
        if redis_client is not None:
            logger.info("app_startup_redis_ready")
        else:
            logger.warning(
                "app_startup_redis_unavailable",
                message="Redis not available. Using in-memory stores (single process only).",
            )

    if not settings.llm_api_key:
        logger.warning(
            "app_startup_llm_key_missing",
            message="LLM_API_KEY is not set. AI calls will fail with upstream_permanent_error.",
        )

    app.state.settings = settings
    app.state.redis = redis_client
    app.state.ai_service = build_ai_orchestration_service(settings, redis_client=redis_client)
    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    service = getattr(app.state, "ai_service", None)
    if service is not None:
        await service.aclose()
    await close_redis(getattr(app.state, "redis", None))
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(status_code: int, content: dict, trace_id) -> JSONResponse:
    content = {**content, "status_code": status_code, "trace_id": trace_id}
    response = JSONResponse(status_code=status_code, content=content)
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(AIServiceError)
async def ai_service_exception_handler(request: Request, exc: AIServiceError):
    """Map typed AI errors to their HTTP status with a stable error code."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    set_span_status(StatusCode.ERROR if exc.http_status >= 500 else StatusCode.OK, exc.message)

    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "ai_service_error",
        error=exc.code,
        status_code=exc.http_status,
        detail=exc.message,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(exc.http_status, exc.to_dict(), trace_id)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    start_time = getattr(request.state, "start_time", time.time())
    duration = time.time() - start_time

    trace_id = get_trace_id() or get_trace_id_from_context()
    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, exc.detail)

    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=duration,
    )

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(exc.status_code, {"detail": exc.detail}, trace_id)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()

    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(500, {"detail": "Internal server error"}, trace_id)


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(ai.router, prefix="/ai", tags=["AI"])
app.include_router(suitability.router, prefix="/suitability", tags=["Suitability"])
app.include_router(chat.router, prefix="/chat", tags=["Chat"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
