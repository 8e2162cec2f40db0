"""
Structured logging for the orchestration layer (structlog, JSON lines).

Every entry carries ``service``, an ISO-8601 ``timestamp`` and, when bound
for the current request, ``trace_id``, ``request_id`` and ``user_id``.

Prompt text, document text and credentials never reach the log stream:
fields with those names are replaced by a redaction marker (nested mappings
included).
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import structlog
from structlog.types import Processor

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

_CONTEXT_FIELDS = (
    ("trace_id", trace_id_var),
    ("request_id", request_id_var),
    ("user_id", user_id_var),
)

SERVICE_NAME = "advisor_ai_core"

REDACTED = "***REDACTED***"
SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "authorization",
        "document_text",
        "messages",
        "prompt",
        "secret",
        "password",
    }
)


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_FIELDS else _redact(item)
            for key, item in value.items()
        }
    return value


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace sensitive values (top level and nested mappings) with a marker."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = REDACTED
        elif isinstance(event_dict[key], Mapping):
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Add request correlation fields and the service name.

    Values passed explicitly to the log call win over the request context,
    e.g. ``logger.info("budget_reservation_denied", user_id=...)``.
    """
    for field, var in _CONTEXT_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(field, value)

    event_dict["service"] = SERVICE_NAME
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level name
        service_name: Overrides SERVICE_NAME
        json_output: JSON lines when True, human-readable console output otherwise
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_trace_context,
        redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Bind correlation fields for the current request (None leaves a field unset)."""
    trace_id_var.set(trace_id)
    request_id_var.set(request_id)
    user_id_var.set(user_id)


def clear_request_context() -> None:
    bind_request_context()


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_user_id(user_id: Optional[str]) -> None:
    user_id_var.set(user_id)


def get_user_id() -> Optional[str]:
    return user_id_var.get()


def generate_request_id() -> str:
    return str(uuid.uuid4())


def generate_trace_id() -> str:
    return str(uuid.uuid4())
