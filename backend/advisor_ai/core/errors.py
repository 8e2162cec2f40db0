"""
Typed error taxonomy for the AI orchestration layer.

Every error surfaced to a caller derives from AIServiceError and carries a
stable machine-readable ``code`` plus the HTTP status the API layer maps it
to, so feature pages can render a degraded message instead of a generic
failure.

Acknowledging an already-acknowledged suitability item is not an error; the
flag store reports it through ``AcknowledgeResult.already_acknowledged``.
"""
from typing import Any, Dict, Optional


class AIServiceError(Exception):
    """Base class for all errors surfaced by the orchestration layer."""

    code = "ai_service_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class BudgetExceededError(AIServiceError):
    """Daily token allowance would be exceeded; never retried."""

    code = "budget_exceeded"
    http_status = 429

    def __init__(self, user_id: str, remaining: int, requested: int):
        super().__init__(
            f"Daily AI budget exceeded: requested {requested} tokens, {remaining} remaining",
            remaining=remaining,
            requested=requested,
        )
        self.user_id = user_id
        self.remaining = remaining
        self.requested = requested


class UpstreamUnavailableError(AIServiceError):
    """Provider unreachable or failing transiently after the retry budget."""

    code = "upstream_unavailable"
    http_status = 503


class UpstreamPermanentError(AIServiceError):
    """Provider rejected the call for a non-retryable reason (auth, model removed)."""

    code = "upstream_permanent_error"
    http_status = 502


class SchemaValidationError(AIServiceError):
    """Model output does not satisfy the feature's output contract."""

    code = "invalid_model_output"
    http_status = 502

    def __init__(self, feature: str, message: str, raw_output: Optional[str] = None):
        super().__init__(message, feature=feature)
        self.feature = feature
        self.raw_output = raw_output


class StreamStalledError(AIServiceError):
    """No delta arrived from the provider within the idle timeout."""

    code = "stream_stalled"
    http_status = 504


class NotFoundError(AIServiceError):
    code = "not_found"
    http_status = 404


class ForbiddenError(AIServiceError):
    code = "forbidden"
    http_status = 403


class ChatSessionBusyError(AIServiceError):
    """A message is already being processed for this chat session."""

    code = "busy"
    http_status = 409
