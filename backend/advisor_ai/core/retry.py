"""
Retry policy for provider calls.

A policy is a plain object (max attempts, backoff function, retryable-error
predicate) so every call site states its retry behavior explicitly and each
policy can be tested without a provider.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def exponential_backoff(base_seconds: float = 0.5, max_seconds: float = 8.0) -> Callable[[int], float]:
    """Backoff function: base * 2**(attempt - 1), capped at max_seconds."""

    def _delay(attempt: int) -> float:
        return min(max_seconds, base_seconds * (2 ** max(0, attempt - 1)))

    return _delay


def never_retry(exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        backoff: Maps the number of the failed attempt (1-based) to a delay in seconds
        retryable: Predicate deciding whether an exception may be retried
    """

    max_attempts: int = 2
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retryable: Callable[[BaseException], bool] = never_retry

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """True when ``attempt`` (1-based) failed with ``exc`` and another is allowed."""
        return attempt < self.max_attempts and self.retryable(exc)

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        on_retry: Optional[Callable[[BaseException, int], None]] = None,
    ) -> T:
        """
        Run ``operation(attempt)`` until it succeeds or the policy gives up.

        The last exception is re-raised unchanged.
        """
        attempt = 1
        while True:
            try:
                return await operation(attempt)
            except Exception as exc:
                if not self.should_retry(exc, attempt):
                    raise
                delay = self.backoff(attempt)
                if on_retry is not None:
                    on_retry(exc, attempt)
                logger.info(
                    "retry_scheduled",
                    attempt=attempt,
                    delay_seconds=delay,
                    error_type=type(exc).__name__,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                attempt += 1
