"""
Model Gateway: the only component that talks to the LLM provider.

Responsibilities:
- Sync calls with a hard deadline and a bounded retry policy for transient
  failures (network, timeout, throttling, 5xx)
- Streaming calls delivered as a cancellable DeltaStream with a per-delta
  idle timeout; a stream is only retried before its first delta
- Settling the caller's budget reservation: actual usage on success, the
  full estimate on unrecoverable failure, stall or cancellation

NON-responsibilities:
- Does NOT reserve budget (callers reserve before calling)
- Does NOT validate model output
- Does NOT cache
"""
import asyncio
import math
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from advisor_ai.core.errors import (
    StreamStalledError,
    UpstreamPermanentError,
    UpstreamUnavailableError,
)
from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import record_llm_request, record_llm_retry, record_llm_tokens
from advisor_ai.core.retry import RetryPolicy, exponential_backoff
from advisor_ai.core.tracing import (
    StatusCode,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)
from advisor_ai.services.ai.budget import BudgetLedger, Reservation
from advisor_ai.services.ai.llm_client import (
    OpenAICompatibleProvider,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
    ProviderUsage,
    TokenUsage,
)
from advisor_ai.services.ai.prompts import CHARS_PER_TOKEN, CompiledPrompt
from advisor_ai.services.ai.schema import Feature
from advisor_ai.services.ai.streaming import (
    END_OF_STREAM,
    CancellationToken,
    DeltaEvent,
    DeltaStream,
    ErrorEvent,
    FinalEvent,
    StreamCancelled,
    StreamEvent,
    next_item,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelRequest:
    feature: Feature
    prompt: CompiledPrompt
    estimated_tokens: int
    json_mode: bool = True


@dataclass(frozen=True)
class ModelResponse:
    feature: Feature
    text: str
    usage: TokenUsage
    model_id: str
    attempts: int


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderTransientError)


def default_retry_policy(max_retries: int = 1, backoff_seconds: float = 0.5) -> RetryPolicy:
    """One retry (by default) for transient provider errors, exponential backoff."""
    return RetryPolicy(
        max_attempts=1 + max_retries,
        backoff=exponential_backoff(backoff_seconds),
        retryable=is_transient,
    )


def fallback_usage(request: ModelRequest, text: str) -> TokenUsage:
    """Usage estimate for providers that do not report usage."""
    prompt_tokens = max(0, request.estimated_tokens - request.prompt.max_tokens)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=math.ceil(len(text) / CHARS_PER_TOKEN),
    )


class ModelGateway:
    """
    Sync and streaming access to the provider.

    Args:
        provider: Provider client
        ledger: Budget ledger used to settle reservations
        model_id: Model name sent to the provider
        sync_timeout_seconds: Hard deadline per sync attempt
        stream_idle_timeout_seconds: Max silence between stream items
        retry_policy: Retry policy for transient failures
    """

    def __init__(
        self,
        provider: OpenAICompatibleProvider,
        ledger: BudgetLedger,
        model_id: str,
        sync_timeout_seconds: float = 30.0,
        stream_idle_timeout_seconds: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.provider = provider
        self.ledger = ledger
        self.model_id = model_id
        self.sync_timeout_seconds = sync_timeout_seconds
        self.stream_idle_timeout_seconds = stream_idle_timeout_seconds
        self.retry_policy = retry_policy or default_retry_policy()

    async def invoke(self, request: ModelRequest, reservation: Reservation) -> ModelResponse:
        """
        Sync call.

        Raises:
            UpstreamUnavailableError: transient failures exhausted the retry policy
            UpstreamPermanentError: the provider rejected the call
        """
        feature = request.feature.value
        started = time.perf_counter()
        attempts = 0

        async def _attempt(attempt: int):
            nonlocal attempts
            attempts = attempt
            try:
                return await asyncio.wait_for(
                    self.provider.complete(
                        self.model_id,
                        request.prompt.messages,
                        request.prompt.max_tokens,
                        json_mode=request.json_mode,
                    ),
                    timeout=self.sync_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise ProviderTransientError(
                    f"Provider call exceeded {self.sync_timeout_seconds:g}s deadline"
                ) from exc

        def _on_retry(exc: BaseException, attempt: int) -> None:
            record_llm_retry(feature, "transient")
            logger.warning(
                "llm_call_retrying",
                feature=feature,
                attempt=attempt,
                error=str(exc),
            )

        tracer = get_tracer()
        with tracer.start_as_current_span("llm.invoke"):
            set_span_attribute("llm.feature", feature)
            set_span_attribute("llm.model", self.model_id)
            set_span_attribute("llm.template_version", request.prompt.template_version)
            set_span_attribute("llm.estimated_tokens", request.estimated_tokens)

            try:
                completion = await self.retry_policy.run(_attempt, on_retry=_on_retry)
            except ProviderTransientError as exc:
                await self.ledger.commit_estimate(reservation, "upstream_unavailable")
                self._record_failure(feature, "sync", "unavailable", started, exc, attempts)
                raise UpstreamUnavailableError(
                    "The AI service is temporarily unavailable",
                    feature=feature,
                    attempts=attempts,
                ) from exc
            except ProviderPermanentError as exc:
                await self.ledger.commit_estimate(reservation, "upstream_permanent")
                self._record_failure(feature, "sync", "permanent_error", started, exc, attempts)
                raise UpstreamPermanentError(
                    "The AI service rejected the request",
                    feature=feature,
                    status_code=exc.status_code,
                ) from exc
            except asyncio.CancelledError:
                await self.ledger.commit_estimate(reservation, "cancelled")
                record_llm_request(feature, "sync", "cancelled", time.perf_counter() - started)
                raise

            usage = completion.usage or fallback_usage(request, completion.text)
            await self.ledger.commit(reservation, usage.total_tokens)

            duration = time.perf_counter() - started
            record_llm_request(feature, "sync", "success", duration)
            record_llm_tokens(feature, usage.prompt_tokens, usage.completion_tokens)
            set_span_attribute("llm.total_tokens", usage.total_tokens)
            set_span_attribute("llm.attempts", attempts)
            logger.info(
                "llm_call_completed",
                feature=feature,
                model=completion.model,
                attempts=attempts,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                duration_ms=round(duration * 1000, 2),
            )
            return ModelResponse(
                feature=request.feature,
                text=completion.text,
                usage=usage,
                model_id=completion.model,
                attempts=attempts,
            )

    def stream(
        self,
        request: ModelRequest,
        reservation: Reservation,
        token: Optional[CancellationToken] = None,
    ) -> DeltaStream:
        """
        Streaming call.

        Nothing is sent upstream until the returned stream is iterated. A
        stream closed without reaching a terminal event commits the estimate.
        """
        token = token or CancellationToken()

        async def _abandoned() -> None:
            await self.ledger.commit_estimate(reservation, "abandoned")

        return DeltaStream(
            self._stream_events(request, reservation, token),
            token=token,
            on_close=_abandoned,
        )

    async def _stream_events(
        self,
        request: ModelRequest,
        reservation: Reservation,
        token: CancellationToken,
    ) -> AsyncGenerator[StreamEvent, None]:
        feature = request.feature.value
        started = time.perf_counter()
        span = get_tracer().start_span(
            "llm.stream",
            attributes={
                "llm.feature": feature,
                "llm.model": self.model_id,
                "llm.template_version": request.prompt.template_version,
                "llm.estimated_tokens": request.estimated_tokens,
            },
        )
        chunks = []
        usage: Optional[TokenUsage] = None
        attempt = 1
        outcome = "error"

        try:
            while True:
                upstream = self.provider.stream(
                    self.model_id, request.prompt.messages, request.prompt.max_tokens
                )
                try:
                    while True:
                        item = await next_item(upstream, token, self.stream_idle_timeout_seconds)
                        if item is END_OF_STREAM:
                            break
                        if isinstance(item, ProviderUsage):
                            usage = item.usage
                            continue
                        if not item.text:
                            continue
                        chunks.append(item.text)
                        yield DeltaEvent(text=item.text, index=len(chunks) - 1)
                except ProviderError as exc:
                    # Once a delta has been delivered the caller owns retry decisions.
                    if chunks or not self.retry_policy.should_retry(exc, attempt):
                        raise
                    delay = self.retry_policy.backoff(attempt)
                    record_llm_retry(feature, "transient")
                    logger.warning(
                        "llm_stream_retrying",
                        feature=feature,
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)
                    if token.cancelled:
                        raise StreamCancelled() from exc
                    attempt += 1
                    usage = None
                    continue
                finally:
                    await upstream.aclose()
                break
            outcome = "success"
        except StreamCancelled:
            outcome = "cancelled"
            await self.ledger.commit_estimate(reservation, "cancelled")
            logger.info("llm_stream_cancelled", feature=feature, deltas=len(chunks))
            return
        except (GeneratorExit, asyncio.CancelledError):
            outcome = "cancelled"
            await self.ledger.commit_estimate(reservation, "cancelled")
            logger.info("llm_stream_cancelled", feature=feature, deltas=len(chunks))
            raise
        except StreamStalledError as exc:
            outcome = "stalled"
            await self.ledger.commit_estimate(reservation, "stalled")
            span.set_status(StatusCode.ERROR, exc.message)
            logger.warning(
                "llm_stream_stalled",
                feature=feature,
                deltas=len(chunks),
                idle_timeout_seconds=self.stream_idle_timeout_seconds,
            )
            yield ErrorEvent(exc)
            return
        except ProviderTransientError as exc:
            outcome = "unavailable"
            await self.ledger.commit_estimate(reservation, "upstream_unavailable")
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, str(exc))
            logger.warning("llm_stream_failed", feature=feature, deltas=len(chunks), error=str(exc))
            yield ErrorEvent(
                UpstreamUnavailableError(
                    "The AI service is temporarily unavailable", feature=feature, attempts=attempt
                )
            )
            return
        except ProviderPermanentError as exc:
            outcome = "permanent_error"
            await self.ledger.commit_estimate(reservation, "upstream_permanent")
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, str(exc))
            logger.error("llm_stream_rejected", feature=feature, error=str(exc), status_code=exc.status_code)
            yield ErrorEvent(
                UpstreamPermanentError(
                    "The AI service rejected the request", feature=feature, status_code=exc.status_code
                )
            )
            return
        finally:
            duration = time.perf_counter() - started
            span.set_attribute("llm.outcome", outcome)
            span.set_attribute("llm.deltas", len(chunks))
            span.end()
            if outcome != "success":
                record_llm_request(feature, "stream", outcome, duration)

        text = "".join(chunks)
        usage = usage or fallback_usage(request, text)
        await self.ledger.commit(reservation, usage.total_tokens)
        duration = time.perf_counter() - started
        record_llm_request(feature, "stream", "success", duration)
        record_llm_tokens(feature, usage.prompt_tokens, usage.completion_tokens)
        logger.info(
            "llm_stream_completed",
            feature=feature,
            attempts=attempt,
            deltas=len(chunks),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=round(duration * 1000, 2),
        )
        yield FinalEvent(text=text, usage=usage)

    def _record_failure(
        self,
        feature: str,
        mode: str,
        outcome: str,
        started: float,
        exc: ProviderError,
        attempts: int,
    ) -> None:
        record_llm_request(feature, mode, outcome, time.perf_counter() - started)
        record_exception(exc)
        set_span_status(StatusCode.ERROR, str(exc))
        logger.warning(
            "llm_call_failed",
            feature=feature,
            mode=mode,
            outcome=outcome,
            attempts=attempts,
            status_code=exc.status_code,
            error=str(exc),
        )
