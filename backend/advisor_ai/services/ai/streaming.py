"""
Cancellable delta streams.

A DeltaStream is an async iterator of StreamEvent values: zero or more
DeltaEvent in provider order, then exactly one terminal event (FinalEvent
with the full text and usage, or ErrorEvent). A cancelled stream simply ends
without a terminal event; the party that cancelled no longer listens.

Cancellation is explicit: every stream carries a CancellationToken that is
threaded from the caller (e.g. an HTTP disconnect) down to the gateway,
which stops reading from the provider as soon as the token fires.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Union

from advisor_ai.core.errors import AIServiceError, StreamStalledError, UpstreamUnavailableError
from advisor_ai.services.ai.llm_client import TokenUsage


@dataclass(frozen=True)
class DeltaEvent:
    text: str
    index: int


@dataclass(frozen=True)
class FinalEvent:
    text: str
    usage: TokenUsage


@dataclass(frozen=True)
class ErrorEvent:
    error: AIServiceError

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message


StreamEvent = Union[DeltaEvent, FinalEvent, ErrorEvent]


class CancellationToken:
    """One-shot cancellation signal shared along a call chain."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class StreamCancelled(Exception):
    """Raised inside a producer when its token fires."""


END_OF_STREAM = object()


async def _anext(iterator) -> Any:
    return await iterator.__anext__()


async def next_item(iterator, token: CancellationToken, idle_timeout: float) -> Any:
    """
    Await the next item of ``iterator``, bounded by the idle timeout and
    interruptible by ``token``.

    Returns END_OF_STREAM when the iterator is exhausted.

    Raises:
        StreamCancelled: the token fired first
        StreamStalledError: nothing arrived within ``idle_timeout`` seconds
    """
    if token.cancelled:
        raise StreamCancelled()

    next_task = asyncio.create_task(_anext(iterator))
    cancel_task = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait(
            {next_task, cancel_task},
            timeout=idle_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_task.cancel()
        if not next_task.done():
            next_task.cancel()
            await asyncio.wait({next_task})

    if next_task in done:
        try:
            return next_task.result()
        except StopAsyncIteration:
            return END_OF_STREAM
    if not next_task.cancelled():
        # Retrieve a late failure so it is not reported as unhandled.
        next_task.exception()
    if cancel_task in done:
        raise StreamCancelled()
    raise StreamStalledError(f"No response from the AI provider for {idle_timeout:g}s")


class DeltaStream:
    """
    Async iterator over stream events with explicit cancellation.

    Args:
        events: Producer generator
        token: Cancellation token observed by the producer
        on_close: Idempotent cleanup awaited once when the stream ends or is
            closed, including when it is closed before ever being iterated
    """

    def __init__(
        self,
        events: AsyncGenerator[StreamEvent, None],
        token: Optional[CancellationToken] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._events = events
        self.token = token or CancellationToken()
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "DeltaStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            await self._finish()
            raise

    def cancel(self) -> None:
        self.token.cancel()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """Stop the producer (cancelling it if still running) and run cleanup."""
        if self._closed:
            return
        self.token.cancel()
        try:
            await self._events.aclose()
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close()

    async def collect(self) -> FinalEvent:
        """Drain the stream; return the final event or raise the terminal error."""
        try:
            async for event in self:
                if isinstance(event, FinalEvent):
                    return event
                if isinstance(event, ErrorEvent):
                    raise event.error
        finally:
            await self.aclose()
        raise UpstreamUnavailableError("AI stream ended without a result")
