"""
Async HTTP client for the LLM provider.

Design constraints:
- No vendor SDK: httpx against an OpenAI-compatible /chat/completions API
- Two call shapes: sync ``(model_id, messages, max_tokens) -> (text, usage)``
  and streaming (ordered deltas followed by a usage report)
- Every failure is classified Transient (retryable: network, timeouts,
  408/425/429/5xx, malformed envelopes) or Permanent (auth, missing model,
  other 4xx); retry decisions are made by the gateway, not here
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_payload(cls, usage: Optional[Dict[str, Any]]) -> Optional["TokenUsage"]:
        if not usage:
            return None
        return cls(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        )


@dataclass(frozen=True)
class ProviderCompletion:
    text: str
    usage: Optional[TokenUsage]
    model: str


@dataclass(frozen=True)
class ProviderDelta:
    text: str


@dataclass(frozen=True)
class ProviderUsage:
    usage: TokenUsage


ProviderStreamItem = Union[ProviderDelta, ProviderUsage]


class ProviderError(Exception):
    """Base class for classified provider failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Retryable failure (network, timeout, throttling, 5xx)."""


class ProviderPermanentError(ProviderError):
    """Fatal failure (auth, model removed, bad request); never retried."""


def classify_status(status_code: int, body: str = "") -> ProviderError:
    message = f"Provider returned HTTP {status_code}"
    if body:
        message = f"{message}: {body[:300]}"
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ProviderTransientError(message, status_code=status_code)
    return ProviderPermanentError(message, status_code=status_code)


class OpenAICompatibleProvider:
    """
    Provider client for an OpenAI-compatible API.

    Args:
        api_base: Base URL, e.g. https://api.openai.com/v1
        api_key: Bearer token; calls fail permanently when missing
        connect_timeout_seconds: TCP/TLS connect timeout
        http_client: Optional pre-built client (tests inject a MockTransport)
    """

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        connect_timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        # Overall deadlines are enforced by the gateway, so reads are unbounded here.
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=connect_timeout_seconds),
        )

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ProviderPermanentError("LLM API key not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        json_mode: bool = False,
    ) -> ProviderCompletion:
        """Single chat completion."""
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "temperature": 0.0,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.post(
                f"{self.api_base}/chat/completions",
                headers=self._headers(),
                json=payload,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"Provider request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Provider transport error: {exc}") from exc

        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text)

        try:
            data = response.json()
            content = data["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ProviderTransientError("Malformed provider response envelope") from exc

        return ProviderCompletion(
            text=content,
            usage=TokenUsage.from_payload(data.get("usage")),
            model=data.get("model") or model_id,
        )

    async def stream(
        self,
        model_id: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
    ) -> AsyncIterator[ProviderStreamItem]:
        """
        Streaming chat completion (server-sent events).

        Yields ProviderDelta for each content chunk, then one ProviderUsage
        when the provider reports usage.
        """
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "temperature": 0.3,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        headers = self._headers()

        try:
            async with self._client.stream(
                "POST",
                f"{self.api_base}/chat/completions",
                headers=headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise classify_status(response.status_code, body)

                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("llm_stream_chunk_invalid", chunk=data[:200])
                        continue

                    for choice in chunk.get("choices") or []:
                        text = (choice.get("delta") or {}).get("content")
                        if text:
                            yield ProviderDelta(text=text)

                    usage = TokenUsage.from_payload(chunk.get("usage"))
                    if usage is not None:
                        yield ProviderUsage(usage=usage)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"Provider stream timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Provider stream transport error: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
