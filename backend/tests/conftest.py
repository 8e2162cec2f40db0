"""
Shared test helpers.

No test performs real HTTP calls: the provider is replaced by StubProvider,
which replays scripted completions and streams and records every call.
"""
import asyncio
import json
import os
from typing import Any, List, Optional, Sequence

import pytest

# Keep external integrations quiet during tests
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

from advisor_ai.core.config import AISettings
from advisor_ai.services.ai.llm_client import (
    ProviderCompletion,
    ProviderDelta,
    ProviderUsage,
    TokenUsage,
)
from advisor_ai.services.ai.orchestration import build_ai_orchestration_service

DEFAULT_USAGE = TokenUsage(prompt_tokens=100, completion_tokens=50)


class Pause:
    """Stream script item: sleep before the next item."""

    def __init__(self, seconds: float):
        self.seconds = seconds


class StubProvider:
    """
    Scripted provider.

    Args:
        responses: Sync results in call order; each is a text, a dict (sent
            as JSON) or an exception to raise. The last one repeats.
        streams: Stream scripts in call order; each script is a list of
            delta strings, TokenUsage, Pause or exceptions. The last repeats.
        usage: Usage reported for sync completions (None: not reported)
        delay: Seconds each sync call takes
    """

    def __init__(
        self,
        responses: Optional[Sequence[Any]] = None,
        streams: Optional[Sequence[List[Any]]] = None,
        usage: Optional[TokenUsage] = DEFAULT_USAGE,
        delay: float = 0.0,
    ):
        self.responses = list(responses or [])
        self.streams = [list(script) for script in (streams or [])]
        self.usage = usage
        self.delay = delay
        self.calls: List[dict] = []
        self.stream_calls: List[dict] = []
        self.closed = False

    @staticmethod
    def _next(items: list) -> Any:
        return items.pop(0) if len(items) > 1 else items[0]

    async def complete(self, model_id, messages, max_tokens, json_mode=False):
        self.calls.append({"model_id": model_id, "messages": messages, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self._next(self.responses)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, (dict, list)):
            item = json.dumps(item)
        return ProviderCompletion(text=item, usage=self.usage, model=model_id)

    async def stream(self, model_id, messages, max_tokens):
        self.stream_calls.append({"model_id": model_id, "messages": messages, "max_tokens": max_tokens})
        for item in self._next(self.streams):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
            elif isinstance(item, TokenUsage):
                yield ProviderUsage(usage=item)
            else:
                yield ProviderDelta(text=item)

    async def aclose(self):
        self.closed = True


def make_settings(**overrides) -> AISettings:
    values = dict(
        llm_api_key="test-key",
        llm_model="test-model",
        sync_timeout_seconds=1.0,
        stream_idle_timeout_seconds=0.2,
        max_retries=1,
        retry_backoff_seconds=0.0,
        daily_token_limit=100_000,
    )
    values.update(overrides)
    return AISettings(**values)


def make_service(provider: StubProvider, **overrides):
    return build_ai_orchestration_service(make_settings(**overrides), provider=provider)


RECOMMENDATION = {
    "recommendations": [
        {"product_id": "p-2", "rank": 2, "rationale": "Lower fees"},
        {"product_id": "p-1", "rank": 1, "rationale": "Matches the risk profile"},
    ]
}

CANDIDATES = [
    {"product_id": "p-1", "name": "Balanced Fund", "risk": "medium"},
    {"product_id": "p-2", "name": "Index Tracker", "risk": "medium"},
    {"product_id": "p-3", "name": "Growth Fund", "risk": "high"},
]

CLIENT_PROFILE = {"age": 42, "risk_tolerance": "medium", "goal": "retirement"}

SUITABILITY = {
    "passed": False,
    "flags": [
        {
            "item_id": "income-mismatch",
            "field": "annual_income",
            "severity": "blocking",
            "issue": "Stated income does not cover the premium",
            "suggestion": "Confirm income with the client",
        },
        {
            "item_id": "missing-beneficiary",
            "field": "beneficiary",
            "severity": "warning",
            "issue": "No beneficiary named",
            "suggestion": "Ask the client to name a beneficiary",
        },
    ],
}


@pytest.fixture
def stub_provider():
    return StubProvider(responses=[RECOMMENDATION])
