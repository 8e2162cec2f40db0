"""
AI Orchestration Layer: the inbound API used by feature and application code.

Responsibilities:
- Route each feature call through its agent (cache, budget, gateway, validation)
- Persist suitability results as flag sets
- Expose the chat session protocol and read-only budget state

NON-responsibilities:
- Does NOT decide suitability rules (only records the model's flags)
- Does NOT extract text from documents (input is already transcribed)

Services are built once at startup by ``build_ai_orchestration_service`` and
passed explicitly; there are no module-level singletons.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from redis.asyncio import Redis

from advisor_ai.core.config import AISettings
from advisor_ai.core.logging import get_logger
from advisor_ai.services.ai.agents import (
    DocumentExtractionAgent,
    ProductRecommendationAgent,
    QuoteExplanationAgent,
    SuitabilityCheckAgent,
)
from advisor_ai.services.ai.budget import (
    BudgetCounter,
    BudgetLedger,
    InMemoryBudgetStore,
    RedisBudgetStore,
)
from advisor_ai.services.ai.cache import InMemoryCacheStore, RedisCacheStore, ResultCache
from advisor_ai.services.ai.gateway import ModelGateway, default_retry_policy
from advisor_ai.services.ai.llm_client import OpenAICompatibleProvider
from advisor_ai.services.ai.prompts import PromptCompiler
from advisor_ai.services.ai.schema import (
    ExplanationResult,
    ExtractionResult,
    RecommendationResult,
    SuitabilityResult,
)
from advisor_ai.services.ai.streaming import DeltaStream
from advisor_ai.services.chat.sessions import ChatMessage, ChatSessionManager
from advisor_ai.services.suitability.flags import (
    AcknowledgeResult,
    InMemoryFlagSetRepository,
    RedisFlagSetRepository,
    SuitabilityFlagSet,
    SuitabilityFlagStore,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SuitabilityCheckResult:
    flag_set: SuitabilityFlagSet
    result: SuitabilityResult


class AIOrchestrationService:
    """Facade over the feature agents, flag store, chat manager and ledger."""

    def __init__(
        self,
        ledger: BudgetLedger,
        recommend_agent: ProductRecommendationAgent,
        suitability_agent: SuitabilityCheckAgent,
        extraction_agent: DocumentExtractionAgent,
        explain_agent: QuoteExplanationAgent,
        flag_store: SuitabilityFlagStore,
        chat_manager: ChatSessionManager,
        provider: Optional[OpenAICompatibleProvider] = None,
    ):
        self.ledger = ledger
        self.recommend_agent = recommend_agent
        self.suitability_agent = suitability_agent
        self.extraction_agent = extraction_agent
        self.explain_agent = explain_agent
        self.flag_store = flag_store
        self.chat_manager = chat_manager
        self._provider = provider

    async def recommend_products(
        self,
        user_id: str,
        client_profile: Mapping[str, Any],
        candidate_products: Sequence[Mapping[str, Any]],
    ) -> RecommendationResult:
        outcome = await self.recommend_agent.recommend(user_id, client_profile, candidate_products)
        logger.info(
            "ai_recommendations_completed",
            user_id=user_id,
            candidates=len(candidate_products),
            recommendations=len(outcome.result.recommendations),
        )
        return outcome.result

    async def check_suitability(
        self,
        user_id: str,
        application_id: str,
        application_snapshot: Mapping[str, Any],
        product: Mapping[str, Any],
    ) -> SuitabilityCheckResult:
        """Run a suitability check and record it as the application's current flag set."""
        outcome = await self.suitability_agent.check(user_id, application_snapshot, product)
        result: SuitabilityResult = outcome.result
        flag_set = await self.flag_store.create_flag_set(
            application_id,
            result.flags,
            model_version=f"{outcome.model_id}:{outcome.template_version}",
            passed=result.passed,
        )
        return SuitabilityCheckResult(flag_set=flag_set, result=result)

    async def acknowledge_flag(
        self,
        flag_set_id: str,
        item_id: str,
        reason: str,
        user_id: Optional[str] = None,
    ) -> AcknowledgeResult:
        return await self.flag_store.acknowledge(flag_set_id, item_id, reason, acknowledged_by=user_id)

    async def flags_all_acknowledged(self, flag_set_id: str) -> bool:
        return await self.flag_store.all_acknowledged(flag_set_id)

    async def get_flag_set(self, flag_set_id: str) -> SuitabilityFlagSet:
        return await self.flag_store.get_flag_set(flag_set_id)

    async def list_flag_sets(self, application_id: str) -> List[SuitabilityFlagSet]:
        return await self.flag_store.list_flag_sets(application_id)

    async def extract_document(
        self,
        user_id: str,
        document_text: str,
        expected_fields: Optional[Sequence[str]] = None,
    ) -> ExtractionResult:
        outcome = await self.extraction_agent.extract(user_id, document_text, expected_fields)
        if outcome.result.requires_review:
            logger.info(
                "ai_extraction_requires_review",
                user_id=user_id,
                confidence=outcome.result.confidence,
            )
        return outcome.result

    async def explain_quote(self, user_id: str, quote_snapshot: Mapping[str, Any]) -> ExplanationResult:
        return (await self.explain_agent.explain(user_id, quote_snapshot)).result

    async def start_chat(self, user_id: str, context: Optional[Mapping[str, Any]] = None) -> str:
        return await self.chat_manager.start_session(user_id, context)

    async def send_chat_message(
        self,
        session_id: str,
        user_id: str,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> DeltaStream:
        return await self.chat_manager.send_message(session_id, user_id, text, context)

    async def chat_history(self, session_id: str, user_id: str) -> List[ChatMessage]:
        return await self.chat_manager.get_history(session_id, user_id)

    async def clear_chat(self, session_id: str, user_id: str) -> None:
        await self.chat_manager.clear_session(session_id, user_id)

    async def remaining_budget(self, user_id: str) -> BudgetCounter:
        return await self.ledger.get_counter(user_id)

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()


def build_ai_orchestration_service(
    settings: AISettings,
    redis_client: Optional[Redis] = None,
    provider: Optional[OpenAICompatibleProvider] = None,
    limit_overrides: Optional[Dict[str, int]] = None,
) -> AIOrchestrationService:
    """
    Wire every component from settings.

    Redis-backed stores are used when a client is given (ledger counters are
    then consistent across processes); in-memory stores otherwise.
    """
    if redis_client is not None:
        budget_store = RedisBudgetStore(redis_client)
        cache_store = RedisCacheStore(redis_client)
        flag_repository = RedisFlagSetRepository(redis_client)
    else:
        budget_store = InMemoryBudgetStore()
        cache_store = InMemoryCacheStore()
        flag_repository = InMemoryFlagSetRepository()

    provider = provider or OpenAICompatibleProvider(settings.llm_api_base, settings.llm_api_key)
    ledger = BudgetLedger(budget_store, settings.daily_token_limit, limit_overrides=limit_overrides)
    compiler = PromptCompiler()
    cache = ResultCache(cache_store)
    gateway = ModelGateway(
        provider,
        ledger,
        model_id=settings.llm_model,
        sync_timeout_seconds=settings.sync_timeout_seconds,
        stream_idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        retry_policy=default_retry_policy(settings.max_retries, settings.retry_backoff_seconds),
    )
    agent_args = dict(
        compiler=compiler,
        cache=cache,
        ledger=ledger,
        gateway=gateway,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )

    logger.info(
        "ai_orchestration_service_built",
        model=settings.llm_model,
        redis=redis_client is not None,
        daily_token_limit=settings.daily_token_limit,
    )
    return AIOrchestrationService(
        ledger=ledger,
        recommend_agent=ProductRecommendationAgent(**agent_args),
        suitability_agent=SuitabilityCheckAgent(**agent_args),
        extraction_agent=DocumentExtractionAgent(**agent_args),
        explain_agent=QuoteExplanationAgent(**agent_args),
        flag_store=SuitabilityFlagStore(flag_repository),
        chat_manager=ChatSessionManager(
            compiler,
            ledger,
            gateway,
            context_messages=settings.chat_context_messages,
        ),
        provider=provider,
    )
