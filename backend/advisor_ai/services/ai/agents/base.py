"""
Shared pipeline for cacheable feature agents.

Pipeline per call:
1. Fingerprint the normalized business input (plus template version)
2. Cache-first; concurrent identical calls share one computation
3. On a miss the leader reserves budget, calls the gateway and validates
   the output, with one repair retry for malformed output (each attempt is
   budgeted separately)

Budget is only spent by the leader of a computation; cache hits and
coalesced waiters never touch the ledger.
"""
from dataclasses import dataclass
from typing import Any, Collection, Dict, Mapping, Optional

from pydantic import ValidationError

from advisor_ai.core.errors import BudgetExceededError, SchemaValidationError
from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import record_llm_retry, record_llm_schema_validation_failure
from advisor_ai.services.ai.budget import BudgetLedger
from advisor_ai.services.ai.cache import DEFAULT_CACHE_TTL_SECONDS, ResultCache
from advisor_ai.services.ai.gateway import ModelGateway, ModelRequest
from advisor_ai.services.ai.prompts import PromptCompiler, estimate_tokens
from advisor_ai.services.ai.schema import RESULT_MODELS, Feature, FeatureResult, validate

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentResult:
    result: FeatureResult
    model_id: str
    template_version: str


class FeatureAgent:
    """
    Base class for cacheable feature agents.

    Subclasses set ``feature`` and expose a domain method that builds the
    business input (fingerprinted) and the template context (rendered).
    """

    feature: Feature

    def __init__(
        self,
        compiler: PromptCompiler,
        cache: ResultCache,
        ledger: BudgetLedger,
        gateway: ModelGateway,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        repair_attempts: int = 1,
    ):
        self.compiler = compiler
        self.cache = cache
        self.ledger = ledger
        self.gateway = gateway
        self.cache_ttl_seconds = cache_ttl_seconds
        self.repair_attempts = repair_attempts

    async def run(
        self,
        user_id: str,
        business_input: Any,
        context: Mapping[str, Any],
        allowed_product_ids: Optional[Collection[str]] = None,
    ) -> AgentResult:
        fingerprint = self.compiler.fingerprint(self.feature, business_input)

        async def compute() -> Dict[str, Any]:
            return await self._generate(user_id, context, allowed_product_ids)

        payload = await self.cache.get_or_compute(
            fingerprint, self.cache_ttl_seconds, compute, feature=self.feature.value
        )
        try:
            return self._from_payload(payload)
        except SchemaValidationError as exc:
            # Cached payload invalid → drop it and recompute once.
            record_llm_schema_validation_failure(self.feature.value)
            logger.warning(
                "llm_cache_payload_invalid",
                feature=self.feature.value,
                fingerprint=fingerprint,
                error=str(exc),
            )
            await self.cache.invalidate(fingerprint)
            payload = await self.cache.get_or_compute(
                fingerprint, self.cache_ttl_seconds, compute, feature=self.feature.value
            )
            return self._from_payload(payload)

    async def _generate(
        self,
        user_id: str,
        context: Mapping[str, Any],
        allowed_product_ids: Optional[Collection[str]],
    ) -> Dict[str, Any]:
        feature = self.feature.value
        prompt = self.compiler.compile(self.feature, context)
        estimate = estimate_tokens(prompt)
        request = ModelRequest(feature=self.feature, prompt=prompt, estimated_tokens=estimate)

        max_attempts = 1 + self.repair_attempts
        attempt = 0
        while True:
            attempt += 1
            decision = await self.ledger.reserve(user_id, estimate)
            if not decision.allowed:
                raise BudgetExceededError(user_id, decision.remaining, estimate)

            response = await self.gateway.invoke(request, decision.reservation)
            try:
                result = validate(self.feature, response.text, allowed_product_ids=allowed_product_ids)
            except SchemaValidationError as exc:
                record_llm_schema_validation_failure(feature)
                if attempt >= max_attempts:
                    logger.warning(
                        "llm_output_invalid",
                        feature=feature,
                        attempts=attempt,
                        error=exc.message,
                    )
                    raise
                record_llm_retry(feature, "repair")
                logger.info("llm_output_repair_retry", feature=feature, attempt=attempt, error=exc.message)
                continue

            return {
                "result": result.model_dump(mode="json"),
                "model_id": response.model_id,
                "template_version": prompt.template_version,
            }

    def _from_payload(self, payload: Mapping[str, Any]) -> AgentResult:
        try:
            result = RESULT_MODELS[self.feature].model_validate(payload["result"])
            return AgentResult(
                result=result,
                model_id=payload["model_id"],
                template_version=payload["template_version"],
            )
        except (ValidationError, KeyError, TypeError) as exc:
            raise SchemaValidationError(self.feature.value, f"Cached payload is invalid: {exc}") from exc
