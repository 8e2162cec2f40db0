"""
Product recommendation agent.

Ranks up to three products for a client, chosen strictly from the supplied
candidate list. The fingerprint covers the client profile and the candidate
set (ordered by product id), so re-ordering candidates still hits the cache.
"""
from typing import Any, Dict, List, Mapping, Sequence

from advisor_ai.services.ai.agents.base import AgentResult, FeatureAgent
from advisor_ai.services.ai.schema import Feature


def _candidate_id(candidate: Mapping[str, Any]) -> str:
    product_id = candidate.get("product_id")
    if product_id is None or not str(product_id).strip():
        raise ValueError("every candidate product needs a product_id")
    return str(product_id).strip()


class ProductRecommendationAgent(FeatureAgent):
    feature = Feature.RECOMMEND

    async def recommend(
        self,
        user_id: str,
        client_profile: Mapping[str, Any],
        candidate_products: Sequence[Mapping[str, Any]],
    ) -> AgentResult:
        if not candidate_products:
            raise ValueError("candidate_products must not be empty")

        candidates: List[Dict[str, Any]] = sorted(
            (dict(candidate, product_id=_candidate_id(candidate)) for candidate in candidate_products),
            key=lambda candidate: candidate["product_id"],
        )
        product_ids = [candidate["product_id"] for candidate in candidates]
        if len(set(product_ids)) != len(product_ids):
            raise ValueError("candidate product ids must be unique")

        business_input = {"client_profile": dict(client_profile), "candidate_products": candidates}
        return await self.run(
            user_id,
            business_input,
            context=business_input,
            allowed_product_ids=product_ids,
        )
