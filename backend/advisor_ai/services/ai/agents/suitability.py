"""
Suitability check agent.

Asks the model for compliance flags on an application for a product. The
agent only transports and validates the model's judgment; persisting the
flags (and superseding earlier sets) is the flag store's job.
"""
from typing import Any, Mapping

from advisor_ai.services.ai.agents.base import AgentResult, FeatureAgent
from advisor_ai.services.ai.schema import Feature


class SuitabilityCheckAgent(FeatureAgent):
    feature = Feature.SUITABILITY

    async def check(
        self,
        user_id: str,
        application_snapshot: Mapping[str, Any],
        product: Mapping[str, Any],
    ) -> AgentResult:
        business_input = {
            "application_snapshot": dict(application_snapshot),
            "product": dict(product),
        }
        return await self.run(user_id, business_input, context=business_input)
