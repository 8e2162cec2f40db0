"""Quote explanation agent."""
from typing import Any, Mapping

from advisor_ai.services.ai.agents.base import AgentResult, FeatureAgent
from advisor_ai.services.ai.schema import Feature


class QuoteExplanationAgent(FeatureAgent):
    feature = Feature.EXPLAIN

    async def explain(self, user_id: str, quote_snapshot: Mapping[str, Any]) -> AgentResult:
        business_input = {"quote_snapshot": dict(quote_snapshot)}
        return await self.run(user_id, business_input, context=business_input)
