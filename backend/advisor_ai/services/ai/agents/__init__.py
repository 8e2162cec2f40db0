"""
Feature agents.

Each agent owns one feature's pipeline:
fingerprint -> cache/coalescer -> reserve -> gateway -> validate.
"""
from advisor_ai.services.ai.agents.base import AgentResult, FeatureAgent
from advisor_ai.services.ai.agents.explain import QuoteExplanationAgent
from advisor_ai.services.ai.agents.extraction import DocumentExtractionAgent
from advisor_ai.services.ai.agents.recommend import ProductRecommendationAgent
from advisor_ai.services.ai.agents.suitability import SuitabilityCheckAgent

__all__ = [
    "AgentResult",
    "FeatureAgent",
    "ProductRecommendationAgent",
    "SuitabilityCheckAgent",
    "DocumentExtractionAgent",
    "QuoteExplanationAgent",
]
