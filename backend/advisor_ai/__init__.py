"""
advisor_ai: AI-request orchestration layer.

Mediates between product features (recommendations, suitability checks,
document extraction, quote explanations, chat assistant) and a single
OpenAI-compatible LLM provider.
"""

__version__ = "1.0.0"
