"""
Environment-driven configuration.

Values are read from the process environment, optionally seeded from a
``.env`` file in the repository root. Every setting has a default so the
service starts with in-memory stores and no provider key (LLM calls then
fail with UpstreamPermanentError).

Environment configuration:
- LLM_API_BASE: Base URL for the provider (default: https://api.openai.com/v1)
- LLM_API_KEY: API key / bearer token
- LLM_MODEL: Model name (default: gpt-4o-mini)
- LLM_SYNC_TIMEOUT_SECONDS: Hard deadline for sync calls (default: 30)
- LLM_STREAM_IDLE_TIMEOUT_SECONDS: Max silence between stream deltas (default: 20)
- LLM_MAX_RETRIES: Retries for transient provider errors (default: 1)
- LLM_RETRY_BACKOFF_SECONDS: Base backoff between attempts (default: 0.5)
- AI_DAILY_TOKEN_LIMIT: Per-user daily token allowance (default: 100000)
- AI_CACHE_TTL_SECONDS: Result cache TTL (default: 3600)
- CHAT_CONTEXT_MESSAGES: History messages sent upstream per chat turn (default: 10)
- REDIS_URL: Redis connection URL; in-memory stores are used when unset
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)

env_path = Path(__file__).parent.parent.parent.parent / ".env"


def load_environment() -> None:
    """Load the repository ``.env`` file if present (never overrides real env)."""
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("env_loaded", env_path=str(env_path))


def _env(name: str, default: str) -> str:
    return os.getenv(name, default) or default


class AISettings(BaseModel):
    """Settings for the orchestration layer."""

    llm_api_base: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    sync_timeout_seconds: float = Field(30.0, gt=0)
    stream_idle_timeout_seconds: float = Field(20.0, gt=0)
    max_retries: int = Field(1, ge=0)
    retry_backoff_seconds: float = Field(0.5, ge=0)
    daily_token_limit: int = Field(100_000, ge=0)
    cache_ttl_seconds: float = Field(3600.0, gt=0)
    chat_context_messages: int = Field(10, ge=1)
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AISettings":
        return cls(
            llm_api_base=_env("LLM_API_BASE", "https://api.openai.com/v1"),
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_model=_env("LLM_MODEL", "gpt-4o-mini"),
            sync_timeout_seconds=float(_env("LLM_SYNC_TIMEOUT_SECONDS", "30")),
            stream_idle_timeout_seconds=float(_env("LLM_STREAM_IDLE_TIMEOUT_SECONDS", "20")),
            max_retries=int(_env("LLM_MAX_RETRIES", "1")),
            retry_backoff_seconds=float(_env("LLM_RETRY_BACKOFF_SECONDS", "0.5")),
            daily_token_limit=int(_env("AI_DAILY_TOKEN_LIMIT", "100000")),
            cache_ttl_seconds=float(_env("AI_CACHE_TTL_SECONDS", "3600")),
            chat_context_messages=int(_env("CHAT_CONTEXT_MESSAGES", "10")),
            redis_url=os.getenv("REDIS_URL") or None,
        )
