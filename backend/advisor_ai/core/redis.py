"""
Redis connection helpers.

Redis backs the stores that must be shared between processes: the budget
ledger (globally consistent counters), the result cache and the suitability
flag sets. When REDIS_URL is unset or Redis is unreachable at startup the
service falls back to in-memory stores (single process only).

Pool settings:
- Max connections: 20
- Connect / socket timeout: 5 seconds
"""
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)


async def initialize_redis(redis_url: str) -> Optional[Redis]:
    """
    Create a Redis client and verify the connection.

    Returns:
        Connected client, or None if Redis is unavailable
    """
    logger.info("redis_initializing", url=redis_url)
    client: Optional[Redis] = None
    try:
        client = redis.from_url(
            redis_url,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
        )
        await client.ping()
    except Exception as e:
        logger.error(
            "redis_initialization_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        if client is not None:
            await client.aclose()
        return None

    logger.info("redis_initialized")
    return client


async def close_redis(client: Optional[Redis]) -> None:
    """Close a Redis client and its connection pool."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("redis_closed")
    except Exception as e:
        logger.error("redis_close_failed", error=str(e), exc_info=True)


