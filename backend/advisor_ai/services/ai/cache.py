"""
Result cache with request coalescing for feature handlers.

Cache-first strategy:
1. Fresh hit: return the cached payload (no budget, no upstream call).
2. Miss with a computation already in flight for the fingerprint: wait for
   the leader's result.
3. Miss otherwise: become leader, run ``compute`` (reserve -> gateway ->
   validate -> commit), store the payload with its TTL and hand it to waiters.

A failing (or cancelled) leader removes the in-flight record and every
current waiter receives the same error; each may retry independently.

Entries expire by timestamp comparison at read time; there is no background
sweep. The in-flight registry is process-wide only, so with several processes
duplicate upstream calls are possible (the budget ledger stays correct).

Key format (Redis): ``ai:cache:{fingerprint}``
TTL: 1 hour by default, fixed per feature.
"""
import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from advisor_ai.core.errors import UpstreamUnavailableError
from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import (
    record_llm_cache_coalesced,
    record_llm_cache_hit,
    record_llm_cache_miss,
)

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 60 * 60  # 1h

Payload = Dict[str, Any]


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    payload: Payload
    created_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.created_at + self.ttl


class CacheStore(ABC):
    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, fingerprint: str) -> None:
        ...


class InMemoryCacheStore(CacheStore):
    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, fingerprint):
        return self._entries.get(fingerprint)

    async def set(self, entry):
        self._entries[entry.fingerprint] = entry

    async def delete(self, fingerprint):
        self._entries.pop(fingerprint, None)


class RedisCacheStore(CacheStore):
    """
    Redis-backed entries (JSON). The Redis expiry is only a memory bound;
    freshness is still decided from ``created_at + ttl`` at read time.
    """

    def __init__(self, client: Redis, key_prefix: str = "ai:cache"):
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, fingerprint: str) -> str:
        return f"{self._key_prefix}:{fingerprint}"

    async def get(self, fingerprint):
        raw = await self._client.get(self._key(fingerprint))
        if raw is None:
            return None
        try:
            return CacheEntry(**json.loads(raw))
        except (TypeError, ValueError) as exc:
            logger.warning("llm_cache_entry_corrupt", fingerprint=fingerprint, error=str(exc))
            return None

    async def set(self, entry):
        await self._client.set(
            self._key(entry.fingerprint),
            json.dumps(asdict(entry)),
            ex=max(1, int(entry.ttl) + 1),
        )

    async def delete(self, fingerprint):
        await self._client.delete(self._key(fingerprint))


@dataclass
class InFlightRequest:
    fingerprint: str
    future: "asyncio.Future[Payload]"
    waiters: int = 0


class ResultCache:
    """
    Fingerprinted result cache with duplicate-call suppression.

    Args:
        store: Entry storage (in-memory or Redis)
        clock: Wall-clock seconds (injectable for tests)
    """

    def __init__(self, store: CacheStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._in_flight: Dict[str, InFlightRequest] = {}

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def _read(self, fingerprint: str) -> Optional[CacheEntry]:
        # Cache failures degrade to a miss.
        try:
            return await self.store.get(fingerprint)
        except RedisError as exc:
            logger.warning("llm_cache_get_failed", fingerprint=fingerprint, error=str(exc))
            return None

    async def _write(self, entry: CacheEntry, feature: str) -> None:
        try:
            await self.store.set(entry)
        except RedisError as exc:
            logger.warning(
                "llm_cache_set_failed", feature=feature, fingerprint=entry.fingerprint, error=str(exc)
            )

    async def get_or_compute(
        self,
        fingerprint: str,
        ttl: float,
        compute: Callable[[], Awaitable[Payload]],
        feature: str = "unknown",
    ) -> Payload:
        """Return a fresh cached payload, join an in-flight computation, or lead one."""
        entry = await self._read(fingerprint)
        if entry is not None:
            if entry.is_fresh(self._clock()):
                record_llm_cache_hit(feature)
                logger.debug("llm_cache_hit", feature=feature, fingerprint=fingerprint)
                return entry.payload
            logger.debug("llm_cache_expired", feature=feature, fingerprint=fingerprint)

        in_flight = self._in_flight.get(fingerprint)
        if in_flight is not None:
            in_flight.waiters += 1
            record_llm_cache_coalesced(feature)
            logger.debug(
                "llm_request_coalesced",
                feature=feature,
                fingerprint=fingerprint,
                waiters=in_flight.waiters,
            )
            # shield: a cancelled waiter must not cancel the leader's future.
            return await asyncio.shield(in_flight.future)

        return await self._lead(fingerprint, ttl, compute, feature)

    async def _lead(
        self,
        fingerprint: str,
        ttl: float,
        compute: Callable[[], Awaitable[Payload]],
        feature: str,
    ) -> Payload:
        future: "asyncio.Future[Payload]" = asyncio.get_running_loop().create_future()
        in_flight = InFlightRequest(fingerprint=fingerprint, future=future)
        self._in_flight[fingerprint] = in_flight
        try:
            # A previous leader may have written and left while our first
            # read was pending; check again now that we are registered.
            entry = await self._read(fingerprint)
            if entry is not None and entry.is_fresh(self._clock()):
                record_llm_cache_hit(feature)
                logger.debug("llm_cache_hit", feature=feature, fingerprint=fingerprint, recheck=True)
                payload = entry.payload
            else:
                record_llm_cache_miss(feature)
                logger.debug("llm_cache_miss", feature=feature, fingerprint=fingerprint)
                payload = await compute()
                await self._write(
                    CacheEntry(fingerprint=fingerprint, payload=payload, created_at=self._clock(), ttl=ttl),
                    feature,
                )
        except asyncio.CancelledError:
            self._fail(in_flight, UpstreamUnavailableError("Shared AI request was cancelled"))
            raise
        except Exception as exc:
            self._fail(in_flight, exc)
            raise
        else:
            future.set_result(payload)
            return payload
        finally:
            self._in_flight.pop(fingerprint, None)

    def _fail(self, in_flight: InFlightRequest, exc: BaseException) -> None:
        if in_flight.waiters:
            logger.info(
                "llm_request_leader_failed",
                fingerprint=in_flight.fingerprint,
                waiters=in_flight.waiters,
                error_type=type(exc).__name__,
            )
        in_flight.future.set_exception(exc)
        # Mark retrieved so an unobserved failure (no waiters) is not reported as a leak.
        in_flight.future.exception()

    async def invalidate(self, fingerprint: str) -> None:
        await self.store.delete(fingerprint)
