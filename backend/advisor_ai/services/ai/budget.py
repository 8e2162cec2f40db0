"""
Budget Ledger: per-user, per-day token allowance.

Reservation protocol:
1. ``reserve(user, estimate)`` atomically adds the estimate to today's
   counter unless that would exceed the limit (then: denied, nothing
   changes and no upstream call may happen).
2. ``commit(reservation, actual)`` replaces the estimate with the actual
   usage; a smaller actual releases the difference. Usage above the
   estimate is not charged: the commit is clamped to the estimate and the
   excess is logged and metered.

Failure policy: a call that fails unrecoverably (after retries), stalls or is
cancelled commits its full estimate. This prevents bypassing the budget with
repeated failing requests, at the cost of charging users for failed calls.

Because reservations already count against the limit and commits never
raise a counter above what was reserved, concurrent requests for the same
user cannot jointly overshoot it.

Counters are keyed by UTC calendar date, created lazily and never deleted.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis

from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import (
    record_budget_commit,
    record_budget_denial,
    record_budget_over_estimate,
)

logger = get_logger(__name__)


@dataclass
class BudgetCounter:
    """Tokens consumed by one user on one day."""

    user_id: str
    day: date
    tokens_consumed: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.tokens_consumed)


@dataclass
class Reservation:
    """Handle for tokens held against a counter until committed."""

    user_id: str
    day: date
    estimated_tokens: int
    committed: bool = False
    committed_tokens: Optional[int] = None


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a reservation attempt (Allowed carries the reservation)."""

    allowed: bool
    remaining: int
    limit: int
    reservation: Optional[Reservation] = None


class BudgetStore(ABC):
    """Atomic counter storage keyed by (user_id, day)."""

    @abstractmethod
    async def try_reserve(
        self, user_id: str, day: date, tokens: int, limit: int
    ) -> Tuple[bool, BudgetCounter]:
        """Add ``tokens`` unless consumed + tokens > limit. Returns (allowed, counter)."""

    @abstractmethod
    async def adjust(self, user_id: str, day: date, delta: int, limit: int) -> BudgetCounter:
        """Add ``delta`` (may be negative) to the counter."""

    @abstractmethod
    async def get(self, user_id: str, day: date, limit: int) -> BudgetCounter:
        """Read (and lazily create) the counter."""


class InMemoryBudgetStore(BudgetStore):
    """Process-local store; linearizable through a single asyncio lock."""

    def __init__(self):
        self._counters: Dict[Tuple[str, date], BudgetCounter] = {}
        self._lock = asyncio.Lock()

    def _counter(self, user_id: str, day: date, limit: int) -> BudgetCounter:
        key = (user_id, day)
        counter = self._counters.get(key)
        if counter is None:
            counter = BudgetCounter(user_id=user_id, day=day, tokens_consumed=0, limit=limit)
            self._counters[key] = counter
        return counter

    @staticmethod
    def _snapshot(counter: BudgetCounter) -> BudgetCounter:
        return BudgetCounter(counter.user_id, counter.day, counter.tokens_consumed, counter.limit)

    async def try_reserve(self, user_id, day, tokens, limit):
        async with self._lock:
            counter = self._counter(user_id, day, limit)
            if counter.tokens_consumed + tokens > counter.limit:
                return False, self._snapshot(counter)
            counter.tokens_consumed += tokens
            return True, self._snapshot(counter)

    async def adjust(self, user_id, day, delta, limit):
        async with self._lock:
            counter = self._counter(user_id, day, limit)
            counter.tokens_consumed = max(0, counter.tokens_consumed + delta)
            return self._snapshot(counter)

    async def get(self, user_id, day, limit):
        async with self._lock:
            return self._snapshot(self._counter(user_id, day, limit))


# Counter hash fields: consumed, limit. The limit is fixed when the counter is created.
_RESERVE_SCRIPT = """
redis.call('HSETNX', KEYS[1], 'limit', ARGV[2])
redis.call('HSETNX', KEYS[1], 'consumed', 0)
local limit = tonumber(redis.call('HGET', KEYS[1], 'limit'))
local consumed = tonumber(redis.call('HGET', KEYS[1], 'consumed'))
local tokens = tonumber(ARGV[1])
if consumed + tokens > limit then
  return {0, consumed, limit}
end
consumed = redis.call('HINCRBY', KEYS[1], 'consumed', tokens)
return {1, consumed, limit}
"""

_ADJUST_SCRIPT = """
redis.call('HSETNX', KEYS[1], 'limit', ARGV[2])
redis.call('HSETNX', KEYS[1], 'consumed', 0)
local consumed = redis.call('HINCRBY', KEYS[1], 'consumed', ARGV[1])
if consumed < 0 then
  redis.call('HSET', KEYS[1], 'consumed', 0)
  consumed = 0
end
return {consumed, tonumber(redis.call('HGET', KEYS[1], 'limit'))}
"""

_READ_SCRIPT = """
redis.call('HSETNX', KEYS[1], 'limit', ARGV[1])
redis.call('HSETNX', KEYS[1], 'consumed', 0)
return {tonumber(redis.call('HGET', KEYS[1], 'consumed')), tonumber(redis.call('HGET', KEYS[1], 'limit'))}
"""


class RedisBudgetStore(BudgetStore):
    """
    Redis-backed store; every operation is a single Lua script, so counters
    stay consistent across any number of processes.

    Key format: ``ai:budget:{user_id}:{YYYY-MM-DD}``
    """

    def __init__(self, client: Redis, key_prefix: str = "ai:budget"):
        self._client = client
        self._key_prefix = key_prefix
        self._reserve = client.register_script(_RESERVE_SCRIPT)
        self._adjust = client.register_script(_ADJUST_SCRIPT)
        self._read = client.register_script(_READ_SCRIPT)

    def _key(self, user_id: str, day: date) -> str:
        return f"{self._key_prefix}:{user_id}:{day.isoformat()}"

    async def try_reserve(self, user_id, day, tokens, limit):
        allowed, consumed, stored_limit = await self._reserve(
            keys=[self._key(user_id, day)], args=[tokens, limit]
        )
        return bool(int(allowed)), BudgetCounter(user_id, day, int(consumed), int(stored_limit))

    async def adjust(self, user_id, day, delta, limit):
        consumed, stored_limit = await self._adjust(
            keys=[self._key(user_id, day)], args=[delta, limit]
        )
        return BudgetCounter(user_id, day, int(consumed), int(stored_limit))

    async def get(self, user_id, day, limit):
        consumed, stored_limit = await self._read(keys=[self._key(user_id, day)], args=[limit])
        return BudgetCounter(user_id, day, int(consumed), int(stored_limit))


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class BudgetLedger:
    """
    Per-user daily token ledger.

    Args:
        store: Counter storage (in-memory or Redis)
        daily_limit: Default tokens per user per day
        limit_overrides: Optional per-user limits
        today: Clock returning the current UTC date (injectable for tests)
    """

    def __init__(
        self,
        store: BudgetStore,
        daily_limit: int,
        limit_overrides: Optional[Dict[str, int]] = None,
        today: Callable[[], date] = utc_today,
    ):
        if daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")
        self.store = store
        self.daily_limit = daily_limit
        self.limit_overrides = dict(limit_overrides or {})
        self._today = today

    def limit_for(self, user_id: str) -> int:
        return self.limit_overrides.get(user_id, self.daily_limit)

    async def reserve(self, user_id: str, estimated_tokens: int) -> BudgetDecision:
        """Atomically hold ``estimated_tokens`` against today's counter, or deny."""
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens must be >= 0")

        day = self._today()
        allowed, counter = await self.store.try_reserve(
            user_id, day, estimated_tokens, self.limit_for(user_id)
        )
        if not allowed:
            record_budget_denial()
            logger.info(
                "budget_reservation_denied",
                user_id=user_id,
                requested=estimated_tokens,
                remaining=counter.remaining,
                limit=counter.limit,
            )
            return BudgetDecision(allowed=False, remaining=counter.remaining, limit=counter.limit)

        logger.debug(
            "budget_reserved",
            user_id=user_id,
            reserved=estimated_tokens,
            consumed=counter.tokens_consumed,
            limit=counter.limit,
        )
        return BudgetDecision(
            allowed=True,
            remaining=counter.remaining,
            limit=counter.limit,
            reservation=Reservation(user_id=user_id, day=day, estimated_tokens=estimated_tokens),
        )

    async def commit(self, reservation: Reservation, actual_tokens: int) -> Optional[BudgetCounter]:
        """
        Replace the reservation's estimate with ``actual_tokens``.

        Committing an already-committed reservation is a no-op (returns None).
        Usage above the estimate is clamped to the estimate.
        """
        if reservation.committed:
            logger.debug("budget_commit_ignored", user_id=reservation.user_id)
            return None
        actual_tokens = max(0, int(actual_tokens))
        excess = actual_tokens - reservation.estimated_tokens
        if excess > 0:
            record_budget_over_estimate(excess)
            logger.warning(
                "budget_usage_over_estimate",
                user_id=reservation.user_id,
                estimated=reservation.estimated_tokens,
                actual=actual_tokens,
                excess=excess,
            )
            actual_tokens = reservation.estimated_tokens
        reservation.committed = True
        reservation.committed_tokens = actual_tokens

        delta = actual_tokens - reservation.estimated_tokens
        counter = await self.store.adjust(
            reservation.user_id, reservation.day, delta, self.limit_for(reservation.user_id)
        )
        record_budget_commit(actual_tokens, source="usage")
        logger.debug(
            "budget_committed",
            user_id=reservation.user_id,
            estimated=reservation.estimated_tokens,
            actual=actual_tokens,
            consumed=counter.tokens_consumed,
        )
        return counter

    async def commit_estimate(self, reservation: Reservation, reason: str) -> Optional[BudgetCounter]:
        """Charge the full estimate for a failed, stalled or cancelled call."""
        if reservation.committed:
            return None
        reservation.committed = True
        reservation.committed_tokens = reservation.estimated_tokens
        record_budget_commit(reservation.estimated_tokens, source="estimate")
        logger.info(
            "budget_estimate_committed",
            user_id=reservation.user_id,
            estimated=reservation.estimated_tokens,
            reason=reason,
        )
        return await self.store.get(
            reservation.user_id, reservation.day, self.limit_for(reservation.user_id)
        )

    async def get_counter(self, user_id: str) -> BudgetCounter:
        return await self.store.get(user_id, self._today(), self.limit_for(user_id))

    async def remaining(self, user_id: str) -> int:
        """Tokens left for today, for display."""
        return (await self.get_counter(user_id)).remaining
