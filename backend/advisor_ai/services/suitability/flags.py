"""
Suitability Flag Store.

Persists the flags raised by a suitability check and the adviser's
acknowledgments of them.

Rules:
- At most one current (non-superseded) flag set per application; creating a
  new set supersedes the previous one, which is kept for audit
- Item state machine: Raised -> Acknowledged (terminal, no reversal)
- Re-acknowledging an acknowledged item returns the existing acknowledgment
- Only the current set accepts acknowledgments
- ``all_acknowledged`` is true iff every blocking item is acknowledged; it is
  the hard gate for application submission

Key format (Redis):
- ``suitability:flagset:{id}``: flag set JSON
- ``suitability:application:{application_id}:current``: current set id
- ``suitability:application:{application_id}:history``: set ids, newest first
"""
import asyncio
import uuid
import weakref
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field
from redis.asyncio import Redis

from advisor_ai.core.errors import NotFoundError
from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import record_acknowledgment
from advisor_ai.services.ai.schema import BLOCKING_SEVERITIES, Severity, SuitabilityFlag

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FlagAcknowledgment(BaseModel):
    override_reason: str
    acknowledged_at: datetime
    acknowledged_by: Optional[str] = None


class FlagItem(BaseModel):
    item_id: str
    field: str
    severity: Severity
    issue: str
    suggestion: str = ""
    acknowledgment: Optional[FlagAcknowledgment] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledgment is not None


class SuitabilityFlagSet(BaseModel):
    id: str
    application_id: str
    passed: bool
    items: List[FlagItem] = Field(default_factory=list)
    model_version: str
    created_at: datetime
    superseded: bool = False
    superseded_at: Optional[datetime] = None

    def item(self, item_id: str) -> Optional[FlagItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def all_acknowledged(self) -> bool:
        return all(item.is_acknowledged for item in self.items if item.is_blocking)

    def pending_blocking_items(self) -> List[str]:
        return [item.item_id for item in self.items if item.is_blocking and not item.is_acknowledged]


@dataclass(frozen=True)
class AcknowledgeResult:
    flag: FlagItem
    already_acknowledged: bool


class FlagSetRepository(ABC):
    """Flag set persistence."""

    @abstractmethod
    async def get(self, flag_set_id: str) -> Optional[SuitabilityFlagSet]:
        ...

    @abstractmethod
    async def get_current_id(self, application_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def list_ids(self, application_id: str) -> List[str]:
        """Set ids for an application, newest first."""

    @abstractmethod
    async def save(self, flag_set: SuitabilityFlagSet) -> None:
        ...

    @abstractmethod
    async def replace_current(
        self,
        flag_set: SuitabilityFlagSet,
        superseded: Optional[SuitabilityFlagSet] = None,
    ) -> None:
        """Store ``flag_set`` as the application's current set (and the superseded one)."""


class InMemoryFlagSetRepository(FlagSetRepository):
    def __init__(self):
        self._sets: Dict[str, SuitabilityFlagSet] = {}
        self._current: Dict[str, str] = {}
        self._history: Dict[str, List[str]] = defaultdict(list)

    async def get(self, flag_set_id):
        flag_set = self._sets.get(flag_set_id)
        return flag_set.model_copy(deep=True) if flag_set is not None else None

    async def get_current_id(self, application_id):
        return self._current.get(application_id)

    async def list_ids(self, application_id):
        return list(reversed(self._history.get(application_id, [])))

    async def save(self, flag_set):
        self._sets[flag_set.id] = flag_set.model_copy(deep=True)

    async def replace_current(self, flag_set, superseded=None):
        if superseded is not None:
            self._sets[superseded.id] = superseded.model_copy(deep=True)
        self._sets[flag_set.id] = flag_set.model_copy(deep=True)
        self._current[flag_set.application_id] = flag_set.id
        self._history[flag_set.application_id].append(flag_set.id)


class RedisFlagSetRepository(FlagSetRepository):
    """Redis-backed repository; multi-key writes go through one MULTI/EXEC."""

    def __init__(self, client: Redis, key_prefix: str = "suitability"):
        self._client = client
        self._key_prefix = key_prefix

    def _set_key(self, flag_set_id: str) -> str:
        return f"{self._key_prefix}:flagset:{flag_set_id}"

    def _current_key(self, application_id: str) -> str:
        return f"{self._key_prefix}:application:{application_id}:current"

    def _history_key(self, application_id: str) -> str:
        return f"{self._key_prefix}:application:{application_id}:history"

    async def get(self, flag_set_id):
        raw = await self._client.get(self._set_key(flag_set_id))
        if raw is None:
            return None
        return SuitabilityFlagSet.model_validate_json(raw)

    async def get_current_id(self, application_id):
        raw = await self._client.get(self._current_key(application_id))
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    async def list_ids(self, application_id):
        raw_ids = await self._client.lrange(self._history_key(application_id), 0, -1)
        return [value.decode("utf-8") if isinstance(value, bytes) else value for value in raw_ids]

    async def save(self, flag_set):
        await self._client.set(self._set_key(flag_set.id), flag_set.model_dump_json())

    async def replace_current(self, flag_set, superseded=None):
        async with self._client.pipeline(transaction=True) as pipe:
            if superseded is not None:
                pipe.set(self._set_key(superseded.id), superseded.model_dump_json())
            pipe.set(self._set_key(flag_set.id), flag_set.model_dump_json())
            pipe.set(self._current_key(flag_set.application_id), flag_set.id)
            pipe.lpush(self._history_key(flag_set.application_id), flag_set.id)
            await pipe.execute()


FlagInput = Union[SuitabilityFlag, Mapping[str, Any]]


class SuitabilityFlagStore:
    """
    Flag set lifecycle and acknowledgment workflow.

    Writes are serialized per application within this process.

    Args:
        repository: Persistence backend
        now: Clock returning an aware UTC datetime (injectable for tests)
    """

    def __init__(self, repository: FlagSetRepository, now: Callable[[], datetime] = utc_now):
        self.repository = repository
        self._now = now
        # Entries disappear once no coroutine holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, application_id: str) -> asyncio.Lock:
        lock = self._locks.get(application_id)
        if lock is None:
            lock = self._locks[application_id] = asyncio.Lock()
        return lock

    async def create_flag_set(
        self,
        application_id: str,
        flags: Sequence[FlagInput],
        model_version: str,
        passed: Optional[bool] = None,
    ) -> SuitabilityFlagSet:
        """
        Record a new flag set as the application's current set.

        Any previous current set is marked superseded. ``passed`` defaults to
        "no blocking flags".
        """
        items = [
            FlagItem(**(flag.model_dump() if isinstance(flag, SuitabilityFlag) else dict(flag)))
            for flag in flags
        ]
        item_ids = [item.item_id for item in items]
        if len(set(item_ids)) != len(item_ids):
            raise ValueError("flag item_id values must be unique within a set")
        if passed is None:
            passed = not any(item.is_blocking for item in items)

        async with self._lock_for(application_id):
            now = self._now()
            flag_set = SuitabilityFlagSet(
                id=str(uuid.uuid4()),
                application_id=application_id,
                passed=passed,
                items=items,
                model_version=model_version,
                created_at=now,
            )

            previous = None
            previous_id = await self.repository.get_current_id(application_id)
            if previous_id is not None:
                previous = await self.repository.get(previous_id)
                if previous is not None:
                    previous.superseded = True
                    previous.superseded_at = now

            await self.repository.replace_current(flag_set, superseded=previous)

        logger.info(
            "suitability_flag_set_created",
            application_id=application_id,
            flag_set_id=flag_set.id,
            items=len(items),
            blocking=sum(1 for item in items if item.is_blocking),
            superseded_flag_set_id=previous.id if previous is not None else None,
        )
        return flag_set

    async def acknowledge(
        self,
        flag_set_id: str,
        item_id: str,
        override_reason: str,
        acknowledged_by: Optional[str] = None,
    ) -> AcknowledgeResult:
        """
        Acknowledge one flag item.

        Raises:
            NotFoundError: unknown set, superseded set, or unknown item
            ValueError: blank override reason
        """
        if not override_reason or not override_reason.strip():
            raise ValueError("override_reason must not be blank")

        flag_set = await self._require(flag_set_id)
        async with self._lock_for(flag_set.application_id):
            # Re-read under the lock; a concurrent writer may have changed it.
            flag_set = await self._require(flag_set_id)
            if flag_set.superseded:
                raise NotFoundError(
                    f"Flag set {flag_set_id} has been superseded",
                    flag_set_id=flag_set_id,
                )

            item = flag_set.item(item_id)
            if item is None:
                raise NotFoundError(
                    f"Flag item {item_id} not found in flag set {flag_set_id}",
                    flag_set_id=flag_set_id,
                    item_id=item_id,
                )

            if item.is_acknowledged:
                record_acknowledgment(already_acknowledged=True)
                logger.info(
                    "suitability_flag_already_acknowledged",
                    flag_set_id=flag_set_id,
                    item_id=item_id,
                )
                return AcknowledgeResult(flag=item, already_acknowledged=True)

            item.acknowledgment = FlagAcknowledgment(
                override_reason=override_reason.strip(),
                acknowledged_at=self._now(),
                acknowledged_by=acknowledged_by,
            )
            await self.repository.save(flag_set)

        record_acknowledgment(already_acknowledged=False)
        logger.info(
            "suitability_flag_acknowledged",
            flag_set_id=flag_set_id,
            item_id=item_id,
            severity=item.severity.value,
            acknowledged_by=acknowledged_by,
        )
        return AcknowledgeResult(flag=item, already_acknowledged=False)

    async def all_acknowledged(self, flag_set_id: str) -> bool:
        return (await self._require(flag_set_id)).all_acknowledged()

    async def get_flag_set(self, flag_set_id: str) -> SuitabilityFlagSet:
        return await self._require(flag_set_id)

    async def get_current_flag_set(self, application_id: str) -> Optional[SuitabilityFlagSet]:
        current_id = await self.repository.get_current_id(application_id)
        if current_id is None:
            return None
        return await self.repository.get(current_id)

    async def list_flag_sets(self, application_id: str) -> List[SuitabilityFlagSet]:
        """All sets for an application (audit history), newest first."""
        flag_sets = []
        for flag_set_id in await self.repository.list_ids(application_id):
            flag_set = await self.repository.get(flag_set_id)
            if flag_set is not None:
                flag_sets.append(flag_set)
        return flag_sets

    async def _require(self, flag_set_id: str) -> SuitabilityFlagSet:
        flag_set = await self.repository.get(flag_set_id)
        if flag_set is None:
            raise NotFoundError(f"Flag set {flag_set_id} not found", flag_set_id=flag_set_id)
        return flag_set
