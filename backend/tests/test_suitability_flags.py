"""
Unit tests for the Suitability Flag Store.

Tests verify:
- all_acknowledged is true iff every blocking item is acknowledged
- Acknowledgment is terminal and idempotent
- Per-application write locks do not outlive their users
- A new flag set supersedes the previous one (kept for audit)
- Redis repository writes through one transaction
"""
import asyncio
import gc
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from advisor_ai.core.errors import NotFoundError
from advisor_ai.services.suitability.flags import (
    InMemoryFlagSetRepository,
    RedisFlagSetRepository,
    SuitabilityFlagSet,
    SuitabilityFlagStore,
)

from conftest import SUITABILITY


@pytest.fixture
def store():
    return SuitabilityFlagStore(InMemoryFlagSetRepository())


def blocking(item_id, field="annual_income"):
    return {"item_id": item_id, "field": field, "severity": "blocking", "issue": "problem", "suggestion": "fix"}


def warning(item_id):
    return {"item_id": item_id, "field": "notes", "severity": "warning", "issue": "minor", "suggestion": ""}


@pytest.mark.asyncio
async def test_acknowledging_only_blocking_item_unlocks_submission(store):
    """Scenario: 'income-mismatch' acknowledged → all_acknowledged() becomes true."""
    flag_set = await store.create_flag_set("app-1", SUITABILITY["flags"], model_version="m:v2")
    assert await store.all_acknowledged(flag_set.id) is False

    result = await store.acknowledge(flag_set.id, "income-mismatch", "Income verified by payslip", "adviser-1")

    assert result.already_acknowledged is False
    assert result.flag.acknowledgment.override_reason == "Income verified by payslip"
    assert result.flag.acknowledgment.acknowledged_by == "adviser-1"
    # The warning item does not gate submission.
    assert await store.all_acknowledged(flag_set.id) is True


@pytest.mark.asyncio
async def test_single_unacknowledged_blocking_item_keeps_gate_closed(store):
    flag_set = await store.create_flag_set("app-1", [blocking("a"), blocking("b"), warning("c")], "m:v2")

    await store.acknowledge(flag_set.id, "a", "reason")

    assert await store.all_acknowledged(flag_set.id) is False
    assert (await store.get_flag_set(flag_set.id)).pending_blocking_items() == ["b"]


@pytest.mark.asyncio
async def test_no_blocking_items_is_acknowledged(store):
    flag_set = await store.create_flag_set("app-1", [warning("c")], "m:v2")

    assert flag_set.passed is True
    assert await store.all_acknowledged(flag_set.id) is True


@pytest.mark.asyncio
async def test_reacknowledge_returns_existing_acknowledgment(store):
    flag_set = await store.create_flag_set("app-1", [blocking("a")], "m:v2")
    first = await store.acknowledge(flag_set.id, "a", "first reason", "adviser-1")

    second = await store.acknowledge(flag_set.id, "a", "second reason", "adviser-2")

    assert second.already_acknowledged is True
    assert second.flag.acknowledgment == first.flag.acknowledgment


@pytest.mark.asyncio
async def test_concurrent_acknowledgments_record_one(store):
    flag_set = await store.create_flag_set("app-1", [blocking("a")], "m:v2")

    results = await asyncio.gather(*[store.acknowledge(flag_set.id, "a", f"reason {i}") for i in range(5)])

    assert sum(1 for result in results if not result.already_acknowledged) == 1


@pytest.mark.asyncio
async def test_application_locks_are_dropped_when_idle(store):
    flag_sets = [await store.create_flag_set(f"app-{i}", [blocking("a")], "m:v2") for i in range(20)]
    await asyncio.gather(*[store.acknowledge(flag_set.id, "a", "reason") for flag_set in flag_sets])

    gc.collect()

    assert len(store._locks) == 0


@pytest.mark.asyncio
async def test_rerun_supersedes_previous_set(store):
    """Scenario: a suitability re-run creates a new set and marks the prior one superseded."""
    first = await store.create_flag_set("app-1", [blocking("a")], "m:v2")
    await store.acknowledge(first.id, "a", "ok")

    second = await store.create_flag_set("app-1", [blocking("b")], "m:v2")

    previous = await store.get_flag_set(first.id)
    assert previous.superseded is True
    assert previous.superseded_at is not None
    assert previous.item("a").is_acknowledged
    assert (await store.get_current_flag_set("app-1")).id == second.id
    assert [flag_set.id for flag_set in await store.list_flag_sets("app-1")] == [second.id, first.id]


@pytest.mark.asyncio
async def test_superseded_set_rejects_acknowledgment(store):
    first = await store.create_flag_set("app-1", [blocking("a")], "m:v2")
    await store.create_flag_set("app-1", [blocking("a")], "m:v2")

    with pytest.raises(NotFoundError):
        await store.acknowledge(first.id, "a", "too late")


@pytest.mark.asyncio
async def test_unknown_set_and_item(store):
    flag_set = await store.create_flag_set("app-1", [blocking("a")], "m:v2")

    with pytest.raises(NotFoundError):
        await store.acknowledge("missing", "a", "reason")
    with pytest.raises(NotFoundError):
        await store.acknowledge(flag_set.id, "missing", "reason")
    with pytest.raises(NotFoundError):
        await store.all_acknowledged("missing")


@pytest.mark.asyncio
async def test_blank_reason_rejected(store):
    flag_set = await store.create_flag_set("app-1", [blocking("a")], "m:v2")

    with pytest.raises(ValueError):
        await store.acknowledge(flag_set.id, "a", "   ")


@pytest.mark.asyncio
async def test_duplicate_item_ids_rejected(store):
    with pytest.raises(ValueError):
        await store.create_flag_set("app-1", [blocking("a"), warning("a")], "m:v2")


@pytest.mark.asyncio
async def test_sets_are_isolated_per_application(store):
    a = await store.create_flag_set("app-1", [blocking("a")], "m:v2")
    await store.create_flag_set("app-2", [blocking("a")], "m:v2")

    assert (await store.get_flag_set(a.id)).superseded is False


class TestRedisFlagSetRepository:
    def _flag_set(self, flag_set_id="fs-1"):
        return SuitabilityFlagSet(
            id=flag_set_id,
            application_id="app-1",
            passed=False,
            items=[blocking("a")],
            model_version="m:v2",
            created_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_get_roundtrips_json(self):
        flag_set = self._flag_set()
        client = AsyncMock()
        client.get.return_value = flag_set.model_dump_json()
        repository = RedisFlagSetRepository(client)

        loaded = await repository.get("fs-1")

        assert loaded == flag_set
        client.get.assert_awaited_once_with("suitability:flagset:fs-1")

    @pytest.mark.asyncio
    async def test_list_ids_newest_first(self):
        client = AsyncMock()
        client.lrange.return_value = ["fs-2", "fs-1"]
        repository = RedisFlagSetRepository(client)

        assert await repository.list_ids("app-1") == ["fs-2", "fs-1"]
        client.lrange.assert_awaited_once_with("suitability:application:app-1:history", 0, -1)

    @pytest.mark.asyncio
    async def test_replace_current_uses_transaction(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, True, True, 1])
        pipeline_cm = MagicMock()
        pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_cm.__aexit__ = AsyncMock(return_value=False)
        client = MagicMock()
        client.pipeline.return_value = pipeline_cm
        repository = RedisFlagSetRepository(client)

        previous = self._flag_set("fs-1")
        previous.superseded = True
        await repository.replace_current(self._flag_set("fs-2"), superseded=previous)

        client.pipeline.assert_called_once_with(transaction=True)
        written_keys = [call.args[0] for call in pipe.set.call_args_list]
        assert written_keys == [
            "suitability:flagset:fs-1",
            "suitability:flagset:fs-2",
            "suitability:application:app-1:current",
        ]
        pipe.lpush.assert_called_once_with("suitability:application:app-1:history", "fs-2")
        pipe.execute.assert_awaited_once()
