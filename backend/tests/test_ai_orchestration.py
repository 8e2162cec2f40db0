"""
End-to-end tests for AIOrchestrationService with a scripted provider.

These tests use in-memory stores and StubProvider only and do NOT perform
real HTTP calls.
"""
import asyncio

import pytest

from advisor_ai.core.errors import (
    BudgetExceededError,
    SchemaValidationError,
    UpstreamPermanentError,
    UpstreamUnavailableError,
)
from advisor_ai.services.ai.llm_client import ProviderPermanentError, ProviderTransientError

from conftest import CANDIDATES, CLIENT_PROFILE, RECOMMENDATION, SUITABILITY, StubProvider, make_service


async def consumed(service, user_id="u1"):
    return (await service.ledger.get_counter(user_id)).tokens_consumed


@pytest.mark.asyncio
async def test_concurrent_identical_recommendations_share_one_call():
    """Scenario: two concurrent identical requests → one provider call, identical results."""
    provider = StubProvider(responses=[RECOMMENDATION], delay=0.05)
    service = make_service(provider)

    first, second = await asyncio.gather(
        service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES),
        service.recommend_products("u2", CLIENT_PROFILE, CANDIDATES),
    )

    assert len(provider.calls) == 1
    assert first == second
    assert [item.product_id for item in first.recommendations] == ["p-1", "p-2"]
    # Only the leader's user is charged.
    assert await consumed(service, "u1") + await consumed(service, "u2") == 150


@pytest.mark.asyncio
async def test_cache_hit_costs_no_budget():
    provider = StubProvider(responses=[RECOMMENDATION])
    service = make_service(provider)

    await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)
    spent = await consumed(service)
    await service.recommend_products("u1", CLIENT_PROFILE, list(reversed(CANDIDATES)))

    assert len(provider.calls) == 1
    assert await consumed(service) == spent == 150


@pytest.mark.asyncio
async def test_recommendation_outside_candidates_is_repaired_once():
    bad = {"recommendations": [{"product_id": "p-9", "rank": 1, "rationale": "not offered"}]}
    provider = StubProvider(responses=[bad, RECOMMENDATION])
    service = make_service(provider)

    result = await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)

    assert len(provider.calls) == 2
    assert result.recommendations[0].product_id == "p-1"
    assert await consumed(service) == 300


@pytest.mark.asyncio
async def test_budget_exhausted_before_provider_call():
    """Scenario: limit 1000 with 950 consumed → denied and the provider is never called."""
    provider = StubProvider(responses=[RECOMMENDATION])
    service = make_service(provider, daily_token_limit=1000)
    decision = await service.ledger.reserve("u1", 950)
    await service.ledger.commit(decision.reservation, 950)

    with pytest.raises(BudgetExceededError) as exc_info:
        await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)

    assert exc_info.value.remaining == 50
    assert provider.calls == []
    assert await consumed(service) == 950


@pytest.mark.asyncio
async def test_malformed_extraction_fails_after_one_repair():
    """Scenario: malformed output twice → exactly two provider calls, then a validation error."""
    provider = StubProvider(responses=["this is not json"])
    service = make_service(provider)

    with pytest.raises(SchemaValidationError) as exc_info:
        await service.extract_document("u1", "Name: Jane Doe\nDOB: 1980-01-01", ["name", "dob"])

    assert exc_info.value.feature == "extraction"
    assert len(provider.calls) == 2
    # Both attempts are budgeted separately.
    assert await consumed(service) == 300


@pytest.mark.asyncio
async def test_failed_calls_are_not_cached():
    provider = StubProvider(
        responses=[ProviderTransientError("overloaded", 503), ProviderTransientError("overloaded", 503), RECOMMENDATION]
    )
    service = make_service(provider)

    with pytest.raises(UpstreamUnavailableError):
        await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)
    result = await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)

    assert len(provider.calls) == 3
    assert result.recommendations


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    provider = StubProvider(responses=[ProviderPermanentError("invalid api key", 401)])
    service = make_service(provider)

    with pytest.raises(UpstreamPermanentError):
        await service.explain_quote("u1", {"premium": 120, "term_years": 20})

    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_suitability_flags_and_acknowledgment_gate():
    """Scenario: acknowledging the only blocking item opens the submission gate."""
    provider = StubProvider(responses=[SUITABILITY])
    service = make_service(provider)
    snapshot = {"annual_income": 18000, "premium_monthly": 900}
    product = {"product_id": "p-1", "name": "Level Term"}

    check = await service.check_suitability("u1", "app-1", snapshot, product)

    assert check.result.passed is False
    assert check.flag_set.model_version == "test-model:suitability-v2"
    assert await service.flags_all_acknowledged(check.flag_set.id) is False

    ack = await service.acknowledge_flag(check.flag_set.id, "income-mismatch", "Verified by payslip", user_id="u1")

    assert ack.already_acknowledged is False
    assert ack.flag.acknowledgment.acknowledged_by == "u1"
    assert await service.flags_all_acknowledged(check.flag_set.id) is True


@pytest.mark.asyncio
async def test_suitability_rerun_supersedes_previous_flag_set():
    provider = StubProvider(responses=[SUITABILITY])
    service = make_service(provider)
    product = {"product_id": "p-1"}

    first = await service.check_suitability("u1", "app-1", {"annual_income": 18000}, product)
    second = await service.check_suitability("u1", "app-1", {"annual_income": 52000}, product)

    history = await service.list_flag_sets("app-1")
    assert [flag_set.id for flag_set in history] == [second.flag_set.id, first.flag_set.id]
    assert history[1].superseded is True
    assert history[0].superseded is False


@pytest.mark.asyncio
async def test_extraction_and_explanation_results():
    provider = StubProvider(
        responses=[
            {"fields": {"name": "Jane Doe"}, "confidence": "low", "requires_review": True},
            {"explanation": "Your premium stays the same for 20 years."},
        ]
    )
    service = make_service(provider)

    extraction = await service.extract_document("u1", "Name: Jane Doe")
    explanation = await service.explain_quote("u1", {"premium": 120, "term_years": 20})

    assert extraction.fields == {"name": "Jane Doe"}
    assert extraction.requires_review is True
    assert explanation.explanation.startswith("Your premium")


@pytest.mark.asyncio
async def test_invalid_inputs_rejected_without_budget():
    provider = StubProvider(responses=[RECOMMENDATION])
    service = make_service(provider)

    with pytest.raises(ValueError):
        await service.recommend_products("u1", CLIENT_PROFILE, [])
    with pytest.raises(ValueError):
        await service.recommend_products("u1", CLIENT_PROFILE, [{"product_id": "p-1"}, {"product_id": "p-1"}])
    with pytest.raises(ValueError):
        await service.extract_document("u1", "   ")

    assert provider.calls == []
    assert await consumed(service) == 0


@pytest.mark.asyncio
async def test_remaining_budget_reflects_usage():
    provider = StubProvider(responses=[RECOMMENDATION])
    service = make_service(provider, daily_token_limit=5000)

    await service.recommend_products("u1", CLIENT_PROFILE, CANDIDATES)
    counter = await service.remaining_budget("u1")

    assert counter.tokens_consumed == 150
    assert counter.remaining == 4850
    assert counter.limit == 5000
