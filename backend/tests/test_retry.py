"""
Unit tests for the retry policy object.
"""
import pytest

from advisor_ai.core.retry import RetryPolicy, exponential_backoff, never_retry


class Flaky(Exception):
    pass


def test_exponential_backoff_doubles_and_caps():
    backoff = exponential_backoff(0.5, max_seconds=3.0)

    assert [backoff(attempt) for attempt in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]


def test_should_retry_respects_attempts_and_predicate():
    policy = RetryPolicy(max_attempts=2, retryable=lambda exc: isinstance(exc, Flaky))

    assert policy.should_retry(Flaky(), 1)
    assert not policy.should_retry(Flaky(), 2)
    assert not policy.should_retry(ValueError(), 1)


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


@pytest.mark.asyncio
async def test_run_retries_retryable_error_once():
    policy = RetryPolicy(max_attempts=2, backoff=lambda attempt: 0, retryable=lambda exc: isinstance(exc, Flaky))
    attempts = []
    retried = []

    async def operation(attempt):
        attempts.append(attempt)
        if attempt == 1:
            raise Flaky()
        return "ok"

    result = await policy.run(operation, on_retry=lambda exc, attempt: retried.append(attempt))

    assert result == "ok"
    assert attempts == [1, 2]
    assert retried == [1]


@pytest.mark.asyncio
async def test_run_reraises_after_last_attempt():
    policy = RetryPolicy(max_attempts=2, backoff=lambda attempt: 0, retryable=lambda exc: True)
    attempts = []

    async def operation(attempt):
        attempts.append(attempt)
        raise Flaky(f"attempt {attempt}")

    with pytest.raises(Flaky, match="attempt 2"):
        await policy.run(operation)
    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_never_retry_policy_runs_once():
    policy = RetryPolicy(max_attempts=3, retryable=never_retry)
    attempts = []

    async def operation(attempt):
        attempts.append(attempt)
        raise Flaky()

    with pytest.raises(Flaky):
        await policy.run(operation)
    assert attempts == [1]
