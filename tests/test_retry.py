"""Tests for bounded retry with backoff."""

import pytest

from mailsync.core.config import Config
from mailsync.core.exceptions import (
    ItemGoneError,
    ProviderAuthError,
    RetriesExhaustedError,
    TransientProviderError,
)
from mailsync.utils.retry import RetryPolicy, with_retry


class Flaky:
    """Raise the queued errors in order, then return ``"ok"``."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures(retry_policy, sleeps):
    action = Flaky(*[TransientProviderError("503", 503)] * 4)

    assert await with_retry(action, retry_policy) == "ok"
    assert action.calls == 5
    assert sleeps.delays == [2.5, 4.5, 8.5, 16.5]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(retry_policy, sleeps):
    action = Flaky(*[TransientProviderError("timeout")] * 5)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await with_retry(action, retry_policy, description="Gmail messages.get")

    assert action.calls == 5
    assert excinfo.value.attempts == 5
    assert isinstance(excinfo.value.__cause__, TransientProviderError)
    assert len(sleeps.delays) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ItemGoneError("gone", 404), ProviderAuthError("denied", 401)])
async def test_non_transient_errors_are_not_retried(retry_policy, sleeps, error):
    action = Flaky(error)

    with pytest.raises(type(error)):
        await with_retry(action, retry_policy)

    assert action.calls == 1
    assert sleeps.delays == []


def test_backoff_grows_exponentially_with_bounded_jitter():
    policy = RetryPolicy(base_delay=0.5, max_jitter=2.0, rng=lambda: 0.25)
    assert [policy.backoff_delay(n) for n in (1, 2, 3)] == [1.5, 2.5, 4.5]


def test_policy_from_config():
    policy = RetryPolicy.from_config(
        Config(RETRY_MAX_ATTEMPTS=3, RETRY_BASE_DELAY_SECONDS=2.0, RETRY_MAX_JITTER_SECONDS=0.0)
    )
    assert (policy.max_attempts, policy.base_delay, policy.max_jitter) == (3, 2.0, 0.0)
