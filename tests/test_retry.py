import pytest

from portfolio_checkout.errors import CheckoutCancelled, NetworkOrTimeout
from portfolio_checkout.services.retry import RetryPolicy, retry


def script(*values):
    """Coroutine factory returning (or raising) the given values in order."""
    items = list(values)

    async def fn(attempt):
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item

    return fn


async def test_first_acceptable_value_returns_immediately(clock):
    outcome = await retry(script("done"), RetryPolicy(), should_retry=lambda v: v != "done", clock=clock)

    assert outcome.value == "done"
    assert outcome.attempts == 1
    assert not outcome.exhausted
    assert clock.sleeps == []


async def test_delay_grows_by_backoff_and_is_capped(clock):
    policy = RetryPolicy(max_attempts=6, initial_delay=2.0, backoff=1.5, max_delay=5.0, ceiling=600)
    outcome = await retry(
        script("pending", "pending", "pending", "pending", "pending", "ok"),
        policy,
        should_retry=lambda v: v == "pending",
        clock=clock,
    )

    assert outcome.value == "ok"
    assert outcome.attempts == 6
    assert clock.sleeps == [2.0, 3.0, 4.5, 5.0, 5.0]


async def test_gives_up_after_max_attempts(clock):
    policy = RetryPolicy(max_attempts=3, ceiling=600)
    outcome = await retry(script("pending"), policy, should_retry=lambda v: True, clock=clock)

    assert outcome.exhausted
    assert outcome.attempts == 3
    assert outcome.value == "pending"
    assert len(clock.sleeps) == 2


async def test_never_sleeps_past_the_ceiling(clock):
    policy = RetryPolicy(max_attempts=100, initial_delay=2.0, backoff=1.5, max_delay=5.0, ceiling=10.0)
    outcome = await retry(script("pending"), policy, should_retry=lambda v: True, clock=clock)

    assert outcome.exhausted
    assert outcome.elapsed <= policy.ceiling
    assert clock.sleeps == [2.0, 3.0, 4.5, 0.5]
    assert outcome.attempts == 5


async def test_listed_exceptions_are_retried(clock):
    outcome = await retry(
        script(NetworkOrTimeout(), "ok"),
        RetryPolicy(),
        should_retry=lambda v: False,
        clock=clock,
        retry_on=(NetworkOrTimeout,),
    )
    assert outcome.value == "ok"
    assert outcome.attempts == 2


async def test_exception_on_last_attempt_propagates(clock):
    with pytest.raises(NetworkOrTimeout):
        await retry(
            script(NetworkOrTimeout()),
            RetryPolicy(max_attempts=2),
            should_retry=lambda v: False,
            clock=clock,
            retry_on=(NetworkOrTimeout,),
        )


async def test_unlisted_exceptions_are_not_retried(clock):
    calls = []

    async def fn(attempt):
        calls.append(attempt)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await retry(fn, RetryPolicy(), should_retry=lambda v: True, clock=clock)
    assert calls == [1]


async def test_on_retry_sees_every_scheduled_wait(clock):
    seen = []
    await retry(
        script("pending", "pending", "ok"),
        RetryPolicy(max_attempts=5),
        should_retry=lambda v: v == "pending",
        clock=clock,
        on_retry=lambda attempt, wait, value, error: seen.append((attempt, wait, value)),
    )
    assert seen == [(1, 2.0, "pending"), (2, 3.0, "pending")]


async def test_cancellation_is_checked_before_each_attempt(clock):
    cancelled = {"flag": False}

    async def fn(attempt):
        cancelled["flag"] = True
        return "pending"

    with pytest.raises(CheckoutCancelled):
        await retry(
            fn,
            RetryPolicy(max_attempts=5),
            should_retry=lambda v: True,
            clock=clock,
            is_cancelled=lambda: cancelled["flag"],
        )
    assert len(clock.sleeps) == 1
