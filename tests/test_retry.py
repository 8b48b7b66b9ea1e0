import pytest

from boxoffice.core.errors import (
    InsufficientInventory,
    RetryExhausted,
    TransientFulfillmentError,
    is_retryable,
)
from boxoffice.services.retry_service import RetryPolicy, retry_with_backoff

from conftest import NO_DELAY


class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_backoff_doubles_and_is_capped():
    policy = RetryPolicy(attempts=8, base_delay=0.5, max_delay=10.0, jitter=0.5)
    delays = [policy.delay_for(n, rand=lambda: 0.0) for n in range(6)]
    assert delays == [0.5, 1.0, 2.0, 4.0, 8.0, 10.0]

    assert policy.delay_for(0, rand=lambda: 1.0) == 1.0
    assert policy.delay_for(10, rand=lambda: 1.0) == 10.0


def test_error_classification():
    assert is_retryable(TransientFulfillmentError("db blip"))
    assert is_retryable(ConnectionError("reset"))
    assert is_retryable(TimeoutError())
    assert not is_retryable(InsufficientInventory("GA", 2, 1))
    assert not is_retryable(ValueError("bad input"))


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success():
    calls = 0
    sleep = Recorder()

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransientFulfillmentError("datastore timeout")
        return "done"

    policy = RetryPolicy(attempts=5, base_delay=0.5, max_delay=10.0, jitter=0.0)
    assert await retry_with_backoff(flaky, policy=policy, sleep=sleep) == "done"
    assert calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried():
    calls = 0

    async def sold_out():
        nonlocal calls
        calls += 1
        raise InsufficientInventory("GA", 1, 0)

    with pytest.raises(InsufficientInventory):
        await retry_with_backoff(sold_out, policy=NO_DELAY, sleep=Recorder())
    assert calls == 1


@pytest.mark.asyncio
async def test_attempts_are_bounded():
    calls = 0
    sleep = Recorder()

    async def always_down():
        nonlocal calls
        calls += 1
        raise TransientFulfillmentError("still down")

    with pytest.raises(RetryExhausted) as exc_info:
        await retry_with_backoff(always_down, policy=NO_DELAY, sleep=sleep)

    assert calls == 5
    assert len(sleep.delays) == 4
    assert exc_info.value.attempts == 5
    assert isinstance(exc_info.value.last_error, TransientFulfillmentError)
