import pytest

from winfleet.utils.async_retry import async_retry
from winfleet.utils.backoff import BackoffPolicy


def test_delay_grows_geometrically_until_capped():
    policy = BackoffPolicy(initial=2.0, multiplier=2.0, maximum=30.0)
    assert [policy.delay(n) for n in range(1, 7)] == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_delay_never_overflows():
    policy = BackoffPolicy(initial=1.0, multiplier=10.0, maximum=60.0)
    assert policy.delay(10_000) == 60.0


def test_attempts_below_one_use_initial_delay():
    policy = BackoffPolicy(initial=0.5, multiplier=3.0, maximum=10.0)
    assert policy.delay(0) == 0.5
    assert policy.delay(-3) == 0.5


def test_constant_policy():
    policy = BackoffPolicy(initial=1.0, multiplier=1.0, maximum=1.0)
    assert policy.delay(50) == 1.0


def test_maximum_below_initial_rejected():
    with pytest.raises(ValueError):
        BackoffPolicy(initial=5.0, multiplier=2.0, maximum=1.0)


@pytest.mark.asyncio
async def test_async_retry_retries_until_success():
    calls = []

    @async_retry(retries=3, policy=BackoffPolicy(initial=0.001, multiplier=1.0, maximum=0.001))
    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("not yet")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_async_retry_only_retries_matching_errors():
    calls = []

    @async_retry(retries=5, policy=BackoffPolicy(initial=0.001, maximum=0.001), retry_on=(KeyError,))
    async def broken() -> None:
        calls.append(1)
        raise ValueError("fatal")

    with pytest.raises(ValueError):
        await broken()
    assert len(calls) == 1
