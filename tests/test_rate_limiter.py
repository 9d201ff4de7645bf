import asyncio

import pytest

from boards.services.rate_limiter import SimpleRateLimiter, TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_bucket_starts_full_and_drains():
    clock = FakeClock()
    bucket = TokenBucket(rate=2, capacity=3, clock=clock)

    async def scenario():
        results = [await bucket.acquire(timeout=0) for _ in range(4)]
        return results

    assert asyncio.run(scenario()) == [True, True, True, False]


def test_bucket_refills_with_time_up_to_capacity():
    clock = FakeClock()
    bucket = TokenBucket(rate=2, capacity=3, clock=clock)

    async def scenario():
        for _ in range(3):
            assert await bucket.acquire(timeout=0)
        clock.now += 0.5
        assert bucket.available == pytest.approx(1.0)
        clock.now += 100
        assert bucket.available == pytest.approx(3.0)

    asyncio.run(scenario())


def test_acquire_gives_up_when_wait_exceeds_timeout():
    clock = FakeClock()
    bucket = TokenBucket(rate=0.001, capacity=1, clock=clock)

    async def scenario():
        assert await bucket.acquire(timeout=0)
        # Next token is 1000s away
        return await bucket.acquire(timeout=5)

    assert asyncio.run(scenario()) is False


def test_acquire_waits_cooperatively_for_next_token():
    bucket = TokenBucket(rate=50, capacity=1)

    async def scenario():
        assert await bucket.acquire(timeout=1)
        return await bucket.acquire(timeout=1)

    assert asyncio.run(scenario()) is True


def test_bucket_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        TokenBucket(rate=0)
    with pytest.raises(ValueError):
        TokenBucket(rate=1, capacity=0)


def test_simple_rate_limiter_limits_per_user_and_command():
    limiter = SimpleRateLimiter()

    async def scenario():
        first = [await limiter.is_allowed(1, "board", limit=2, window=60) for _ in range(3)]
        other_user = await limiter.is_allowed(2, "board", limit=2, window=60)
        other_command = await limiter.is_allowed(1, "points", limit=2, window=60)
        return first, other_user, other_command

    first, other_user, other_command = asyncio.run(scenario())
    assert first == [True, True, False]
    assert other_user is True
    assert other_command is True
