import pytest

from cafeloyalty.errors import RateLimited
from cafeloyalty.ratelimit import OrderRateLimiter, rl_key

from conftest import FakeRedis


async def test_second_order_in_window_is_rejected():
    r = FakeRedis()
    limiter = OrderRateLimiter(r, 60)

    await limiter.check(42)
    with pytest.raises(RateLimited) as exc:
        await limiter.check(42)

    assert exc.value.status == 429
    assert r.expiry[rl_key(42)] == 60


async def test_users_are_limited_separately():
    limiter = OrderRateLimiter(FakeRedis(), 60)
    await limiter.check(1)
    await limiter.check(2)


async def test_zero_window_disables_limit():
    r = FakeRedis()
    limiter = OrderRateLimiter(r, 0)
    await limiter.check(42)
    await limiter.check(42)
    assert r.data == {}


async def test_release_frees_the_slot():
    r = FakeRedis()
    limiter = OrderRateLimiter(r, 60)

    await limiter.check(42)
    await limiter.release(42)
    await limiter.check(42)

    assert rl_key(42) in r.data
