import time
import logging

import redis.asyncio as redis

from cafeloyalty.errors import RateLimited


logger = logging.getLogger(__name__)


def rl_key(user_id: int) -> str:
    return f"rate_limit:order:{user_id}"


class OrderRateLimiter:
    """One order per user per window, shared across processes through redis."""

    def __init__(self, r: redis.Redis, window_seconds: int):
        self._redis = r
        self._window = window_seconds

    async def check(self, user_id: int) -> None:
        if self._window <= 0:
            return
        acquired = await self._redis.set(rl_key(user_id), str(time.time()), ex=self._window, nx=True)
        if not acquired:
            logger.info("Order from %s rejected by rate limit (%ss)", user_id, self._window)
            raise RateLimited(f"Order already placed recently, try again in {self._window} seconds")

    async def release(self, user_id: int) -> None:
        if self._window <= 0:
            return
        await self._redis.delete(rl_key(user_id))
