# omintel/ratelimit.py
import logging
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window counter in Redis."""

    def __init__(self, redis_client):
        self.redis = redis_client

    async def allow_request(self, key: str, limit: int, period: int = 60) -> bool:
        now = int(time.time())
        bucket_key = f"rate:{key}:{now // period}"
        try:
            val = await self.redis.incr(bucket_key)
            if val == 1:
                await self.redis.expire(bucket_key, period + 1)
        except Exception:
            # fail open
            logger.exception("Rate limiter unavailable; allowing %s", key)
            return True
        return val <= limit
