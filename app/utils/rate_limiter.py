"""
Redis-backed fixed-window rate limiting for the security endpoints.

Each caller gets a counter key that lives for one window; the first request
in a window starts the clock. The limiter fails open: when Redis is
unavailable the request is allowed and the error logged, so device
management never becomes unreachable because of the limiter itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.security.monitoring.security_metrics import BLOCKED_REQUESTS_TOTAL
from app.utils.error_handler import RateLimitExceededError
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int


class RedisFixedWindowLimiter:
    def __init__(
        self,
        name: str,
        client: redis.Redis,
        *,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> None:
        self.name = name
        self.client = client
        self.max_requests = max_requests or settings.SECURITY_RATE_LIMIT_REQUESTS
        self.window = window_seconds or settings.SECURITY_RATE_LIMIT_WINDOW_SECONDS

    def _key(self, identity: str) -> str:
        return f"rate:{self.name}:{identity}"

    async def hit(self, identity: str) -> RateLimitResult:
        key = self._key(identity)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                # NX: only the first hit of a window sets the expiry
                pipe.expire(key, self.window, nx=True)
                pipe.ttl(key)
                count, _, ttl = await pipe.execute()
        except RedisError as e:
            logger.error("redis_rate_limiter_error", limiter=self.name, error=str(e))
            return RateLimitResult(allowed=True, remaining=self.max_requests, retry_after=0)

        count = int(count)
        ttl = int(ttl) if ttl and int(ttl) > 0 else self.window
        return RateLimitResult(
            allowed=count <= self.max_requests,
            remaining=max(0, self.max_requests - count),
            retry_after=ttl,
        )

    async def check(self, identity: str) -> None:
        """
        Count one request for ``identity``.

        Raises:
            RateLimitExceededError: once the window's budget is spent.
        """
        result = await self.hit(identity)
        if not result.allowed:
            BLOCKED_REQUESTS_TOTAL.labels(control=f"rate_limit:{self.name}").inc()
            logger.warning(
                "rate_limit_exceeded", limiter=self.name, identity=identity
            )
            raise RateLimitExceededError(retry_after=result.retry_after)
