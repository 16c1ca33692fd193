"""
Process-scoped Redis handle for the ephemeral session store.

Created once on application startup and closed on shutdown. The session
manager, the rate limiter and the maintenance CLI all receive the client
from here instead of creating their own connections.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from app.core.config import settings
from app.utils.logger import get_logger

logger = get_logger(__name__)


class RedisResource:
    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or settings.redis_url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> redis.Redis:
        """
        Create the client and verify the server answers.

        Raises:
            redis.ConnectionError: if Redis cannot be reached.
        """
        if self._client is None:
            client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            try:
                await client.ping()
            except redis.ConnectionError as e:
                logger.error("Failed to connect to Redis.", error=str(e))
                await client.aclose()
                raise
            self._client = client
            logger.info("Successfully connected to Redis.")
        return self._client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis is not connected; call connect() first")
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed.")
