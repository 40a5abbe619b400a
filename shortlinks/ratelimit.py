"""Fixed-window request rate limiting backed by Redis.

Flow Diagram — hit()
====================
::
    ┌─────────────┐
    │ INCR        │  key = ratelimit:<client>:<window index>
    └──────┬──────┘
    first? │
    ┌──────┴──────┐
    │ YES         │ NO
    ▼             │
┌─────────┐       │
│ EXPIRE  │       │
│ window  │       │
└────┬────┘       │
     └─────┬──────┘
           ▼
    count > limit? ──▶ RateLimitedError (429)

Key Behaviours
===============
- The counter expires with its window, so Redis never accumulates stale keys.
- Redis errors fail open: the request is allowed and a warning is logged.
"""

import logging
import time
from collections.abc import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from shortlinks.exceptions import RateLimitedError

__all__ = ["RateLimiter"]


class RateLimiter:
    def __init__(
        self,
        client: redis.Redis,
        limit: int,
        window_seconds: int,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "ratelimit",
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self._client = client
        self._limit = limit
        self._window_seconds = window_seconds
        self._logger = logger or logging.getLogger("shortlinks.ratelimit")
        self._clock = clock
        self._key_prefix = key_prefix

    def key_for(self, identity: str) -> str:
        window = int(self._clock() // self._window_seconds)
        return f"{self._key_prefix}:{identity}:{window}"

    async def hit(self, identity: str) -> int:
        """Count one request for ``identity`` in the current window.

        Returns:
            int: Requests seen in this window, 0 when Redis was unreachable.

        Raises:
            RateLimitedError: The window's limit is exceeded.
        """
        key = self.key_for(identity)
        try:
            count = await self._client.incr(key)
            if count == 1:
                await self._client.expire(key, self._window_seconds)
        except RedisError as exc:
            self._logger.warning(f"Rate limiter unavailable, allowing request: {exc}")
            return 0

        if count > self._limit:
            self._logger.info(f"Rate limit exceeded for {identity} ({count}/{self._limit})")
            raise RateLimitedError()
        return count
