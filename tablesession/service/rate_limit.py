from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from tablesession.logging import get_logger
from tablesession.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    degraded: bool = False

    @property
    def retry_after(self) -> int:
        return max(1, self.reset_at - int(time.time()))


class RateLimiter:
    """Fixed-window counters keyed ``{scope}:{identity}:{window}``.

    Counters live in Redis when a cache is configured and in process memory
    otherwise. A failing or slow cache lets the request through and logs
    ``rate_limit_degraded``.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        timeout_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._local: Dict[str, Tuple[int, float]] = {}
        self._local_lock = threading.Lock()

    def _window_index(self, window_seconds: int) -> int:
        return int(self._clock() // window_seconds)

    def build_key(self, scope: str, identity: str, window_seconds: int) -> str:
        return f"{scope}:{identity or 'unknown'}:{self._window_index(window_seconds)}"

    def _window_reset_at(self, key: str, window_seconds: int) -> int:
        try:
            window_index = int(key.rsplit(":", 1)[1])
        except (IndexError, ValueError):
            window_index = self._window_index(window_seconds)
        return (window_index + 1) * window_seconds

    def _local_increment(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        with self._local_lock:
            if len(self._local) > 10000:
                self._local = {k: v for k, v in self._local.items() if v[1] > now}
            count, expires_at = self._local.get(key, (0, now + window_seconds))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._local[key] = (count, expires_at)
            return count

    async def increment(self, key: str, window_seconds: int) -> int:
        """Count one hit against ``key``; raises if the cache call fails."""
        if not self.cache:
            return self._local_increment(key, window_seconds)
        count, _ttl = await asyncio.wait_for(
            self.cache.incr_window(key, window_seconds), timeout=self.timeout_seconds
        )
        return count

    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        reset_at = self._window_reset_at(key, window_seconds)
        if max_requests <= 0:
            return RateLimitResult(True, max_requests, 0, reset_at)
        try:
            count = await self.increment(key, window_seconds)
        except Exception as exc:
            logger.warning(
                "rate_limit_degraded",
                key=key,
                error=str(exc) or exc.__class__.__name__,
                mode="fail_open",
            )
            return RateLimitResult(True, max_requests, max_requests, reset_at, degraded=True)
        allowed = count <= max_requests
        if not allowed:
            logger.info("rate_limit_exceeded", key=key, count=count, limit=max_requests)
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
        )

    async def hit(
        self, scope: str, identity: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        key = self.build_key(scope, identity, window_seconds)
        return await self.check_limit(key, max_requests, window_seconds)

    async def reset(self, key: str) -> None:
        with self._local_lock:
            self._local.pop(key, None)
        if self.cache:
            await self.cache.reset_key(key)
