from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows, OTP challenges and the access-token deny-list."""

    # INCR and the first-hit EXPIRE must happen together, otherwise a crash
    # between them leaves a counter that never resets.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _rate_key(key: str) -> str:
        return f"rate:{key}"

    @staticmethod
    def _denylist_key(jti: str) -> str:
        return f"auth:access:denylist:{jti}"

    @staticmethod
    def _otp_key(phone: str) -> str:
        return f"auth:otp:{phone}"

    @staticmethod
    def _otp_block_key(phone: str) -> str:
        return f"auth:otp:block:{phone}"

    @staticmethod
    def _load_challenge(cached: Optional[str]) -> Optional[Dict[str, Any]]:
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def incr_window(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        """Count one hit in a fixed window; returns ``(count, seconds_left)``."""
        count, ttl = await self._fixed_window(
            keys=[self._rate_key(key)], args=[max(1, int(ttl_seconds))]
        )
        return int(count), int(ttl)

    async def reset_key(self, key: str) -> None:
        await self.client.delete(self._rate_key(key))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token id to the deny-list until the token would expire anyway."""
        if ttl_seconds > 0:
            await self.client.set(self._denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(self._denylist_key(jti)))

    async def set_otp_challenge(
        self, phone: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._otp_key(phone), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_otp_challenge(self, phone: str) -> Optional[Dict[str, Any]]:
        return self._load_challenge(await self.client.get(self._otp_key(phone)))

    async def delete_otp_challenge(self, phone: str) -> bool:
        """Drop the pending challenge; ``False`` when another request already did."""
        return bool(await self.client.delete(self._otp_key(phone)))

    async def block_phone(self, phone: str, ttl_seconds: int) -> None:
        await self.client.set(self._otp_block_key(phone), "1", ex=max(1, int(ttl_seconds)))

    async def phone_block_ttl(self, phone: str) -> int:
        """Seconds left on a phone block, 0 when the phone is not blocked."""
        ttl = await self.client.ttl(self._otp_block_key(phone))
        return max(0, int(ttl or 0))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally so nothing binds to the event loop of
    one ``asyncio.run`` call, while exposing the same awaitable methods as
    ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def incr_window(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        count, ttl = self._fixed_window(
            keys=[RedisCache._rate_key(key)], args=[max(1, int(ttl_seconds))]
        )
        return int(count), int(ttl)

    async def reset_key(self, key: str) -> None:
        self._sync_client.delete(RedisCache._rate_key(key))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(
                RedisCache._denylist_key(jti), "1", ex=ttl_seconds
            )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._denylist_key(jti)))

    async def set_otp_challenge(
        self, phone: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            RedisCache._otp_key(phone), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_otp_challenge(self, phone: str) -> Optional[Dict[str, Any]]:
        return RedisCache._load_challenge(self._sync_client.get(RedisCache._otp_key(phone)))

    async def delete_otp_challenge(self, phone: str) -> bool:
        return bool(self._sync_client.delete(RedisCache._otp_key(phone)))

    async def block_phone(self, phone: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            RedisCache._otp_block_key(phone), "1", ex=max(1, int(ttl_seconds))
        )

    async def phone_block_ttl(self, phone: str) -> int:
        ttl = self._sync_client.ttl(RedisCache._otp_block_key(phone))
        return max(0, int(ttl or 0))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
