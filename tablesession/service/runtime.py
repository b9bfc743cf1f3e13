from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tablesession.config import get_settings, reset_settings_cache
from tablesession.logging import get_logger
from tablesession.service.audit import AuditLogger
from tablesession.service.auth import AuthService
from tablesession.service.otp import LogOnlyOtpSender, OtpService
from tablesession.service.rate_limit import RateLimiter
from tablesession.service.rotation import RefreshRotationEngine
from tablesession.service.sessions import SessionRegistry
from tablesession.service.tokens import TokenCodec
from tablesession.storage.memory import MemoryStore
from tablesession.storage.postgres import PostgresStore
from tablesession.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode; nothing binds to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token deny-list and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; the access-token deny-list "
                    "and rate limits are per-process only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec(self.settings, self.cache)
        self.audit = AuditLogger(self.store)
        self.sessions = SessionRegistry(self.store, self.codec)
        self.rotation = RefreshRotationEngine(
            self.store, self.codec, self.sessions, self.audit, self.settings
        )
        self.rate_limiter = RateLimiter(
            self.cache, timeout_seconds=self.settings.cache_timeout_seconds
        )
        self.otp = OtpService(
            self.settings, self.cache, LogOnlyOtpSender(), self.rate_limiter
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            codec=self.codec,
            registry=self.sessions,
            rotation=self.rotation,
            audit=self.audit,
            otp=self.otp,
        )
        logger.info("runtime_init_completed", cache_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                logger.warning("runtime_close_skipped", reason="event_loop_running")
        runtime = Runtime()
        return runtime
