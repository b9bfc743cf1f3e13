from __future__ import annotations

import asyncio
import math
import re
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tablesession.config import Settings
from tablesession.logging import get_logger
from tablesession.service.errors import (
    OtpVerificationError,
    RateLimitedError,
    ServerError,
    StoreUnavailableError,
    ValidationError,
)
from tablesession.service.rate_limit import RateLimiter
from tablesession.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")

_PHONE_SEPARATORS = re.compile(r"[\s\-()]")
_PHONE_RE = re.compile(r"^\+?\d{7,15}$")


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    VERIFICATION = "verification"


def normalize_phone(phone: str) -> str:
    """Strip formatting characters; the result is the key codes are stored under."""
    normalized = _PHONE_SEPARATORS.sub("", phone or "")
    if not _PHONE_RE.match(normalized):
        raise ValidationError("Invalid phone number", detail={"field": "phone"})
    return normalized


def mask_phone(phone: str) -> str:
    if len(phone) <= 5:
        return "*" * len(phone)
    return phone[:3] + "*" * (len(phone) - 5) + phone[-2:]


class OtpSender(Protocol):
    """Delivers a code to a phone; SMS gateways implement this."""

    async def send(self, phone: str, code: str, purpose: OtpPurpose) -> None: ...


class LogOnlyOtpSender:
    """Default sender for deployments without an SMS gateway wired in."""

    async def send(self, phone: str, code: str, purpose: OtpPurpose) -> None:
        logger.warning(
            "otp_delivery_skipped", phone=mask_phone(phone), purpose=purpose.value
        )


@dataclass
class OtpIssue:
    phone: str
    expires_in: int
    purpose: OtpPurpose


class OtpService:
    """Issues and checks short numeric codes bound to a phone number.

    Challenges are stored hashed with a TTL, in Redis when a cache is
    configured and in process memory otherwise. A phone that asks for too many
    codes, or burns through its attempts, is blocked for ``otp_block_seconds``.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache],
        sender: OtpSender,
        limiter: RateLimiter,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.sender = sender
        self.limiter = limiter
        self._clock = clock
        self._hasher = PasswordHasher(type=Type.ID)
        self._challenges: Dict[str, Dict[str, Any]] = {}
        self._blocks: Dict[str, float] = {}
        self._state_lock = threading.Lock()

    async def _cache_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(
                call, timeout=self.settings.cache_timeout_seconds
            )
        except Exception as exc:
            logger.error("otp_cache_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                "One-time code store unavailable", detail={"operation": operation}
            ) from exc

    # challenge storage
    async def _get_challenge(self, phone: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            return await self._cache_call(
                "get_otp_challenge", self.cache.get_otp_challenge(phone)
            )
        with self._state_lock:
            challenge = self._challenges.get(phone)
            if challenge and challenge["expires_at"] <= self._clock():
                self._challenges.pop(phone, None)
                return None
            return dict(challenge) if challenge else None

    async def _put_challenge(self, phone: str, challenge: Dict[str, Any]) -> None:
        ttl = max(1, math.ceil(challenge["expires_at"] - self._clock()))
        if self.cache:
            await self._cache_call(
                "set_otp_challenge", self.cache.set_otp_challenge(phone, challenge, ttl)
            )
            return
        with self._state_lock:
            self._challenges[phone] = dict(challenge)

    async def _drop_challenge(self, phone: str) -> bool:
        if self.cache:
            return await self._cache_call(
                "delete_otp_challenge", self.cache.delete_otp_challenge(phone)
            )
        with self._state_lock:
            return self._challenges.pop(phone, None) is not None

    async def _block(self, phone: str) -> None:
        seconds = self.settings.otp_block_seconds
        logger.warning("otp_phone_blocked", phone=mask_phone(phone), seconds=seconds)
        if self.cache:
            await self._cache_call("block_phone", self.cache.block_phone(phone, seconds))
            return
        with self._state_lock:
            self._blocks[phone] = self._clock() + seconds

    async def _block_ttl(self, phone: str) -> int:
        if self.cache:
            return await self._cache_call(
                "phone_block_ttl", self.cache.phone_block_ttl(phone)
            )
        with self._state_lock:
            until = self._blocks.get(phone)
            if until is None:
                return 0
            remaining = math.ceil(until - self._clock())
            if remaining <= 0:
                self._blocks.pop(phone, None)
                return 0
            return remaining

    async def _ensure_not_blocked(self, phone: str) -> None:
        blocked_for = await self._block_ttl(phone)
        if blocked_for:
            raise RateLimitedError(
                "Phone number temporarily blocked",
                retry_after=blocked_for,
                detail={"reason": "phone_blocked"},
            )

    async def _count_request(self, phone: str) -> int:
        window = self.settings.rate_limit_window_seconds
        key = self.limiter.build_key("otp_phone", phone, window)
        try:
            return await self.limiter.increment(key, window)
        except Exception as exc:
            logger.error("otp_cache_failed", operation="count_request", error=str(exc))
            raise StoreUnavailableError(
                "One-time code store unavailable", detail={"operation": "count_request"}
            ) from exc

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _matches(self, code_hash: str, code: str) -> bool:
        try:
            return self._hasher.verify(code_hash, code)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def issue(self, phone: str, purpose: OtpPurpose) -> OtpIssue:
        phone = normalize_phone(phone)
        await self._ensure_not_blocked(phone)

        pending = await self._get_challenge(phone)
        if pending:
            remaining = math.ceil(pending["expires_at"] - self._clock())
            if remaining > 0:
                raise RateLimitedError(
                    "A code was already sent; wait before requesting another",
                    retry_after=remaining,
                    detail={"reason": "otp_pending"},
                )

        if await self._count_request(phone) > self.settings.otp_max_requests_per_phone:
            await self._block(phone)
            raise RateLimitedError(
                "Too many codes requested for this phone number",
                retry_after=self.settings.otp_block_seconds,
                detail={"reason": "phone_blocked"},
            )

        code = self._generate_code()
        ttl = self.settings.otp_ttl_seconds
        await self._put_challenge(
            phone,
            {
                "code_hash": self._hasher.hash(code),
                "purpose": purpose.value,
                "attempts": 0,
                "expires_at": self._clock() + ttl,
            },
        )
        try:
            await self.sender.send(phone, code, purpose)
        except Exception as exc:
            await self._drop_challenge(phone)
            logger.error(
                "otp_delivery_failed", phone=mask_phone(phone), error=str(exc)
            )
            raise ServerError("Failed to send one-time code") from exc
        logger.info("otp_issued", phone=mask_phone(phone), purpose=purpose.value)
        return OtpIssue(phone=phone, expires_in=ttl, purpose=purpose)

    async def verify(self, phone: str, code: str, purpose: OtpPurpose) -> str:
        """Consume a matching code and return the normalized phone."""
        phone = normalize_phone(phone)
        await self._ensure_not_blocked(phone)

        challenge = await self._get_challenge(phone)
        if not challenge or challenge.get("purpose") != purpose.value:
            raise OtpVerificationError("Code not found or expired")
        if challenge["expires_at"] <= self._clock():
            await self._drop_challenge(phone)
            raise OtpVerificationError("Code not found or expired")

        if not self._matches(challenge["code_hash"], code):
            remaining = self._record_miss(challenge)
            if remaining <= 0:
                await self._drop_challenge(phone)
                await self._block(phone)
                raise RateLimitedError(
                    "Too many failed attempts",
                    retry_after=self.settings.otp_block_seconds,
                    detail={"reason": "otp_attempts_exhausted"},
                )
            await self._put_challenge(phone, challenge)
            raise OtpVerificationError(
                "Invalid code", detail={"attempts_remaining": remaining}
            )

        if not await self._drop_challenge(phone):
            # A concurrent verify consumed it first
            raise OtpVerificationError("Code not found or expired")
        logger.info("otp_verified", phone=mask_phone(phone), purpose=purpose.value)
        return phone

    def _record_miss(self, challenge: Dict[str, Any]) -> int:
        """Count a wrong code against the challenge; returns the attempts left."""
        challenge["attempts"] = int(challenge.get("attempts", 0)) + 1
        return self.settings.otp_max_attempts - challenge["attempts"]
