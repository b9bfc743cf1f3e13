from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tablesession.config import Settings
from tablesession.logging import get_logger
from tablesession.service.errors import InvalidTokenError, TokenFailure
from tablesession.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_jti: str
    access_exp: datetime
    refresh_token_id: str
    refresh_exp: datetime
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    tenant_id: str
    role: str
    session_id: str
    jti: str
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    tenant_id: str
    session_id: str
    family_id: str
    token_id: str
    fingerprint: str
    exp: int


class TokenCodec:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets, so a token of
    one kind never verifies as the other. Decoding is pure; only the jti
    deny-list touches the cache.
    """

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)
        # Fallback deny-list when Redis is absent or failing: jti -> expiry ts
        self._local_denylist: dict[str, float] = {}
        self._denylist_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _refresh_ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_short_ttl_minutes)

    def issue_pair(
        self,
        user_id: str,
        tenant_id: str,
        role: str,
        session_id: str,
        family_id: str,
        *,
        fingerprint: str,
        remember_me: bool = False,
    ) -> TokenPair:
        now = self._now()
        iat = int(now.timestamp())
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + self._refresh_ttl(remember_me)
        access_jti = str(uuid.uuid4())
        refresh_token_id = str(uuid.uuid4())
        common = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "tenant_id": tenant_id,
            "sid": session_id,
            "iat": iat,
        }
        access_payload = {
            **common,
            "role": role,
            "token_type": ACCESS,
            "jti": access_jti,
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            **common,
            "token_type": REFRESH,
            "fam": family_id,
            "jti": refresh_token_id,
            "fph": fingerprint,
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode(access_payload, ACCESS),
            refresh_token=self._encode(refresh_payload, REFRESH),
            access_jti=access_jti,
            access_exp=datetime.fromtimestamp(access_payload["exp"], tz=timezone.utc),
            refresh_token_id=refresh_token_id,
            refresh_exp=datetime.fromtimestamp(refresh_payload["exp"], tz=timezone.utc),
            expires_in=access_payload["exp"] - iat,
        )

    def decode(self, token: str, *, token_type: str = ACCESS) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        Raises ``InvalidTokenError`` with reason MALFORMED, BAD_SIGNATURE or
        EXPIRED. Signature is checked before any payload field is trusted.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError(TokenFailure.MALFORMED)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        # Only HS256 is accepted
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError(TokenFailure.MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError(TokenFailure.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError(TokenFailure.MALFORMED)
        if not isinstance(payload, dict):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        if payload.get("token_type") != token_type:
            raise InvalidTokenError(TokenFailure.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError(TokenFailure.MALFORMED)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError(TokenFailure.MALFORMED)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise InvalidTokenError(TokenFailure.EXPIRED)
        required = ("sub", "tenant_id", "sid", "jti")
        if any(not isinstance(payload.get(key), str) or not payload[key] for key in required):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        return payload

    def decode_access(self, token: str) -> AccessClaims:
        payload = self.decode(token, token_type=ACCESS)
        role = payload.get("role")
        if not isinstance(role, str):
            raise InvalidTokenError(TokenFailure.MALFORMED)
        return AccessClaims(
            user_id=payload["sub"],
            tenant_id=payload["tenant_id"],
            role=role,
            session_id=payload["sid"],
            jti=payload["jti"],
            exp=int(payload["exp"]),
        )

    def decode_refresh(self, token: str) -> RefreshClaims:
        payload = self.decode(token, token_type=REFRESH)
        family_id = payload.get("fam")
        if not isinstance(family_id, str) or not family_id:
            raise InvalidTokenError(TokenFailure.MALFORMED)
        return RefreshClaims(
            user_id=payload["sub"],
            tenant_id=payload["tenant_id"],
            session_id=payload["sid"],
            family_id=family_id,
            token_id=payload["jti"],
            fingerprint=str(payload.get("fph") or ""),
            exp=int(payload["exp"]),
        )

    def _prune_local_denylist(self, now_ts: float) -> None:
        expired = [jti for jti, exp in self._local_denylist.items() if exp <= now_ts]
        for jti in expired:
            self._local_denylist.pop(jti, None)

    async def revoke_jti(self, jti: str, exp: datetime | int | float | None) -> None:
        """Deny-list an access token id until it would have expired anyway."""
        if not jti:
            return
        if isinstance(exp, datetime):
            exp_ts = exp.timestamp()
        elif isinstance(exp, (int, float)):
            exp_ts = float(exp)
        else:
            exp_ts = time.time() + self.settings.access_token_ttl_minutes * 60
        # Leeway keeps the entry alive as long as decode would still accept the token
        ttl = int(exp_ts - time.time() + self._leeway.total_seconds())
        if ttl <= 0:
            return
        with self._denylist_lock:
            self._prune_local_denylist(time.time())
            self._local_denylist[jti] = time.time() + ttl
        if not self.cache:
            return
        try:
            await asyncio.wait_for(
                self.cache.denylist_access_token(jti, ttl),
                timeout=self.settings.cache_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))

    async def is_jti_revoked(self, jti: str) -> bool:
        with self._denylist_lock:
            exp_ts = self._local_denylist.get(jti)
            if exp_ts is not None and exp_ts > time.time():
                return True
        if not self.cache:
            return False
        try:
            return await asyncio.wait_for(
                self.cache.is_access_token_denylisted(jti),
                timeout=self.settings.cache_timeout_seconds,
            )
        except Exception as exc:
            # Fail open; the token still has to pass the session check on refresh
            logger.warning("denylist_check_failed", jti=jti, error=str(exc))
            return False
