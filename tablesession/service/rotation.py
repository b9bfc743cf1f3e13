from __future__ import annotations

import hmac
from dataclasses import dataclass

from tablesession.config import FingerprintMismatchPolicy, Settings
from tablesession.logging import get_logger
from tablesession.service.audit import AuditAction, AuditLogger, AuditSeverity
from tablesession.service.errors import SessionRevokedError, TokenReuseDetectedError
from tablesession.service.fingerprint import ClientInfo, create_device_fingerprint
from tablesession.service.sessions import (
    REASON_FINGERPRINT,
    REASON_TOKEN_REUSE,
    AuthStore,
    SessionRegistry,
    store_guard,
)
from tablesession.service.tokens import RefreshClaims, TokenCodec, TokenPair
from tablesession.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class RotationResult:
    user: User
    session: Session
    tokens: TokenPair


class RefreshRotationEngine:
    """Exchanges a refresh token for the next pair of its family.

    A family is ACTIVE while its session holds a ``current_token_id``; every
    successful refresh moves that pointer with one compare-and-swap. Any
    other token id presented for the session is a replay and revokes it.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        registry: SessionRegistry,
        audit: AuditLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.registry = registry
        self.audit = audit
        self.settings = settings

    async def refresh(self, refresh_token: str, client: ClientInfo) -> RotationResult:
        claims = self.codec.decode_refresh(refresh_token)

        with store_guard("get_session"):
            session = self.store.get_session(claims.tenant_id, claims.session_id)
        if not session or session.user_id != claims.user_id or session.is_revoked:
            raise SessionRevokedError()

        if (
            session.family_id != claims.family_id
            or session.current_token_id != claims.token_id
        ):
            await self._revoke_for_reuse(session, claims, client, cause="replayed_token")
            raise TokenReuseDetectedError()

        await self._check_fingerprint(session, claims, client)

        with store_guard("get_user"):
            user = self.store.get_user(claims.user_id, claims.tenant_id)
        if not user or not user.is_active:
            raise SessionRevokedError("Account is not active")

        pair = self.codec.issue_pair(
            user.id,
            user.tenant_id,
            user.role,
            session.id,
            session.family_id,
            fingerprint=claims.fingerprint,
            remember_me=session.remember_me,
        )
        with store_guard("rotate_refresh_token"):
            rotated = self.store.rotate_refresh_token(
                session.tenant_id,
                session.id,
                expected_token_id=claims.token_id,
                new_token_id=pair.refresh_token_id,
                access_jti=pair.access_jti,
                access_exp=pair.access_exp,
            )
        if rotated is None:
            with store_guard("get_session"):
                latest = self.store.get_session(session.tenant_id, session.id)
            if not latest or latest.is_revoked:
                raise SessionRevokedError()
            # Another request consumed this token between our read and the swap
            await self._revoke_for_reuse(latest, claims, client, cause="concurrent_rotation")
            raise TokenReuseDetectedError()

        # Only the newest access token stays bound to the session
        if session.access_jti and session.access_jti != pair.access_jti:
            await self.codec.revoke_jti(session.access_jti, session.access_exp)

        self.audit.log(
            AuditAction.TOKEN_REFRESHED,
            AuditSeverity.LOW,
            tenant_id=user.tenant_id,
            user_id=user.id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={"family_id": session.family_id},
        )
        logger.info("token_refreshed", session_id=session.id, user_id=user.id)
        return RotationResult(user=user, session=rotated, tokens=pair)

    async def _revoke_for_reuse(
        self, session: Session, claims: RefreshClaims, client: ClientInfo, *, cause: str
    ) -> None:
        await self.registry.revoke(session.tenant_id, session.id, REASON_TOKEN_REUSE)
        self.audit.log(
            AuditAction.TOKEN_REUSE_DETECTED,
            AuditSeverity.CRITICAL,
            tenant_id=session.tenant_id,
            user_id=session.user_id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={
                "cause": cause,
                "family_id": claims.family_id,
                "presented_token_id": claims.token_id,
                "user_agent": client.user_agent,
            },
        )

    async def _check_fingerprint(
        self, session: Session, claims: RefreshClaims, client: ClientInfo
    ) -> None:
        presented = create_device_fingerprint(
            client, include_ip=self.settings.fingerprint_include_ip
        )
        if hmac.compare_digest(presented, claims.fingerprint):
            return
        strict = (
            self.settings.fingerprint_mismatch_policy is FingerprintMismatchPolicy.STRICT
        )
        self.audit.log(
            AuditAction.FINGERPRINT_MISMATCH,
            AuditSeverity.CRITICAL if strict else AuditSeverity.HIGH,
            tenant_id=session.tenant_id,
            user_id=session.user_id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={
                "policy": self.settings.fingerprint_mismatch_policy.value,
                "family_id": claims.family_id,
                "user_agent": client.user_agent,
            },
        )
        if not strict:
            logger.warning(
                "refresh_fingerprint_mismatch", session_id=session.id, user_id=session.user_id
            )
            return
        await self.registry.revoke(session.tenant_id, session.id, REASON_FINGERPRINT)
        raise TokenReuseDetectedError(
            "Refresh token presented from a different device; session revoked",
            detail={"reason": "fingerprint_mismatch"},
        )
