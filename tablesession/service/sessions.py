from __future__ import annotations

import contextlib
from typing import Iterator, List, Optional, Protocol

from tablesession.logging import get_logger
from tablesession.service.errors import NotFoundError, StoreUnavailableError
from tablesession.service.fingerprint import ClientInfo, summarize_user_agent
from tablesession.service.tokens import TokenCodec
from tablesession.storage.errors import StoreUnavailable
from tablesession.storage.models import AuditEvent, Session, User

logger = get_logger(__name__)

REASON_LOGOUT = "logout"
REASON_LOGOUT_ALL = "logout_all"
REASON_USER_REVOKED = "user_revoked"
REASON_ADMIN_REVOKED = "admin_revoked"
REASON_TOKEN_REUSE = "token_reuse_detected"
REASON_FINGERPRINT = "fingerprint_mismatch"
REASON_SESSION_LIMIT = "session_limit_exceeded"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = "customer",
        name: Optional[str] = None,
        phone: Optional[str] = None,
        user_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        tenant_id: str,
        device_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, tenant_id: str, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(
        self, tenant_id: str, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]: ...

    def touch_session(
        self, tenant_id: str, session_id: str, *, ip_address: Optional[str] = None
    ) -> bool: ...

    def rotate_refresh_token(
        self,
        tenant_id: str,
        session_id: str,
        *,
        expected_token_id: Optional[str],
        new_token_id: str,
        access_jti: str,
        access_exp,
    ) -> Optional[Session]: ...

    def revoke_session(self, tenant_id: str, session_id: str, reason: str) -> bool: ...

    def revoke_user_sessions(
        self,
        tenant_id: str,
        user_id: str,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[Session]: ...

    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...

    def ping(self) -> bool: ...


@contextlib.contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Turn storage outages into a hard 503; authorization cannot be guessed."""
    try:
        yield
    except StoreUnavailable as exc:
        logger.error("store_unavailable", operation=operation, error=exc.message)
        raise StoreUnavailableError(detail={"operation": operation}) from exc


class SessionRegistry:
    """Session bookkeeping for one user at a time, always scoped by tenant."""

    def __init__(self, store: AuthStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    def create(
        self,
        tenant_id: str,
        user_id: str,
        *,
        fingerprint: str,
        client: ClientInfo,
        remember_me: bool = False,
    ) -> Session:
        with store_guard("create_session"):
            session = self.store.create_session(
                user_id,
                tenant_id,
                fingerprint,
                ip_address=client.ip_address,
                user_agent=summarize_user_agent(client.user_agent),
                remember_me=remember_me,
            )
        logger.info(
            "session_created", session_id=session.id, user_id=user_id, tenant_id=tenant_id
        )
        return session

    def find(
        self, tenant_id: str, session_id: str, *, user_id: Optional[str] = None
    ) -> Session:
        with store_guard("get_session"):
            session = self.store.get_session(tenant_id, session_id)
        if not session or (user_id is not None and session.user_id != user_id):
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return session

    def touch_activity(
        self, tenant_id: str, session_id: str, *, ip_address: Optional[str] = None
    ) -> None:
        try:
            self.store.touch_session(tenant_id, session_id, ip_address=ip_address)
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def list_active(self, tenant_id: str, user_id: str) -> List[Session]:
        with store_guard("list_sessions"):
            return self.store.list_user_sessions(tenant_id, user_id)

    async def _deny_bound_access_token(self, session: Session) -> None:
        if session.access_jti:
            await self.codec.revoke_jti(session.access_jti, session.access_exp)

    async def revoke(
        self,
        tenant_id: str,
        session_id: str,
        reason: str,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Revoke one session and deny-list its access token.

        Returns ``False`` when the session was already revoked; raises
        ``NotFoundError`` when it does not exist for this tenant and user.
        """
        session = self.find(tenant_id, session_id, user_id=user_id)
        with store_guard("revoke_session"):
            changed = self.store.revoke_session(tenant_id, session_id, reason)
        # Deny-list even when already revoked; an earlier attempt may have failed
        await self._deny_bound_access_token(session)
        if changed:
            logger.info(
                "session_revoked", session_id=session_id, user_id=session.user_id, reason=reason
            )
        return changed

    async def revoke_all(
        self,
        tenant_id: str,
        user_id: str,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with store_guard("revoke_user_sessions"):
            revoked = self.store.revoke_user_sessions(
                tenant_id, user_id, reason, except_session_id=except_session_id
            )
        for session in revoked:
            await self._deny_bound_access_token(session)
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            tenant_id=tenant_id,
            count=len(revoked),
            kept_session_id=except_session_id,
            reason=reason,
        )
        return len(revoked)

    async def enforce_limit(self, tenant_id: str, user_id: str, limit: int) -> List[Session]:
        """Make room for one more session by revoking the least recently active ones."""
        if limit <= 0:
            return []
        active = self.list_active(tenant_id, user_id)
        overflow = len(active) - limit + 1
        if overflow <= 0:
            return []
        evicted: List[Session] = []
        for session in sorted(active, key=lambda s: s.last_activity)[:overflow]:
            if await self.revoke(tenant_id, session.id, REASON_SESSION_LIMIT):
                evicted.append(session)
        return evicted
