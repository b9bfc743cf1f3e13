from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tablesession.config import Settings
from tablesession.logging import get_logger
from tablesession.service.audit import AuditAction, AuditLogger, AuditSeverity
from tablesession.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    OtpVerificationError,
    RateLimitedError,
    SessionRevokedError,
    TokenFailure,
    ValidationError,
)
from tablesession.service.fingerprint import ClientInfo, create_device_fingerprint
from tablesession.service.otp import OtpPurpose, OtpService, mask_phone, normalize_phone
from tablesession.service.roles import (
    TENANT_BOUND_ROLES,
    Permission,
    Role,
    can_manage_role,
    has_permission,
    parse_role,
)
from tablesession.service.rotation import RefreshRotationEngine, RotationResult
from tablesession.service.sessions import (
    REASON_ADMIN_REVOKED,
    REASON_LOGOUT,
    REASON_LOGOUT_ALL,
    REASON_USER_REVOKED,
    AuthStore,
    SessionRegistry,
    store_guard,
)
from tablesession.service.tokens import TokenCodec, TokenPair
from tablesession.storage.errors import ConstraintViolation
from tablesession.storage.models import AuditEvent, Session, User

logger = get_logger(__name__)

_PASSWORD_MIN = 8
_PASSWORD_MAX = 128
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class AuthContext:
    user_id: str
    role: str
    tenant_id: str
    session_id: str
    jti: str
    access_exp: int


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair


def password_problems(password: str) -> List[str]:
    problems: List[str] = []
    if len(password) < _PASSWORD_MIN:
        problems.append(f"must be at least {_PASSWORD_MIN} characters")
    if len(password) > _PASSWORD_MAX:
        problems.append(f"must be at most {_PASSWORD_MAX} characters")
    if not re.search(r"[a-z]", password):
        problems.append("must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("must contain an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("must contain a digit")
    return problems


class AuthService:
    """Login, registration, logout and revocation on top of the session core."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        registry: SessionRegistry,
        rotation: RefreshRotationEngine,
        audit: AuditLogger,
        otp: OtpService,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.codec = codec
        self.registry = registry
        self.rotation = rotation
        self.audit = audit
        self.otp = otp
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails still pay for one hash so timing does not reveal them
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("timing-equalizer")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        with store_guard("get_password_record"):
            record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        with store_guard("save_password"):
            self.store.save_password(user_id, pwd_hash, algo)

    # account lifecycle
    def create_user(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: str = Role.CUSTOMER.value,
        tenant_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """Validate and persist a new user with an argon2id password."""
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        problems = password_problems(password)
        if problems:
            raise ValidationError(
                "Password does not meet security requirements",
                detail={"field": "password", "problems": problems},
            )
        try:
            parsed_role = parse_role(role)
        except ValueError:
            raise ValidationError("Unknown role", detail={"field": "role", "role": role})
        if not tenant_id:
            if parsed_role in TENANT_BOUND_ROLES or parsed_role is Role.OWNER:
                raise ValidationError(
                    "Tenant ID required for this role",
                    detail={"field": "tenantId", "role": parsed_role.value},
                )
            tenant_id = self.settings.default_tenant_id
        if phone:
            phone = normalize_phone(phone)
        try:
            with store_guard("create_user"):
                user = self.store.create_user(
                    email,
                    tenant_id=tenant_id,
                    role=parsed_role.value,
                    name=name,
                    phone=phone or None,
                )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "phone":
                raise ConflictError(
                    "User with this phone number already exists", detail=exc.detail
                ) from exc
            raise ConflictError(
                "User with this email already exists", detail=exc.detail
            ) from exc
        self.save_password(user.id, password)
        return user

    async def _open_session(
        self, user: User, client: ClientInfo, *, remember_me: bool
    ) -> Tuple[Session, TokenPair]:
        fingerprint = create_device_fingerprint(
            client, include_ip=self.settings.fingerprint_include_ip
        )
        evicted = await self.registry.enforce_limit(
            user.tenant_id, user.id, self.settings.max_active_sessions
        )
        for old in evicted:
            self.audit.log(
                AuditAction.SESSION_LIMIT_EXCEEDED,
                AuditSeverity.MEDIUM,
                tenant_id=user.tenant_id,
                user_id=user.id,
                session_id=old.id,
                ip_address=client.ip_address,
                details={"limit": self.settings.max_active_sessions},
            )
        session = self.registry.create(
            user.tenant_id,
            user.id,
            fingerprint=fingerprint,
            client=client,
            remember_me=remember_me,
        )
        tokens = self.codec.issue_pair(
            user.id,
            user.tenant_id,
            user.role,
            session.id,
            session.family_id,
            fingerprint=fingerprint,
            remember_me=remember_me,
        )
        # A brand-new family has no current token yet
        with store_guard("rotate_refresh_token"):
            started = self.store.rotate_refresh_token(
                user.tenant_id,
                session.id,
                expected_token_id=None,
                new_token_id=tokens.refresh_token_id,
                access_jti=tokens.access_jti,
                access_exp=tokens.access_exp,
            )
        if started is None:
            raise SessionRevokedError()
        return started, tokens

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str],
        client: ClientInfo,
        role: str = Role.CUSTOMER.value,
        tenant_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> LoginResult:
        user = self.create_user(
            email, password, name=name, role=role, tenant_id=tenant_id, phone=phone
        )
        session, tokens = await self._open_session(user, client, remember_me=False)
        self.audit.log(
            AuditAction.USER_REGISTERED,
            AuditSeverity.LOW,
            tenant_id=user.tenant_id,
            user_id=user.id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={"role": user.role},
        )
        self.logger.info("user_registered", user_id=user.id, tenant_id=user.tenant_id)
        return LoginResult(user=user, session=session, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        client: ClientInfo,
        tenant_id: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        tenant = tenant_id or self.settings.default_tenant_id
        with store_guard("get_user_by_email"):
            user = self.store.get_user_by_email(email, tenant)
        failure: Optional[str] = None
        if not user:
            self._burn_password_check(password)
            failure = "unknown_email"
        elif not self.verify_password(user.id, password):
            failure = "bad_password"
        elif not user.is_active:
            failure = "inactive"
        if failure or user is None:
            self.audit.log(
                AuditAction.LOGIN_FAILED,
                AuditSeverity.MEDIUM,
                tenant_id=tenant,
                user_id=user.id if user else None,
                ip_address=client.ip_address,
                details={"reason": failure, "user_agent": client.user_agent},
            )
            self.logger.info("login_failed", tenant_id=tenant, reason=failure)
            raise InvalidCredentialsError()

        session, tokens = await self._open_session(user, client, remember_me=remember_me)
        self.audit.log(
            AuditAction.LOGIN_SUCCESS,
            AuditSeverity.LOW,
            tenant_id=user.tenant_id,
            user_id=user.id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={"remember_me": remember_me, "user_agent": client.user_agent},
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, session=session, tokens=tokens)

    async def refresh(self, refresh_token: str, client: ClientInfo) -> RotationResult:
        return await self.rotation.refresh(refresh_token, client)

    # one-time codes
    async def request_otp(self, phone: str, purpose: OtpPurpose, *, client: ClientInfo):
        issued = await self.otp.issue(phone, purpose)
        self.audit.log(
            AuditAction.OTP_SENT,
            AuditSeverity.LOW,
            tenant_id=None,
            user_id=None,
            ip_address=client.ip_address,
            details={"phone": mask_phone(issued.phone), "purpose": purpose.value},
        )
        return issued

    async def verify_otp(
        self,
        phone: str,
        code: str,
        purpose: OtpPurpose,
        *,
        client: ClientInfo,
        tenant_id: Optional[str] = None,
    ) -> Optional[LoginResult]:
        """Check a code; a ``login`` code also opens a session for the phone's owner."""
        phone = normalize_phone(phone)
        try:
            await self.otp.verify(phone, code, purpose)
        except (OtpVerificationError, RateLimitedError) as exc:
            self.audit.log(
                AuditAction.OTP_VERIFICATION_FAILED,
                AuditSeverity.MEDIUM,
                tenant_id=tenant_id,
                user_id=None,
                ip_address=client.ip_address,
                details={
                    "phone": mask_phone(phone),
                    "purpose": purpose.value,
                    "error": exc.error_code,
                },
            )
            raise
        if purpose is not OtpPurpose.LOGIN:
            self.audit.log(
                AuditAction.OTP_VERIFIED,
                AuditSeverity.LOW,
                tenant_id=tenant_id,
                user_id=None,
                ip_address=client.ip_address,
                details={"phone": mask_phone(phone), "purpose": purpose.value},
            )
            return None

        tenant = tenant_id or self.settings.default_tenant_id
        with store_guard("get_user_by_phone"):
            user = self.store.get_user_by_phone(phone, tenant)
        if not user or not user.is_active:
            self.audit.log(
                AuditAction.LOGIN_FAILED,
                AuditSeverity.MEDIUM,
                tenant_id=tenant,
                user_id=user.id if user else None,
                ip_address=client.ip_address,
                details={
                    "reason": "inactive" if user else "unknown_phone",
                    "method": "otp",
                },
            )
            raise NotFoundError("No account found with this phone number")

        session, tokens = await self._open_session(user, client, remember_me=False)
        self.audit.log(
            AuditAction.LOGIN_SUCCESS,
            AuditSeverity.LOW,
            tenant_id=user.tenant_id,
            user_id=user.id,
            session_id=session.id,
            ip_address=client.ip_address,
            details={"method": "otp", "user_agent": client.user_agent},
        )
        self.logger.info("otp_login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, session=session, tokens=tokens)

    # access-token verification
    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Stateless access-token check plus the jti deny-list."""
        token = self.extract_bearer(authorization)
        if not token:
            raise InvalidTokenError(TokenFailure.MALFORMED, "Missing bearer token")
        claims = self.codec.decode_access(token)
        if await self.codec.is_jti_revoked(claims.jti):
            self.logger.info("access_token_denylisted", jti=claims.jti)
            raise SessionRevokedError("Token has been revoked")
        return AuthContext(
            user_id=claims.user_id,
            role=claims.role,
            tenant_id=claims.tenant_id,
            session_id=claims.session_id,
            jti=claims.jti,
            access_exp=claims.exp,
        )

    def _load_active_session(self, ctx: AuthContext) -> Session:
        try:
            session = self.registry.find(ctx.tenant_id, ctx.session_id, user_id=ctx.user_id)
        except NotFoundError:
            raise SessionRevokedError()
        if session.is_revoked:
            raise SessionRevokedError()
        return session

    # logout and revocation
    async def logout(
        self, ctx: AuthContext, *, client: ClientInfo, logout_all: bool = False
    ) -> int:
        """End the caller's session, or with ``logout_all`` every other session."""
        self._load_active_session(ctx)
        if logout_all:
            revoked = await self.registry.revoke_all(
                ctx.tenant_id,
                ctx.user_id,
                REASON_LOGOUT_ALL,
                except_session_id=ctx.session_id,
            )
            self.audit.log(
                AuditAction.ALL_SESSIONS_REVOKED,
                AuditSeverity.MEDIUM,
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                ip_address=client.ip_address,
                details={"revoked": revoked, "kept_current": True},
            )
            return revoked
        await self.registry.revoke(
            ctx.tenant_id, ctx.session_id, REASON_LOGOUT, user_id=ctx.user_id
        )
        # The presented token may predate the session's current one
        await self.codec.revoke_jti(ctx.jti, ctx.access_exp)
        self.audit.log(
            AuditAction.LOGOUT,
            AuditSeverity.LOW,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            ip_address=client.ip_address,
        )
        return 1

    async def revoke(
        self,
        ctx: AuthContext,
        *,
        client: ClientInfo,
        session_id: Optional[str] = None,
        revoke_all: bool = False,
        reason: Optional[str] = None,
    ) -> dict:
        self._load_active_session(ctx)
        reason_text = reason or REASON_USER_REVOKED
        if revoke_all:
            revoked = await self.registry.revoke_all(ctx.tenant_id, ctx.user_id, reason_text)
            await self.codec.revoke_jti(ctx.jti, ctx.access_exp)
            self.audit.log(
                AuditAction.ALL_SESSIONS_REVOKED,
                AuditSeverity.MEDIUM,
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                ip_address=client.ip_address,
                details={"revoked": revoked, "reason": reason_text},
            )
            return {"revoked": revoked, "scope": "all", "current_session_revoked": True}

        target = session_id or ctx.session_id
        changed = await self.registry.revoke(
            ctx.tenant_id, target, reason_text, user_id=ctx.user_id
        )
        is_current = target == ctx.session_id
        if is_current:
            await self.codec.revoke_jti(ctx.jti, ctx.access_exp)
        self.audit.log(
            AuditAction.SESSION_REVOKED,
            AuditSeverity.MEDIUM,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            session_id=target,
            ip_address=client.ip_address,
            details={"reason": reason_text, "already_revoked": not changed},
        )
        return {
            "revoked": 1 if changed else 0,
            "scope": "session",
            "session_id": target,
            "current_session_revoked": is_current,
        }

    def list_sessions(self, ctx: AuthContext) -> List[Session]:
        return self.registry.list_active(ctx.tenant_id, ctx.user_id)

    def get_profile(self, ctx: AuthContext) -> Tuple[User, int]:
        with store_guard("get_user"):
            user = self.store.get_user(ctx.user_id, ctx.tenant_id)
        if not user:
            raise NotFoundError("user not found")
        active = self.registry.list_active(ctx.tenant_id, ctx.user_id)
        return user, len(active)

    # tenant administration
    def _tenant_user(self, ctx: AuthContext, user_id: str) -> User:
        with store_guard("get_user"):
            target = self.store.get_user(user_id, ctx.tenant_id)
        if not target:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return target

    def admin_list_sessions(self, ctx: AuthContext, user_id: str) -> List[Session]:
        if not has_permission(ctx.role, Permission.USERS_VIEW):
            raise ForbiddenError("insufficient permissions")
        target = self._tenant_user(ctx, user_id)
        return self.registry.list_active(ctx.tenant_id, target.id)

    async def admin_revoke_sessions(
        self,
        ctx: AuthContext,
        user_id: str,
        *,
        client: ClientInfo,
        reason: Optional[str] = None,
    ) -> int:
        if not has_permission(ctx.role, Permission.USERS_MANAGE):
            raise ForbiddenError("insufficient permissions")
        target = self._tenant_user(ctx, user_id)
        if target.id != ctx.user_id and not can_manage_role(ctx.role, target.role):
            raise ForbiddenError(
                "cannot manage users with this role", detail={"target_role": target.role}
            )
        revoked = await self.registry.revoke_all(
            ctx.tenant_id, target.id, reason or REASON_ADMIN_REVOKED
        )
        self.audit.log(
            AuditAction.ADMIN_SESSIONS_REVOKED,
            AuditSeverity.HIGH,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            ip_address=client.ip_address,
            details={"target_user_id": target.id, "revoked": revoked},
        )
        return revoked

    def admin_export_audit(
        self,
        ctx: AuthContext,
        *,
        client: ClientInfo,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Audit trail of the caller's tenant, newest first; the export is itself audited."""
        if not has_permission(ctx.role, Permission.ANALYTICS_EXPORT):
            raise ForbiddenError("insufficient permissions")
        with store_guard("list_audit_events"):
            events = self.store.list_audit_events(
                tenant_id=ctx.tenant_id,
                user_id=user_id,
                action=action,
                severity=severity,
                limit=limit,
            )
        self.audit.log(
            AuditAction.AUDIT_LOGS_EXPORTED,
            AuditSeverity.MEDIUM,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            ip_address=client.ip_address,
            details={
                "count": len(events),
                "filters": {"action": action, "severity": severity, "user_id": user_id},
            },
        )
        return events
