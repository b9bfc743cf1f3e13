from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from tablesession.api.error_handling import error_envelope
from tablesession.api.schemas import (
    AdminRevokeRequest,
    AuditEventResponse,
    AuditLogResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifiedResponse,
    OtpVerifyRequest,
    ProfileResponse,
    RegisterRequest,
    RevokeRequest,
    RevokeResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from tablesession.logging import get_logger
from tablesession.service.auth import AuthContext
from tablesession.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    RateLimitedError,
    SessionRevokedError,
    TokenFailure,
    TokenReuseDetectedError,
)
from tablesession.service.fingerprint import ClientInfo
from tablesession.service.otp import OtpPurpose, mask_phone, normalize_phone
from tablesession.service.roles import (
    Permission,
    can_access_admin,
    has_permission,
    permission_names,
)
from tablesession.service.runtime import Runtime, get_runtime
from tablesession.service.tokens import TokenPair
from tablesession.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_at")

    def __init__(self, limit: int, remaining: int, reset_at: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_at)


async def _enforce_rate_limit(
    runtime: Runtime,
    scope: str,
    identity: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one request against ``scope`` for ``identity``.

    Raises:
        RateLimitedError: once the fixed window is exhausted.
    """
    result = await runtime.rate_limiter.hit(
        scope, identity, limit, runtime.settings.rate_limit_window_seconds
    )
    info = RateLimitInfo(result.limit, result.remaining, result.reset_at)
    if response is not None:
        info.apply_headers(response)
    if not result.allowed:
        raise RateLimitedError(
            "Too many requests, please try again later",
            retry_after=result.retry_after,
            detail={"scope": scope, "limit": result.limit, "reset_at": result.reset_at},
        )
    return info


def _client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address: Optional[str] = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return ClientInfo(
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
        accept_encoding=request.headers.get("accept-encoding"),
    )


def _rate_identity(client: ClientInfo) -> str:
    return client.ip_address or "unknown"


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_permission(permission: Permission) -> Callable:
    """Dependency factory that rejects callers whose role lacks ``permission``."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not has_permission(principal.role, permission):
            raise ForbiddenError(
                "insufficient permissions", detail={"required": permission.value}
            )
        return principal

    return _dependency


def _set_refresh_cookie(runtime: Runtime, response: Response, tokens: TokenPair) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        expires=tokens.refresh_exp,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(runtime: Runtime, response: Response) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_id=user.tenant_id,
        phone=user.phone,
        created_at=user.created_at,
    )


def _sessions_payload(sessions: List[Session], current_session_id: Optional[str]) -> dict:
    ordered = sorted(sessions, key=lambda s: s.last_activity, reverse=True)
    return SessionListResponse(
        sessions=[
            SessionResponse(
                id=sess.id,
                device_info=sess.user_agent,
                ip_address=sess.ip_address,
                created_at=sess.created_at,
                last_activity=sess.last_activity,
                is_current=sess.id == current_session_id,
            )
            for sess in ordered
        ],
        total_sessions=len(ordered),
        current_session_id=current_session_id,
    ).model_dump(by_alias=True, mode="json")


def _ok(data: dict) -> Envelope:
    return Envelope(status="ok", data=data)


def _auth_payload(user: User, session: Session, tokens: TokenPair) -> dict:
    return AuthResponse(
        user=_user_to_response(user),
        session_id=session.id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
    ).model_dump(by_alias=True, mode="json")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and open its first session.

    Raises:
        400: password too weak or role/tenant combination invalid
        409: email already registered in the tenant
        429: too many registrations from this address
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "register",
        _rate_identity(client),
        runtime.settings.register_rate_limit,
        response=response,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        client=client,
        role=body.role,
        tenant_id=body.tenant_id,
        phone=body.phone,
    )
    _set_refresh_cookie(runtime, response, result.tokens)
    return _ok(_auth_payload(result.user, result.session, result.tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and start a new token family.

    Raises:
        401: INVALID_CREDENTIALS, whatever part of the credentials was wrong
        429: too many login attempts from this address
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "login",
        _rate_identity(client),
        runtime.settings.login_rate_limit,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        client=client,
        tenant_id=body.tenant_id,
        remember_me=body.remember_me,
    )
    _set_refresh_cookie(runtime, response, result.tokens)
    return _ok(_auth_payload(result.user, result.session, result.tokens))


def _refresh_failure(
    runtime: Runtime, status_code: int, code: str, message: str, details: dict
) -> JSONResponse:
    # Built here instead of raised so the stale cookie is cleared on the way out
    failure = JSONResponse(
        status_code=status_code,
        content=error_envelope(status_code, message, details, code),
    )
    _clear_refresh_cookie(runtime, failure)
    return failure


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate a refresh token taken from the body or the refresh cookie.

    Decode and session failures answer 401 REFRESH_FAILED with the specific
    code in ``details``; a replayed token answers 403 TOKEN_REUSE_DETECTED.
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "refresh",
        _rate_identity(client),
        runtime.settings.refresh_rate_limit,
        response=response,
    )
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    if not token:
        return _refresh_failure(
            runtime,
            401,
            "REFRESH_FAILED",
            "Refresh token required",
            {"code": "INVALID_TOKEN", "reason": TokenFailure.MALFORMED.value},
        )
    try:
        result = await runtime.auth.refresh(token, client)
    except (InvalidTokenError, SessionRevokedError) as exc:
        logger.info("refresh_failed", error_code=exc.error_code, ip_address=client.ip_address)
        return _refresh_failure(
            runtime,
            401,
            "REFRESH_FAILED",
            exc.message,
            {"code": exc.error_code, **exc.detail},
        )
    except TokenReuseDetectedError as exc:
        return _refresh_failure(
            runtime, exc.status_code, exc.error_code, exc.message, exc.detail
        )
    _set_refresh_cookie(runtime, response, result.tokens)
    return _ok(
        TokenResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.expires_in,
        ).model_dump(by_alias=True, mode="json")
    )


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_otp(body: OtpSendRequest, request: Request, response: Response):
    """Send a one-time code to a phone.

    Raises:
        400: phone number malformed
        429: too many requests from this address, a code is still pending,
            or the phone is blocked
        500: the code could not be delivered
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "otp_send",
        _rate_identity(client),
        runtime.settings.otp_send_rate_limit,
        response=response,
    )
    issued = await runtime.auth.request_otp(
        body.phone, OtpPurpose(body.purpose), client=client
    )
    return _ok(
        OtpSendResponse(
            message="OTP sent successfully",
            expires_in=issued.expires_in,
            phone=mask_phone(issued.phone),
        ).model_dump(by_alias=True, mode="json")
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, request: Request, response: Response):
    """Check a one-time code; a ``login`` code answers like ``/auth/login``."""
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "otp_verify",
        _rate_identity(client),
        runtime.settings.otp_verify_rate_limit,
        response=response,
    )
    result = await runtime.auth.verify_otp(
        body.phone,
        body.otp,
        OtpPurpose(body.purpose),
        client=client,
        tenant_id=body.tenant_id,
    )
    if result is None:
        return _ok(
            OtpVerifiedResponse(
                message="OTP verified successfully",
                phone=mask_phone(normalize_phone(body.phone)),
            ).model_dump(by_alias=True, mode="json")
        )
    _set_refresh_cookie(runtime, response, result.tokens)
    return _ok(_auth_payload(result.user, result.session, result.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "logout",
        _rate_identity(client),
        runtime.settings.logout_rate_limit,
        response=response,
    )
    logout_all = bool(body and body.logout_all)
    revoked = await runtime.auth.logout(principal, client=client, logout_all=logout_all)
    if logout_all:
        message = "Logged out from all devices successfully"
    else:
        message = "Logged out successfully"
        _clear_refresh_cookie(runtime, response)
    return _ok(
        RevokeResponse(
            message=message, revoked=revoked, current_session_revoked=not logout_all
        ).model_dump(by_alias=True, mode="json")
    )


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    request: Request,
    response: Response,
    body: Optional[RevokeRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "revoke",
        _rate_identity(client),
        runtime.settings.revoke_rate_limit,
        response=response,
    )
    body = body or RevokeRequest()
    outcome = await runtime.auth.revoke(
        principal,
        client=client,
        session_id=body.session_id,
        revoke_all=body.revoke_all,
        reason=body.reason,
    )
    if outcome["current_session_revoked"]:
        _clear_refresh_cookie(runtime, response)
    message = (
        "All sessions revoked" if outcome["scope"] == "all" else "Session revoked"
    )
    return _ok(
        RevokeResponse(
            message=message,
            revoked=outcome["revoked"],
            current_session_revoked=outcome["current_session_revoked"],
        ).model_dump(by_alias=True, mode="json")
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "sessions",
        _rate_identity(client),
        runtime.settings.sessions_rate_limit,
        response=response,
    )
    sessions = runtime.auth.list_sessions(principal)
    runtime.sessions.touch_activity(
        principal.tenant_id, principal.session_id, ip_address=client.ip_address
    )
    return _ok(_sessions_payload(sessions, principal.session_id))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "profile",
        _rate_identity(client),
        runtime.settings.profile_rate_limit,
        response=response,
    )
    user, active_sessions = runtime.auth.get_profile(principal)
    return _ok(
        ProfileResponse(
            user=_user_to_response(user),
            permissions=permission_names(user.role),
            can_access_admin=can_access_admin(user.role),
            active_sessions=active_sessions,
        ).model_dump(by_alias=True, mode="json")
    )


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str,
    principal: AuthContext = Depends(require_permission(Permission.USERS_VIEW)),
):
    runtime = get_runtime()
    sessions = runtime.auth.admin_list_sessions(principal, user_id)
    current = principal.session_id if user_id == principal.user_id else None
    return _ok(_sessions_payload(sessions, current))


@router.post(
    "/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_user_sessions(
    user_id: str,
    request: Request,
    body: Optional[AdminRevokeRequest] = None,
    principal: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    runtime = get_runtime()
    revoked = await runtime.auth.admin_revoke_sessions(
        principal,
        user_id,
        client=_client_info(request),
        reason=body.reason if body else None,
    )
    return _ok(
        RevokeResponse(
            message="User sessions revoked",
            revoked=revoked,
            current_session_revoked=user_id == principal.user_id,
        ).model_dump(by_alias=True, mode="json")
    )


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_export_audit(
    request: Request,
    response: Response,
    action: Optional[str] = Query(None, max_length=64),
    severity: Optional[str] = Query(None, pattern="^(LOW|MEDIUM|HIGH|CRITICAL)$"),
    user_id: Optional[str] = Query(None, alias="userId", max_length=128),
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(require_permission(Permission.ANALYTICS_EXPORT)),
):
    """Export the tenant's audit trail, newest first."""
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        "audit_export",
        _rate_identity(client),
        runtime.settings.audit_export_rate_limit,
        response=response,
    )
    events = runtime.auth.admin_export_audit(
        principal,
        client=client,
        action=action,
        severity=severity,
        user_id=user_id,
        limit=limit,
    )
    return _ok(
        AuditLogResponse(
            events=[
                AuditEventResponse(
                    id=event.id,
                    action=event.action,
                    severity=event.severity,
                    user_id=event.user_id,
                    session_id=event.session_id,
                    ip_address=event.ip_address,
                    created_at=event.created_at,
                    details=event.details,
                )
                for event in events
            ],
            total=len(events),
            exported_at=datetime.now(timezone.utc),
        ).model_dump(by_alias=True, mode="json")
    )
