from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "INVALID_CREDENTIALS",
    "INVALID_TOKEN",
    "SESSION_REVOKED",
    "TOKEN_REUSE_DETECTED",
    "REFRESH_FAILED",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMITED",
    "STORE_UNAVAILABLE",
    "OTP_VERIFICATION_FAILED",
    "VALIDATION_ERROR",
    "SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable codes clients branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(
        default=None, max_length=128, validation_alias=AliasChoices("tenantId", "tenant_id")
    )
    remember_me: bool = Field(
        default=False, validation_alias=AliasChoices("rememberMe", "remember_me")
    )

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    name: str = Field(..., min_length=2, max_length=100)
    role: str = Field(default="customer", max_length=16)
    tenant_id: Optional[str] = Field(
        default=None, max_length=128, validation_alias=AliasChoices("tenantId", "tenant_id")
    )
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 2:
            raise ValueError("name must be at least 2 characters")
        return stripped


class TokenRefreshRequest(BaseModel):
    # Optional because browsers send it as the HTTP-only cookie instead
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )


class LogoutRequest(BaseModel):
    logout_all: bool = Field(default=False, validation_alias=AliasChoices("logoutAll", "logout_all"))


class RevokeRequest(BaseModel):
    session_id: Optional[str] = Field(
        default=None, max_length=128, validation_alias=AliasChoices("sessionId", "session_id")
    )
    revoke_all: bool = Field(default=False, validation_alias=AliasChoices("revokeAll", "revoke_all"))
    reason: Optional[str] = Field(default=None, max_length=200)


class AdminRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


_OTP_PURPOSE_PATTERN = "^(registration|login|verification)$"


class OtpSendRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    purpose: str = Field(default="verification", pattern=_OTP_PURPOSE_PATTERN)


class OtpVerifyRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    otp: str = Field(..., pattern=r"^\d{4,10}$")
    purpose: str = Field(default="verification", pattern=_OTP_PURPOSE_PATTERN)
    tenant_id: Optional[str] = Field(
        default=None, max_length=128, validation_alias=AliasChoices("tenantId", "tenant_id")
    )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserResponse(_CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    tenant_id: str
    phone: Optional[str] = None
    created_at: datetime


class AuthResponse(_CamelModel):
    user: UserResponse
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionResponse(_CamelModel):
    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    is_current: bool = False


class SessionListResponse(_CamelModel):
    sessions: List[SessionResponse]
    total_sessions: int
    current_session_id: Optional[str] = None


class RevokeResponse(_CamelModel):
    message: str
    revoked: int
    current_session_revoked: bool = False


class ProfileResponse(_CamelModel):
    user: UserResponse
    permissions: List[str]
    can_access_admin: bool
    active_sessions: int


class OtpSendResponse(_CamelModel):
    message: str
    expires_in: int
    phone: str


class OtpVerifiedResponse(_CamelModel):
    message: str
    phone: str
    verified: bool = True


class AuditEventResponse(_CamelModel):
    id: str
    action: str
    severity: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    details: Optional[dict] = None


class AuditLogResponse(_CamelModel):
    events: List[AuditEventResponse]
    total: int
    exported_at: datetime
