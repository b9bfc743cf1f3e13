from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from tablesession.logging import get_correlation_id, get_logger
from tablesession.storage.models import AuditEvent

logger = get_logger(__name__)

_SENSITIVE_DETAIL_KEYS = ("password", "token", "secret", "otp", "authorization")
# Token identifiers, not token material; kept for forensics
_DETAIL_KEY_EXEMPT = {"presented_token_id", "token_id", "current_token_id", "token_type"}


class AuditSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditAction(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    FINGERPRINT_MISMATCH = "FINGERPRINT_MISMATCH"
    LOGOUT = "LOGOUT"
    ALL_SESSIONS_REVOKED = "ALL_SESSIONS_REVOKED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_LIMIT_EXCEEDED = "SESSION_LIMIT_EXCEEDED"
    ADMIN_SESSIONS_REVOKED = "ADMIN_SESSIONS_REVOKED"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_VERIFICATION_FAILED = "OTP_VERIFICATION_FAILED"
    AUDIT_LOGS_EXPORTED = "AUDIT_LOGS_EXPORTED"


class AuditSink(Protocol):
    """Append-only destination for audit events; both stores implement it."""

    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...


def _sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not details:
        return {}
    cleaned: Dict[str, Any] = {}
    for key, value in details.items():
        lowered = key.lower()
        if lowered not in _DETAIL_KEY_EXEMPT and any(
            marker in lowered for marker in _SENSITIVE_DETAIL_KEYS
        ):
            cleaned[key] = "[REDACTED]"
        elif isinstance(value, dict):
            cleaned[key] = _sanitize_details(value)
        else:
            cleaned[key] = value
    return cleaned


class AuditLogger:
    """Records security events without ever failing the calling request."""

    def __init__(self, sink: Optional[AuditSink]) -> None:
        self.sink = sink

    def log(
        self,
        action: AuditAction,
        severity: AuditSeverity,
        *,
        tenant_id: Optional[str],
        user_id: Optional[str],
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        payload = _sanitize_details(details)
        request_id = get_correlation_id()
        if request_id:
            payload.setdefault("request_id", request_id)
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action.value,
            severity=severity.value,
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            details=payload or None,
        )
        if severity is AuditSeverity.CRITICAL:
            logger.error(
                "critical_audit_event",
                action=event.action,
                user_id=user_id,
                tenant_id=tenant_id,
                session_id=session_id,
                ip_address=ip_address,
                details=payload,
            )
        if not self.sink:
            return event
        try:
            return self.sink.append_audit_event(event)
        except Exception as exc:
            logger.warning(
                "audit_sink_failed", action=event.action, user_id=user_id, error=str(exc)
            )
            return None
