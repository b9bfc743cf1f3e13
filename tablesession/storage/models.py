from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    tenant_id: str = "public"
    role: str = "customer"
    name: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    """One authenticated device of a user.

    ``current_token_id`` is the only refresh token id of the family that may
    still be exchanged; ``access_jti``/``access_exp`` name the access token
    minted alongside it so revocation can deny-list it.
    """

    id: str
    user_id: str
    tenant_id: str
    family_id: str
    device_fingerprint: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    current_token_id: Optional[str] = None
    access_jti: Optional[str] = None
    access_exp: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        device_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            family_id=str(uuid.uuid4()),
            device_fingerprint=device_fingerprint,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
            meta=meta,
        )


@dataclass
class AuditEvent:
    id: str
    action: str
    severity: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    details: Dict | None = None
