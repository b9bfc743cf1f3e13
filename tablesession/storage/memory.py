from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tablesession.logging import get_logger
from tablesession.storage.errors import ConstraintViolation
from tablesession.storage.models import AuditEvent, Session, User, utcnow

_MAX_AUDIT_EVENTS = 10000


class MemoryStore:
    """In-process credential store used for tests and single-node development.

    Every mutation runs under one re-entrant lock and is snapshotted to
    ``<fs_root>/state/memory_store.json`` so a restarted dev server keeps its
    users and sessions. Readers get copies, never the live records.
    """

    def __init__(self, fs_root: str = "/tmp/tablesession", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = "customer",
        name: Optional[str] = None,
        phone: Optional[str] = None,
        user_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.tenant_id != tenant_id:
                    continue
                if existing.email == normalized_email:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email", "tenant_id": tenant_id}
                    )
                if phone and existing.phone == phone:
                    raise ConstraintViolation(
                        "phone already exists", {"field": "phone", "tenant_id": tenant_id}
                    )
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=normalized_email,
                tenant_id=tenant_id,
                role=role,
                name=name,
                phone=phone,
                meta=meta,
            )
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or (tenant_id is not None and user.tenant_id != tenant_id):
                return None
            return replace(user)

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized_email and u.tenant_id == tenant_id
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.phone == phone and u.tenant_id == tenant_id
                ),
                None,
            )
            return replace(user) if user else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        tenant_id: str,
        device_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.tenant_id != tenant_id:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                tenant_id=tenant_id,
                device_fingerprint=device_fingerprint,
                ip_address=ip_address,
                user_agent=user_agent,
                remember_me=remember_me,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def _scoped_session(self, tenant_id: str, session_id: str) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        if not sess or sess.tenant_id != tenant_id:
            return None
        return sess

    def get_session(self, tenant_id: str, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._scoped_session(tenant_id, session_id)
            return replace(sess) if sess else None

    def list_user_sessions(
        self, tenant_id: str, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if s.tenant_id == tenant_id
                and s.user_id == user_id
                and (include_revoked or not s.is_revoked)
            ]
        return sorted(results, key=lambda s: s.created_at)

    def touch_session(
        self, tenant_id: str, session_id: str, *, ip_address: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            sess = self._scoped_session(tenant_id, session_id)
            if not sess or sess.is_revoked:
                return False
            sess.last_activity = utcnow()
            if ip_address:
                sess.ip_address = ip_address
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        tenant_id: str,
        session_id: str,
        *,
        expected_token_id: Optional[str],
        new_token_id: str,
        access_jti: str,
        access_exp: datetime,
    ) -> Optional[Session]:
        """Swap the session's current refresh token id if it still equals ``expected_token_id``.

        Returns the updated session, or ``None`` when the session is gone,
        revoked, or another rotation already moved the pointer.
        """
        with self._data_lock:
            sess = self._scoped_session(tenant_id, session_id)
            if not sess or sess.is_revoked:
                return None
            if sess.current_token_id != expected_token_id:
                return None
            sess.current_token_id = new_token_id
            sess.access_jti = access_jti
            sess.access_exp = access_exp
            sess.last_activity = utcnow()
            self._persist_state()
            return replace(sess)

    def _mark_revoked(self, sess: Session, reason: str) -> bool:
        if sess.is_revoked:
            return False
        sess.is_revoked = True
        sess.revoked_at = utcnow()
        sess.revoked_reason = reason
        return True

    def revoke_session(self, tenant_id: str, session_id: str, reason: str) -> bool:
        with self._data_lock:
            sess = self._scoped_session(tenant_id, session_id)
            if not sess:
                return False
            changed = self._mark_revoked(sess, reason)
            if changed:
                self._persist_state()
            return changed

    def revoke_user_sessions(
        self,
        tenant_id: str,
        user_id: str,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[Session]:
        revoked: List[Session] = []
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.tenant_id != tenant_id or sess.user_id != user_id:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                if self._mark_revoked(sess, reason):
                    revoked.append(replace(sess))
            if revoked:
                self._persist_state()
        return revoked

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            if len(self.audit_events) > _MAX_AUDIT_EVENTS:
                self.audit_events = self.audit_events[-_MAX_AUDIT_EVENTS:]
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            results = [
                e
                for e in self.audit_events
                if (tenant_id is None or e.tenant_id == tenant_id)
                and (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
                and (severity is None or e.severity == severity)
            ]
        return list(reversed(results))[:limit]

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "name": user.name,
            "phone": user.phone,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            tenant_id=data.get("tenant_id", "public"),
            role=data.get("role", "customer"),
            name=data.get("name"),
            phone=data.get("phone"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "tenant_id": sess.tenant_id,
            "family_id": sess.family_id,
            "device_fingerprint": sess.device_fingerprint,
            "created_at": self._serialize_datetime(sess.created_at),
            "last_activity": self._serialize_datetime(sess.last_activity),
            "ip_address": sess.ip_address,
            "user_agent": sess.user_agent,
            "remember_me": sess.remember_me,
            "is_revoked": sess.is_revoked,
            "revoked_at": self._serialize_datetime(sess.revoked_at),
            "revoked_reason": sess.revoked_reason,
            "current_token_id": sess.current_token_id,
            "access_jti": sess.access_jti,
            "access_exp": self._serialize_datetime(sess.access_exp),
            "meta": sess.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            family_id=data["family_id"],
            device_fingerprint=data.get("device_fingerprint", ""),
            created_at=created_at,
            last_activity=self._deserialize_datetime(data.get("last_activity"))
            or created_at,
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            remember_me=data.get("remember_me", False),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            current_token_id=data.get("current_token_id"),
            access_jti=data.get("access_jti"),
            access_exp=self._deserialize_datetime(data.get("access_exp")),
            meta=data.get("meta"),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "action": event.action,
            "severity": event.severity,
            "tenant_id": event.tenant_id,
            "user_id": event.user_id,
            "session_id": event.session_id,
            "ip_address": event.ip_address,
            "created_at": self._serialize_datetime(event.created_at),
            "details": event.details,
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            action=data["action"],
            severity=data["severity"],
            tenant_id=data.get("tenant_id"),
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            details=data.get("details"),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_state_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
