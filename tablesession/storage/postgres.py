from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tablesession.logging import get_logger
from tablesession.storage.errors import ConstraintViolation, StoreUnavailable
from tablesession.storage.models import AuditEvent, Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL,
        name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, email),
        UNIQUE (tenant_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        tenant_id TEXT NOT NULL,
        id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        family_id TEXT NOT NULL,
        device_fingerprint TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        current_token_id TEXT,
        access_jti TEXT,
        access_exp TIMESTAMPTZ,
        meta JSONB,
        PRIMARY KEY (tenant_id, id),
        FOREIGN KEY (tenant_id, user_id) REFERENCES app_user(tenant_id, id) ON DELETE CASCADE
    )
    """,
    "ALTER TABLE app_user ADD COLUMN IF NOT EXISTS phone TEXT",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_phone_idx
        ON app_user (tenant_id, phone) WHERE phone IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (tenant_id, user_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        severity TEXT NOT NULL,
        tenant_id TEXT,
        user_id TEXT,
        session_id TEXT,
        ip_address TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_tenant_idx ON audit_event (tenant_id, created_at DESC)",
)


class PostgresStore:
    """Credential store backed by Postgres.

    Sessions live in their own table keyed by ``(tenant_id, id)`` so refresh
    rotation is a single conditional UPDATE on one row.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("connection pool exhausted") from exc
        except (psycopg.OperationalError, errors.QueryCanceled) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _load_json(raw: Any) -> Optional[dict]:
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return None
        return raw

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row["tenant_id"],
            role=row["role"],
            name=row.get("name"),
            phone=row.get("phone"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            meta=self._load_json(row.get("meta")),
        )

    def _session_from_row(self, row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=row["tenant_id"],
            family_id=row["family_id"],
            device_fingerprint=row["device_fingerprint"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            remember_me=row.get("remember_me", False),
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            current_token_id=row.get("current_token_id"),
            access_jti=row.get("access_jti"),
            access_exp=row.get("access_exp"),
            meta=self._load_json(row.get("meta")),
        )

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
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            tenant_id=tenant_id,
            role=role,
            name=name,
            phone=phone,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, tenant_id, email, role, name, phone, is_active, meta, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        tenant_id,
                        user.email,
                        role,
                        name,
                        phone,
                        user.is_active,
                        json.dumps(meta) if meta else None,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            if "phone" in (exc.diag.constraint_name or ""):
                raise ConstraintViolation(
                    "phone already exists", {"field": "phone", "tenant_id": tenant_id}
                )
            raise ConstraintViolation(
                "email already exists", {"field": "email", "tenant_id": tenant_id}
            )
        return user

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]:
        query = "SELECT * FROM app_user WHERE id = %s"
        params: tuple = (user_id,)
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params = (user_id, tenant_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s AND email = %s",
                (tenant_id, email.strip().lower()),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s AND phone = %s",
                (tenant_id, phone),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

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
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            tenant_id=tenant_id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        tenant_id, id, user_id, family_id, device_fingerprint, ip_address,
                        user_agent, remember_me, created_at, last_activity, meta
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant_id,
                        sess.id,
                        user_id,
                        sess.family_id,
                        device_fingerprint,
                        ip_address,
                        user_agent,
                        remember_me,
                        sess.created_at,
                        sess.last_activity,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, tenant_id: str, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE tenant_id = %s AND id = %s",
                (tenant_id, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(
        self, tenant_id: str, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE tenant_id = %s AND user_id = %s"
        if not include_revoked:
            query += " AND NOT is_revoked"
        query += " ORDER BY created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(query, (tenant_id, user_id)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(
        self, tenant_id: str, session_id: str, *, ip_address: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET last_activity = now(), ip_address = COALESCE(%s, ip_address)
                WHERE tenant_id = %s AND id = %s AND NOT is_revoked
                """,
                (ip_address, tenant_id, session_id),
            )
            return result.rowcount > 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET current_token_id = %s, access_jti = %s, access_exp = %s, last_activity = now()
                WHERE tenant_id = %s AND id = %s
                  AND current_token_id IS NOT DISTINCT FROM %s
                  AND NOT is_revoked
                RETURNING *
                """,
                (
                    new_token_id,
                    access_jti,
                    access_exp,
                    tenant_id,
                    session_id,
                    expected_token_id,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, tenant_id: str, session_id: str, reason: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET is_revoked = TRUE, revoked_at = now(), revoked_reason = %s
                WHERE tenant_id = %s AND id = %s AND NOT is_revoked
                """,
                (reason, tenant_id, session_id),
            )
            return result.rowcount > 0

    def revoke_user_sessions(
        self,
        tenant_id: str,
        user_id: str,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session
                SET is_revoked = TRUE, revoked_at = now(), revoked_reason = %s
                WHERE tenant_id = %s AND user_id = %s AND NOT is_revoked
                  AND id IS DISTINCT FROM %s
                RETURNING *
                """,
                (reason, tenant_id, user_id, except_session_id),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, action, severity, tenant_id, user_id, session_id, ip_address, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.severity,
                    event.tenant_id,
                    event.user_id,
                    event.session_id,
                    event.ip_address,
                    json.dumps(event.details) if event.details else None,
                    event.created_at,
                ),
            )
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
        clauses: List[str] = []
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if severity is not None:
            clauses.append("severity = %s")
            params.append(severity)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                action=row["action"],
                severity=row["severity"],
                tenant_id=row.get("tenant_id"),
                user_id=row.get("user_id"),
                session_id=row.get("session_id"),
                ip_address=row.get("ip_address"),
                created_at=row["created_at"],
                details=self._load_json(row.get("details")),
            )
            for row in rows
        ]
