from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import (
    Identity,
    RevokedToken,
    Session,
    ensure_utc,
    utcnow,
)

REQUIRED_TABLES = (
    "app_identity",
    "identity_credential",
    "auth_session",
    "revoked_token",
)


class PostgresStore:
    """Postgres-backed identity, session and revocation store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.verify_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection, translating outages to StorageUnavailable."""
        try:
            with self._connect() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", operation=operation, error=str(exc))
            raise StorageUnavailable(f"{operation} failed: database unavailable") from exc

    def verify_schema(self) -> None:
        """Ensure the session tables exist before serving requests."""

        with self._transaction("verify_schema") as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # identities
    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            created_at=ensure_utc(row.get("created_at") or utcnow()),
            last_login_at=(
                ensure_utc(row["last_login_at"]) if row.get("last_login_at") else None
            ),
        )

    def create_identity(
        self, email: str, *, role: str = "user", is_active: bool = True
    ) -> Identity:
        identity_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._transaction("create_identity") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_identity (id, email, role, is_active, created_at)
                    VALUES (%s, %s, %s, %s, now())
                    RETURNING *
                    """,
                    (identity_id, normalized, role, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._transaction("get_identity") as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._transaction("get_identity_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_identity_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        with self._transaction("set_identity_active") as conn:
            row = conn.execute(
                "UPDATE app_identity SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_identity_role(self, identity_id: str, role: str) -> Optional[Identity]:
        with self._transaction("update_identity_role") as conn:
            row = conn.execute(
                "UPDATE app_identity SET role = %s WHERE id = %s RETURNING *",
                (role, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._transaction("record_login") as conn:
            conn.execute(
                "UPDATE app_identity SET last_login_at = %s WHERE id = %s",
                (ensure_utc(at), identity_id),
            )

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._transaction("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO identity_credential (identity_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (identity_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (identity_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "identity not found for credentials", {"identity_id": identity_id}
            ) from exc

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._transaction("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM identity_credential WHERE identity_id = %s",
                (identity_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        raw_ip = row.get("ip_addr")
        return Session(
            id=str(row["id"]),
            identity_id=str(row["identity_id"]),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            last_used_at=ensure_utc(row.get("last_used_at") or row["created_at"]),
            access_token_hash=row.get("access_token_hash") or "",
            refresh_token_hash=row.get("refresh_token_hash") or "",
            user_agent=row.get("user_agent"),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            is_active=bool(row.get("is_active", True)),
            refresh_count=int(row.get("refresh_count") or 0),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._transaction("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, identity_id, created_at, expires_at, last_used_at,
                        access_token_hash, refresh_token_hash, user_agent, ip_addr,
                        is_active, refresh_count
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.identity_id,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.access_token_hash,
                        session.refresh_token_hash,
                        session.user_agent,
                        session.ip_addr,
                        session.is_active,
                        session.refresh_count,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": session.identity_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "session already exists", {"session_id": session.id}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, session: Session) -> bool:
        with self._transaction("update_session") as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET access_token_hash = %s,
                    refresh_token_hash = %s,
                    last_used_at = %s,
                    refresh_count = %s
                WHERE id = %s AND is_active
                """,
                (
                    session.access_token_hash,
                    session.refresh_token_hash,
                    session.last_used_at,
                    session.refresh_count,
                    session.id,
                ),
            )
            return cur.rowcount > 0

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._transaction("touch_session") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s AND is_active",
                (ensure_utc(at), session_id),
            )
            return cur.rowcount > 0

    def deactivate_session(self, session_id: str) -> bool:
        with self._transaction("deactivate_session") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s",
                (session_id,),
            )
            return cur.rowcount > 0

    def deactivate_identity_sessions(self, identity_id: str) -> List[str]:
        with self._transaction("deactivate_identity_sessions") as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE identity_id = %s AND is_active
                RETURNING id
                """,
                (identity_id,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def list_identity_sessions(self, identity_id: str) -> List[Session]:
        with self._transaction("list_identity_sessions") as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE identity_id = %s ORDER BY created_at",
                (identity_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(
        self, now: datetime, inactive_before: Optional[datetime] = None
    ) -> int:
        with self._transaction("delete_expired_sessions") as conn:
            if inactive_before is None:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE expires_at < %s", (ensure_utc(now),)
                )
            else:
                cur = conn.execute(
                    """
                    DELETE FROM auth_session
                    WHERE expires_at < %s OR (NOT is_active AND last_used_at < %s)
                    """,
                    (ensure_utc(now), ensure_utc(inactive_before)),
                )
            return cur.rowcount

    # revocations
    def add_revoked_token(self, entry: RevokedToken) -> None:
        with self._transaction("add_revoked_token") as conn:
            conn.execute(
                """
                INSERT INTO revoked_token (token_hash, token_type, session_id, expires_at, revoked_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO UPDATE
                SET expires_at = GREATEST(revoked_token.expires_at, EXCLUDED.expires_at)
                """,
                (
                    entry.token_hash,
                    entry.token_type,
                    entry.session_id,
                    ensure_utc(entry.expires_at),
                    ensure_utc(entry.revoked_at),
                ),
            )

    def is_token_revoked(self, token_hash: str, now: Optional[datetime] = None) -> bool:
        with self._transaction("is_token_revoked") as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM revoked_token WHERE token_hash = %s AND expires_at > %s",
                (token_hash, ensure_utc(now or utcnow())),
            ).fetchone()
        return bool(row)

    def delete_expired_revocations(self, now: datetime) -> int:
        with self._transaction("delete_expired_revocations") as conn:
            cur = conn.execute(
                "DELETE FROM revoked_token WHERE expires_at <= %s", (ensure_utc(now),)
            )
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()
