from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, SchemaMissing
from sessionguard.storage.models import LoginEvent, SessionRecord, User

REQUIRED_TABLES = ["app_user", "auth_session", "login_event"]

SCHEMA_DDL = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoked_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS login_event (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        username TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        reason TEXT NOT NULL,
        ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_event_username_idx ON login_event (username, created_at DESC)",
]


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        password_hash=row["password_hash"],
        password_algo=row.get("password_algo") or "argon2id",
        is_banned=bool(row.get("is_banned", False)),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        revoked_by=row.get("revoked_by"),
    )


def _event_from_row(row: Dict[str, Any]) -> LoginEvent:
    return LoginEvent(
        id=str(row["id"]),
        user_id=row.get("user_id"),
        username=row["username"],
        success=bool(row["success"]),
        reason=row["reason"],
        ip=row.get("ip"),
        user_agent=row.get("user_agent"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Durable ledger of users, session rows and login audit facts."""

    def __init__(self, dsn: str, *, verify: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify:
            self.verify_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create ledger tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_DDL:
                conn.execute(statement)
        self.logger.info("ledger_schema_ensured", tables=REQUIRED_TABLES)

    def verify_schema(self) -> None:
        """Fail fast when ledger tables are absent."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissing(missing_tables)

    def close(self) -> None:
        self.pool.close()

    # users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        user_id: Optional[str] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, password_hash, password_algo)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, password_hash, password_algo),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", field="username")
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_banned(self, user_id: str, banned: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET is_banned = %s, updated_at = now() WHERE id = %s",
                (banned, user_id),
            )
            return cur.rowcount > 0

    # session ledger ----------------------------------------------------

    def create_session_record(self, record: SessionRecord) -> SessionRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.id, record.user_id, record.created_at, record.expires_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", field="id")
        return record

    def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def revoke_session_record(
        self,
        session_id: str,
        actor: str,
        at: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Stamp revocation once; later calls leave the first actor in place.

        With ``user_id`` the row is only touched when that user owns it.
        """
        sql = """
            UPDATE auth_session
            SET revoked_at = %s, revoked_by = %s
            WHERE id = %s AND revoked_at IS NULL
        """
        params: List[Any] = [at or datetime.now(timezone.utc), actor, session_id]
        if user_id is not None:
            sql += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def list_session_records(self, user_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    # login audit -------------------------------------------------------

    def record_login_event(self, event: LoginEvent) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO login_event (id, user_id, username, success, reason, ip, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    event.id,
                    event.user_id,
                    event.username,
                    event.success,
                    event.reason,
                    event.ip,
                    event.user_agent,
                    event.created_at,
                ),
            )
            return cur.rowcount > 0

    def list_login_events(
        self,
        *,
        username: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[LoginEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if username is not None:
            clauses.append("username = %s")
            params.append(username)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM login_event {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [_event_from_row(row) for row in rows]
