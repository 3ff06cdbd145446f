from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import (
    ensure_utc,
    generate_uuid,
    normalize_email,
    normalize_permissions,
    normalize_user_meta,
    parse_ip_address,
    parse_json_meta,
    safe_row_value,
)
from authcore.storage.errors import BackendUnavailable, ConstraintViolation
from authcore.storage.models import Credential, Session, User, utcnow

# Column names accepted by update_credential; anything else is rejected before
# it can reach the SQL text.
_CREDENTIAL_COLUMNS = (
    "password_hash",
    "password_algo",
    "failed_attempts",
    "locked_until",
    "password_changed_at",
    "mfa_enabled",
    "mfa_secret",
    "backup_code_hashes",
    "reset_token_hash",
    "reset_expires_at",
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT,
        password_algo TEXT,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        reset_token_hash TEXT,
        reset_expires_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_credential_reset_hash_idx
        ON user_credential (reset_token_hash)
        WHERE reset_token_hash IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        fingerprint TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        rotated_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr INET,
        mfa_verified BOOLEAN NOT NULL DEFAULT FALSE,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_active_refresh_idx
        ON auth_session (refresh_token_hash)
        WHERE NOT revoked
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
)


class PostgresStore:
    """Postgres-backed auth store.

    Conditional updates are expressed in SQL (``WHERE version = %s`` and
    ``WHERE refresh_token_hash = %s``) so that concurrent writers from any
    process serialize on the row.
    """

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise BackendUnavailable(
                f"postgres unavailable: {exc}", backend="postgres"
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name"),
            role=safe_row_value(row, "role", "user"),
            permissions=normalize_permissions(safe_row_value(row, "permissions")),
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
            meta=parse_json_meta(safe_row_value(row, "meta")),
        )

    @staticmethod
    def _row_to_credential(row: Dict[str, Any]) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            password_hash=safe_row_value(row, "password_hash"),
            password_algo=safe_row_value(row, "password_algo"),
            failed_attempts=int(safe_row_value(row, "failed_attempts", 0) or 0),
            locked_until=ensure_utc(safe_row_value(row, "locked_until")),
            password_changed_at=ensure_utc(safe_row_value(row, "password_changed_at")),
            mfa_enabled=bool(safe_row_value(row, "mfa_enabled", False)),
            mfa_secret=safe_row_value(row, "mfa_secret"),
            backup_code_hashes=list(safe_row_value(row, "backup_code_hashes") or []),
            reset_token_hash=safe_row_value(row, "reset_token_hash"),
            reset_expires_at=ensure_utc(safe_row_value(row, "reset_expires_at")),
            version=int(safe_row_value(row, "version", 0) or 0),
            updated_at=ensure_utc(safe_row_value(row, "updated_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            fingerprint=safe_row_value(row, "fingerprint"),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            rotated_at=ensure_utc(safe_row_value(row, "rotated_at")),
            user_agent=safe_row_value(row, "user_agent"),
            ip_addr=parse_ip_address(safe_row_value(row, "ip_addr")),
            mfa_verified=bool(safe_row_value(row, "mfa_verified", False)),
            revoked=bool(safe_row_value(row, "revoked", False)),
            revoked_at=ensure_utc(safe_row_value(row, "revoked_at")),
        )

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
        name: Optional[str] = None,
        role: str = "user",
        permissions: Optional[Sequence[str]] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        """Insert the user and its credential row in one transaction."""
        user_id = generate_uuid()
        normalized = normalize_email(email)
        perms = normalize_permissions(permissions)
        normalized_meta = normalize_user_meta(meta)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, permissions, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        name,
                        role,
                        perms,
                        is_active,
                        json.dumps(normalized_meta) if normalized_meta else None,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(
        self,
        user_id: str,
        role: str,
        permissions: Optional[Sequence[str]] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            if permissions is None:
                row = conn.execute(
                    "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                    (role, user_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "UPDATE app_user SET role = %s, permissions = %s WHERE id = %s RETURNING *",
                    (role, normalize_permissions(permissions), user_id),
                ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------
    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def update_credential(
        self, user_id: str, expected_version: int, **fields
    ) -> Optional[Credential]:
        unknown = set(fields) - set(_CREDENTIAL_COLUMNS)
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        columns = [col for col in _CREDENTIAL_COLUMNS if col in fields]
        assignments = [f"{col} = %s" for col in columns]
        assignments.extend(["version = version + 1", "updated_at = now()"])
        params: List[Any] = [fields[col] for col in columns]
        params.extend([user_id, expected_version])
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE user_credential SET {", ".join(assignments)}
                WHERE user_id = %s AND version = %s
                RETURNING *
                """,
                params,
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def find_credential_by_reset_hash(self, token_hash: str) -> Optional[Credential]:
        if not token_hash:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE reset_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_credential
                SET backup_code_hashes = array_remove(backup_code_hashes, %s),
                    version = version + 1,
                    updated_at = now()
                WHERE user_id = %s AND %s = ANY(backup_code_hashes)
                RETURNING user_id
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token_hash, fingerprint, created_at,
                        expires_at, user_agent, ip_addr, mfa_verified
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.fingerprint,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        parse_ip_address(session.ip_addr),
                        session.mfa_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already bound", {"field": "refresh_token_hash"}
            )
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def find_active_session(
        self, user_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND refresh_token_hash = %s
                  AND NOT revoked AND expires_at > %s
                """,
                (user_id, refresh_token_hash, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        rotated_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, rotated_at = %s, expires_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND NOT revoked
                RETURNING *
                """,
                (new_hash, rotated_at, expires_at, session_id, expected_hash),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str, *, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (revoked_at, session_id),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(self, user_id: str, *, revoked_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT revoked
                """,
                (revoked_at, user_id),
            )
            return cur.rowcount or 0

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
