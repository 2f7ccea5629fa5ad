from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from inkwell.logging import get_logger
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.memory import USER_MUTABLE_FIELDS
from inkwell.storage.models import (
    BlacklistEntry,
    PasswordResetRecord,
    User,
    utc_now,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        google_id TEXT,
        picture TEXT,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        refresh_token_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS app_user_refresh_token_idx ON app_user (refresh_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        reason VARCHAR(50) NOT NULL DEFAULT 'logout',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expires_idx ON token_blacklist (expires_at)",
    "CREATE INDEX IF NOT EXISTS token_blacklist_user_idx ON token_blacklist (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token VARCHAR(255) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_user_idx ON password_reset (user_id)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials, revocations and resets."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=4)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "user"),
            google_id=row.get("google_id"),
            picture=row.get("picture"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            refresh_token_hash=row.get("refresh_token_hash"),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
        )

    @staticmethod
    def _row_to_entry(row: dict) -> BlacklistEntry:
        return BlacklistEntry(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            reason=row.get("reason", "logout"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_reset(row: dict) -> PasswordResetRecord:
        return PasswordResetRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            is_used=bool(row.get("is_used", False)),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        *,
        role: str = "user",
        google_id: Optional[str] = None,
        picture: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            google_id=google_id,
            picture=picture,
            is_email_verified=is_email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, google_id,
                                          picture, is_email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        first_name,
                        last_name,
                        role,
                        google_id,
                        picture,
                        is_email_verified,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [fields[column] for column in columns] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_refresh_token(self, user_id: str, token_hash: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET refresh_token_hash = %s, updated_at = now() WHERE id = %s",
                (token_hash, user_id),
            )

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]:
        if not token_hash:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE refresh_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def rotate_refresh_token(self, old_hash: str, new_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET refresh_token_hash = %s, updated_at = now()
                WHERE refresh_token_hash = %s
                RETURNING *
                """,
                (new_hash, old_hash),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users_with_pending_reset(self, now: Optional[datetime] = None) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT u.* FROM app_user u
                JOIN password_reset r ON r.user_id = u.id
                WHERE r.is_used = FALSE AND r.expires_at > %s
                """,
                (now or utc_now(),),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # blacklist
    def upsert_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO token_blacklist (id, token, user_id, expires_at, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (token) DO UPDATE
                SET user_id = EXCLUDED.user_id,
                    expires_at = EXCLUDED.expires_at,
                    reason = EXCLUDED.reason,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (
                    entry.id,
                    entry.token,
                    entry.user_id,
                    entry.expires_at,
                    entry.reason,
                    entry.created_at,
                ),
            ).fetchone()
        return self._row_to_entry(row)

    def get_blacklist_entry(self, token: str) -> Optional[BlacklistEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_blacklist WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def delete_blacklist_entry(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM token_blacklist WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_blacklist_entries_for_user(
        self, user_id: str, reasons: Iterable[str]
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM token_blacklist WHERE user_id = %s AND reason = ANY(%s) RETURNING token",
                (user_id, list(reasons)),
            ).fetchall()
        return [row["token"] for row in rows]

    def delete_expired_blacklist_entries(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at < %s", (before,)
            )
            return result.rowcount

    def count_blacklist_entries(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM token_blacklist").fetchone()
        return int(row["total"]) if row else 0

    # password resets
    def create_password_reset(self, record: PasswordResetRecord) -> PasswordResetRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset (id, user_id, token, expires_at, is_used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token,
                        record.expires_at,
                        record.is_used,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for reset", {"user_id": record.user_id})
        return record

    def get_password_reset(self, token: str) -> Optional[PasswordResetRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def get_latest_live_password_reset(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_reset
                WHERE user_id = %s AND is_used = FALSE AND expires_at > %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, now or utc_now()),
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def invalidate_password_resets(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE password_reset SET is_used = TRUE WHERE user_id = %s AND is_used = FALSE",
                (user_id,),
            )
            return result.rowcount

    def consume_password_reset(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset SET is_used = TRUE
                WHERE token = %s AND is_used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, now or utc_now()),
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def delete_password_reset(self, reset_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset WHERE id = %s", (reset_id,))

    def delete_expired_password_resets(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM password_reset WHERE expires_at < %s", (before,))
            return result.rowcount

    def delete_used_password_resets(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset WHERE is_used = TRUE AND created_at < %s", (before,)
            )
            return result.rowcount
