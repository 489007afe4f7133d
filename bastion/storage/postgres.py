from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bastion.logging import get_logger
from bastion.storage.errors import ConstraintViolation, SchemaMissing
from bastion.storage.models import RefreshTokenRecord, Role, User


_REQUIRED_TABLES = ("users", "refresh_tokens")


class PostgresStore:
    """Postgres-backed users and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissing(missing_tables)

    @staticmethod
    def _user_from_row(row: dict) -> User:
        created_at = row.get("created_at") or datetime.now(timezone.utc)
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", Role.USER.value),
            created_at=created_at,
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            selector=row["selector"],
            validator_hash=row["validator_hash"],
            expires_at=int(row["expires_at"]),
        )

    # users
    def create_user(
        self, email: str, password_hash: str, *, role: str = Role.USER.value
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (email.strip().lower(), password_hash, Role(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email.strip(),)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def delete_user(self, user_id: int) -> bool:
        # refresh_tokens rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def insert_refresh_token(
        self, user_id: int, selector: str, validator_hash: str, expires_at: int
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (user_id, selector, validator_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, user_id, selector, validator_hash, expires_at
                    """,
                    (user_id, selector, validator_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("selector already exists", {"field": "selector"})
        return self._refresh_from_row(row)

    def consume_refresh_token(self, selector: str) -> Optional[RefreshTokenRecord]:
        """Delete the record for ``selector`` and return it.

        A single DELETE ... RETURNING statement, so two concurrent redemptions
        of one selector cannot both receive the row.
        """

        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_tokens
                WHERE selector = %s
                RETURNING id, user_id, selector, validator_hash, expires_at
                """,
                (selector,),
            ).fetchone()
        if not row:
            return None
        return self._refresh_from_row(row)

    def get_refresh_token(self, selector: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE selector = %s", (selector,)
            ).fetchone()
        if not row:
            return None
        return self._refresh_from_row(row)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def purge_expired_refresh_tokens(self, now: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (now,)
            )
            return result.rowcount
