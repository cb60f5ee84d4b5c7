from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from starterauth.logging import get_logger
from starterauth.storage.errors import ConstraintViolation, RecordNotFound
from starterauth.storage.models import USER_MUTABLE_FIELDS, RefreshToken, User, utcnow

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


class PostgresStore:
    """Postgres-backed credential store.

    Every method runs in its own pooled connection; the context manager commits
    on success and rolls back on error, so each call is a single-row atomic unit.
    """

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

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema has not been installed."""

        required_tables = ["app_user", "refresh_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            name=row.get("name"),
            is_email_confirmed=bool(row.get("is_email_confirmed", False)),
            email_confirmation_token=row.get("email_confirmation_token"),
            email_confirmation_expires=row.get("email_confirmation_expires"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            avatar_url=row.get("avatar_url"),
            provider=row.get("provider"),
            provider_id=row.get("provider_id"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", params).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        is_email_confirmed: bool = False,
        email_confirmation_token: Optional[str] = None,
        email_confirmation_expires: Optional[datetime] = None,
        avatar_url: Optional[str] = None,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, password_hash, name, is_email_confirmed,
                        email_confirmation_token, email_confirmation_expires,
                        avatar_url, provider, provider_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        password_hash,
                        name,
                        is_email_confirmed,
                        email_confirmation_token,
                        email_confirmation_expires,
                        avatar_url,
                        provider,
                        provider_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "email"
            if exc.diag.constraint_name and "provider" in exc.diag.constraint_name:
                field = "provider_id"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self._fetch_user("provider = %s AND provider_id = %s", (provider, provider_id))

    def get_user_by_confirmation_token(self, token: str) -> Optional[User]:
        return self._fetch_user("email_confirmation_token = %s", (token,))

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        return self._fetch_user(
            "password_reset_token = %s AND password_reset_expires > %s",
            (token, now or utcnow()),
        )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at ASC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **changes: Any) -> User:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if self.get_user(user_id) is None:
            raise RecordNotFound("user not found", {"id": user_id})
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name))
            for name in changes
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE app_user SET {} WHERE id = {} RETURNING *").format(
            sql.SQL(", ").join(assignments), sql.Placeholder("_user_id")
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, {**changes, "_user_id": user_id}).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        if not row:
            raise RecordNotFound("user not found", {"id": user_id})
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> bool:
        if self.get_user(user_id) is None:
            return False
        with self._connect() as conn:
            # refresh tokens go with the user through ON DELETE CASCADE
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def delete_unconfirmed_expired(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM app_user
                WHERE is_email_confirmed = FALSE
                  AND email_confirmation_expires IS NOT NULL
                  AND email_confirmation_expires < %s
                """,
                (now or utcnow(),),
            )
            return result.rowcount

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (token, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            ) from exc
        return self._row_to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount
