from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskgate.logging import get_logger
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Role, User


class PostgresStore:
    """User directory and ownership lookups backed by Postgres."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            row = conn.execute("SELECT to_regclass('public.app_user') AS tbl").fetchone()
        if not row or not row.get("tbl"):
            raise RuntimeError(
                "Required table app_user is missing; apply sql/schema.sql before starting"
            )

    @staticmethod
    def _user_from_row(row: Mapping[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            role=row.get("role", Role.USER.value),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = Role.USER.value,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, name, role),
                ).fetchone()
        except errors.UniqueViolation:
            self.logger.warning("user_create_conflict", email=email)
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_resource_owner(self, resource_id: str) -> Optional[str]:
        """Return the owning user id for a task or user record."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id::text AS owner_id FROM task WHERE id::text = %s
                UNION ALL
                SELECT id::text AS owner_id FROM app_user WHERE id::text = %s
                LIMIT 1
                """,
                (resource_id, resource_id),
            ).fetchone()
        if not row:
            return None
        return str(row["owner_id"])
