from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from testhub.logging import get_logger
from testhub.storage.errors import ConstraintViolation, SchemaMissingError
from testhub.storage.memory import normalize_email
from testhub.storage.models import DEFAULT_ROLE, Company, RefreshToken, User, utcnow

_REQUIRED_TABLES = ("company", "app_user", "refresh_token")

_USER_COLUMNS = (
    "id, email, full_name, password_hash, role, is_active, company_id, "
    "last_login_at, created_at"
)
_TOKEN_COLUMNS = "id, user_id, token, expires_at, created_at"
_COMPANY_COLUMNS = (
    "id, name, business_type, trading_name, industry, city, state, plan_type, "
    "max_projects, max_users, max_storage_gb, trial_ends_at, created_by, created_at"
)


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        password_hash=row["password_hash"],
        role=row.get("role", DEFAULT_ROLE),
        is_active=row.get("is_active", True),
        company_id=row.get("company_id"),
        last_login_at=row.get("last_login_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _token_from_row(row: dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
    )


def _company_from_row(row: dict[str, Any]) -> Company:
    return Company(
        id=row["id"],
        name=row["name"],
        business_type=row.get("business_type", "tech_department"),
        trading_name=row.get("trading_name"),
        industry=row.get("industry"),
        city=row.get("city"),
        state=row.get("state"),
        plan_type=row.get("plan_type", "trial"),
        max_projects=row.get("max_projects", 5),
        max_users=row.get("max_users", 15),
        max_storage_gb=row.get("max_storage_gb", 10),
        trial_ends_at=row.get("trial_ends_at"),
        created_by=row.get("created_by"),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential store."""

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

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise SchemaMissingError(missing)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE,
        company_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (email, full_name, password_hash, role, is_active, company_id)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (normalize_email(email), full_name, password_hash, role, is_active, company_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company does not exist", {"field": "company_id"})
        except errors.CheckViolation:
            raise ConstraintViolation("invalid role", {"field": "role"})
        return _user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET last_login_at = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (when or utcnow(), user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET is_active = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET role = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (role, user_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation("invalid role", {"field": "role"})
        return _user_from_row(row) if row else None

    # -- companies ---------------------------------------------------------

    def create_company_with_admin(
        self,
        *,
        name: str,
        business_type: str,
        trading_name: Optional[str],
        industry: Optional[str],
        city: Optional[str],
        state: Optional[str],
        trial_ends_at: Optional[datetime],
        admin_email: str,
        admin_full_name: str,
        admin_password_hash: str,
    ) -> Tuple[Company, User]:
        try:
            with self._connect() as conn, conn.transaction():
                company_row = conn.execute(
                    """
                    INSERT INTO company
                        (name, business_type, trading_name, industry, city, state, trial_ends_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (name, business_type, trading_name, industry, city, state, trial_ends_at),
                ).fetchone()
                user_row = conn.execute(
                    f"""
                    INSERT INTO app_user (email, full_name, password_hash, role, is_active, company_id)
                    VALUES (%s, %s, %s, 'admin', TRUE, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        normalize_email(admin_email),
                        admin_full_name,
                        admin_password_hash,
                        company_row["id"],
                    ),
                ).fetchone()
                company_row = conn.execute(
                    f"UPDATE company SET created_by = %s WHERE id = %s RETURNING {_COMPANY_COLUMNS}",
                    (user_row["id"], company_row["id"]),
                ).fetchone()
        except errors.UniqueViolation:
            # The transaction rolled back, so no orphaned company remains
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _company_from_row(company_row), _user_from_row(user_row)

    def get_company(self, company_id: int) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COMPANY_COLUMNS} FROM company WHERE id = %s", (company_id,)
            ).fetchone()
        return _company_from_row(row) if row else None

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (user_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (user_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return _token_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def delete_refresh_token(self, token_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE id = %s RETURNING id", (token_id,)
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self, old_token_id: int, user_id: int, token: str, expires_at: datetime
    ) -> Optional[RefreshToken]:
        """Delete the consumed row and insert its successor in one transaction.

        The DELETE takes a row lock, so a concurrent rotation of the same row
        waits and then sees zero rows; that caller gets ``None``.
        """
        try:
            with self._connect() as conn, conn.transaction():
                consumed = conn.execute(
                    "DELETE FROM refresh_token WHERE id = %s RETURNING id",
                    (old_token_id,),
                ).fetchone()
                if consumed is None:
                    return None
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (user_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (user_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return _token_from_row(row)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            count = cursor.rowcount or 0
        if count:
            self.logger.info("refresh_tokens_purged", count=count)
        return count
