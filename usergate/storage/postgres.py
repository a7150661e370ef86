from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from usergate.logging import get_logger
from usergate.storage.errors import ConstraintViolation, StoreUnavailable
from usergate.storage.models import Role, TokenPurpose, User, VerificationToken

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS role (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role_id INTEGER NOT NULL REFERENCES role(id),
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        address TEXT,
        lat DOUBLE PRECISION,
        lng DOUBLE PRECISION,
        phone TEXT,
        photo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_token (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id),
        token TEXT NOT NULL UNIQUE,
        purpose TEXT NOT NULL CHECK (purpose IN ('email_verification', 'reset_password')),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        consumed_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ
    )
    """,
)

_USER_COLUMNS = """
    u.id, u.name, u.email, u.password_hash, r.name AS role, u.is_verified,
    u.address, u.lat, u.lng, u.phone, u.photo, u.created_at, u.updated_at
"""


class PostgresStore:
    """Postgres-backed credential and verification token store."""

    def __init__(
        self,
        dsn: str,
        *,
        default_roles: tuple[str, ...] = ("Customer", "Admin"),
        connect_timeout: float = 5.0,
        statement_timeout_ms: Optional[int] = None,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=connect_timeout,
            kwargs=self._connection_kwargs(statement_timeout_ms),
        )
        self._ensure_schema(default_roles)

    @staticmethod
    def _connection_kwargs(statement_timeout_ms: Optional[int]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout_ms:
            kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        return kwargs

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Pooled connection; lost connections and cancelled statements raise StoreUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("postgres unavailable") from exc

    def _ensure_schema(self, default_roles: tuple[str, ...]) -> None:
        """Create the role, user and token tables and seed the default roles."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            for name in default_roles:
                conn.execute(
                    "INSERT INTO role (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (name,),
                )

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "Customer",
            is_verified=bool(row.get("is_verified", False)),
            address=row.get("address"),
            lat=row.get("lat"),
            lng=row.get("lng"),
            phone=row.get("phone"),
            photo=row.get("photo"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token=row["token"],
            purpose=TokenPurpose(row["purpose"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            consumed_at=row.get("consumed_at"),
            deleted_at=row.get("deleted_at"),
        )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "Customer",
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        phone: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> User:
        normalized = self._normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (name, email, password_hash, role_id, address, lat, lng, phone, photo)
                    SELECT %s, %s, %s, r.id, %s, %s, %s, %s, %s FROM role r WHERE r.name = %s
                    RETURNING id, created_at
                    """,
                    (name, normalized, password_hash, address, lat, lng, phone, photo, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise ConstraintViolation("role does not exist", {"field": "role", "role": role})
        return User(
            id=int(row["id"]),
            name=name,
            email=normalized,
            password_hash=password_hash,
            role=role,
            address=address,
            lat=lat,
            lng=lng,
            phone=phone,
            photo=photo,
            created_at=row["created_at"],
        )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user u JOIN role r ON r.id = u.role_id WHERE u.id = %s",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(
        self, email: str, *, verified_only: bool = False
    ) -> Optional[User]:
        query = (
            f"SELECT {_USER_COLUMNS} FROM app_user u JOIN role r ON r.id = u.role_id "
            "WHERE u.email = %s"
        )
        if verified_only:
            query += " AND u.is_verified = TRUE"
        with self._connect() as conn:
            row = conn.execute(query, (self._normalize_email(email),)).fetchone()
        return self._user_from_row(row) if row else None

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM role WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return Role(id=int(row["id"]), name=row["name"])

    # -- verification tokens -------------------------------------------------

    def create_verification_token(
        self,
        user_id: int,
        token: str,
        purpose: TokenPurpose,
        expires_at: datetime,
    ) -> VerificationToken:
        purpose = TokenPurpose(purpose)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO verification_token (user_id, token, purpose, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, user_id, token, purpose, expires_at, created_at, consumed_at, deleted_at
                    """,
                    (user_id, token, purpose.value, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return self._token_from_row(row)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token, purpose, expires_at, created_at, consumed_at, deleted_at
                FROM verification_token WHERE token = %s
                """,
                (token,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def _claim_and_apply(self, token_id: int, sql: str, params: tuple) -> Optional[User]:
        """Consume the token and update its owner in one transaction.

        ``sql`` updates ``app_user`` with the owner id as its last parameter
        and returns the id. Returns None when the token was already consumed or
        deleted; any failure rolls both writes back.
        """
        with self._connect() as conn, conn.transaction():
            claimed = conn.execute(
                """
                UPDATE verification_token SET consumed_at = now()
                WHERE id = %s AND consumed_at IS NULL AND deleted_at IS NULL
                RETURNING user_id
                """,
                (token_id,),
            ).fetchone()
            if not claimed:
                return None
            user_id = int(claimed["user_id"])
            row = conn.execute(sql, params + (user_id,)).fetchone()
            if not row:
                raise ConstraintViolation(
                    "user does not exist", {"field": "user_id", "user_id": user_id}
                )
        return self.get_user(user_id)

    def verify_with_token(self, token_id: int) -> Optional[User]:
        return self._claim_and_apply(
            token_id,
            "UPDATE app_user SET is_verified = TRUE, updated_at = now() WHERE id = %s RETURNING id",
            (),
        )

    def reset_password_with_token(self, token_id: int, password_hash: str) -> Optional[User]:
        return self._claim_and_apply(
            token_id,
            "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING id",
            (password_hash,),
        )
