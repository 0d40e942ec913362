from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from tripgate.logging import get_logger
from tripgate.storage.common import (
    Clock,
    ensure_aware,
    normalize_email,
    normalize_username,
)
from tripgate.storage.errors import (
    DuplicateKeyError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from tripgate.storage.models import User, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    is_verified BOOLEAN NOT NULL DEFAULT false,
    verification_token TEXT,
    verification_token_expires TIMESTAMPTZ,
    reset_token TEXT,
    reset_token_expires TIMESTAMPTZ,
    provider_identities JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT app_user_email_key UNIQUE (email),
    CONSTRAINT app_user_username_key UNIQUE (username)
);
CREATE INDEX IF NOT EXISTS app_user_verification_token_idx
    ON app_user (verification_token) WHERE verification_token IS NOT NULL;
CREATE INDEX IF NOT EXISTS app_user_reset_token_idx
    ON app_user (reset_token) WHERE reset_token IS NOT NULL;
"""

_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
}

_COLUMNS = (
    "id, username, email, password_hash, is_verified, verification_token, "
    "verification_token_expires, reset_token, reset_token_expires, "
    "provider_identities, created_at, updated_at"
)


def _duplicate_field(exc: errors.UniqueViolation) -> str:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    return _CONSTRAINT_FIELDS.get(constraint or "", "email")


class PostgresStore:
    """Durable credential store backed by a pooled Postgres connection."""

    def __init__(
        self,
        dsn: str,
        *,
        clock: Clock = utcnow,
        min_size: int = 1,
        max_size: int = 10,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock = clock
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        try:
            self.pool.open(wait=True, timeout=connect_timeout)
        except PoolTimeout as exc:
            self.pool.close()
            raise StoreUnavailableError("postgres unreachable", {"dsn_host": _host(dsn)}) from exc
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Pooled connection; a dropped server or exhausted pool surfaces as unavailability."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError(
                "postgres unreachable", {"dsn_host": _host(self.dsn)}
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            is_verified=bool(row.get("is_verified", False)),
            verification_token=row.get("verification_token"),
            verification_token_expires=ensure_aware(row.get("verification_token_expires")),
            reset_token=row.get("reset_token"),
            reset_token_expires=ensure_aware(row.get("reset_token_expires")),
            provider_identities=dict(row.get("provider_identities") or {}),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    def _fetch_one(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("email = %s", (normalize_email(email),))

    def find_by_id(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._fetch_one("id = %s", (user_id,))

    def find_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("username = %s", (normalize_username(username),))

    def find_by_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_one(
            "verification_token = %s AND verification_token_expires > %s",
            (token, self._clock()),
        )

    def find_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_one(
            "reset_token = %s AND reset_token_expires > %s",
            (token, self._clock()),
        )

    def create(
        self,
        *,
        username: str,
        email: str,
        password_hash: str,
        is_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_token_expires: Optional[datetime] = None,
        provider_identities: Optional[Dict[str, str]] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = self._clock()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, username, email, password_hash, is_verified,
                        verification_token, verification_token_expires,
                        provider_identities, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_COLUMNS}
                    """,
                    (
                        user_id,
                        normalize_username(username),
                        normalize_email(email),
                        password_hash,
                        is_verified,
                        verification_token,
                        verification_token_expires,
                        Jsonb(dict(provider_identities or {})),
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateKeyError(_duplicate_field(exc)) from exc
        return self._row_to_user(row)

    def save(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET
                        username = %s,
                        email = %s,
                        password_hash = %s,
                        is_verified = %s,
                        verification_token = %s,
                        verification_token_expires = %s,
                        reset_token = %s,
                        reset_token_expires = %s,
                        provider_identities = %s,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING {_COLUMNS}
                    """,
                    (
                        normalize_username(user.username),
                        normalize_email(user.email),
                        user.password_hash,
                        user.is_verified,
                        user.verification_token,
                        user.verification_token_expires,
                        user.reset_token,
                        user.reset_token_expires,
                        Jsonb(dict(user.provider_identities)),
                        self._clock(),
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateKeyError(_duplicate_field(exc)) from exc
        if not row:
            raise RecordNotFoundError(f"user {user.id} not found")
        return self._row_to_user(row)


def _host(dsn: str) -> str:
    """Best-effort host extraction for log context without credentials."""
    tail = dsn.rsplit("@", 1)[-1]
    return tail.split("/", 1)[0]
