"""Helpers shared by the memory and postgres credential stores.

Both backends must agree on normalization and on when a token counts as
live, so the auth flow never depends on which store was selected at start.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from tripgate.storage.models import User, utcnow

Clock = Callable[[], datetime]


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_username(self, username: str) -> Optional[User]: ...

    def find_by_verification_token(self, token: str) -> Optional[User]: ...

    def find_by_reset_token(self, token: str) -> Optional[User]: ...

    def save(self, user: User) -> User: ...

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
    ) -> User: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def token_is_live(
    stored: Optional[str], expires: Optional[datetime], presented: str, now: datetime
) -> bool:
    """A token matches only while ``now < expires``."""
    if not stored or not presented or stored != presented:
        return False
    expires = ensure_aware(expires)
    return expires is not None and now < expires


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return ensure_aware(datetime.fromisoformat(raw)) if raw else None


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "is_verified": user.is_verified,
        "verification_token": user.verification_token,
        "verification_token_expires": _dt(user.verification_token_expires),
        "reset_token": user.reset_token,
        "reset_token_expires": _dt(user.reset_token_expires),
        "provider_identities": dict(user.provider_identities),
        "created_at": _dt(user.created_at),
        "updated_at": _dt(user.updated_at),
    }


def user_from_dict(data: Dict[str, Any]) -> User:
    created_at = _parse_dt(data.get("created_at")) or utcnow()
    return User(
        id=str(data["id"]),
        username=data["username"],
        email=data["email"],
        password_hash=data["password_hash"],
        is_verified=bool(data.get("is_verified", False)),
        verification_token=data.get("verification_token"),
        verification_token_expires=_parse_dt(data.get("verification_token_expires")),
        reset_token=data.get("reset_token"),
        reset_token_expires=_parse_dt(data.get("reset_token_expires")),
        provider_identities=dict(data.get("provider_identities") or {}),
        created_at=created_at,
        updated_at=_parse_dt(data.get("updated_at")) or created_at,
    )
