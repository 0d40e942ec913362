from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from tripgate.logging import get_logger
from tripgate.storage.common import (
    Clock,
    normalize_email,
    normalize_username,
    token_is_live,
    user_from_dict,
    user_to_dict,
)
from tripgate.storage.errors import (
    DuplicateKeyError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from tripgate.storage.models import User, utcnow


def _copy(user: User) -> User:
    return replace(user, provider_identities=dict(user.provider_identities))


class MemoryStore:
    """In-process credential store used when no durable database is reachable.

    Records are keyed by generated id. Reads and writes hold one re-entrant
    lock and callers only receive copies. When ``fs_root`` is given the user
    map is snapshotted to JSON after each write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None, *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._clock = clock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    def _persist_state(self, users: Dict[str, User]) -> None:
        """Snapshot ``users`` to disk. Callers swap the map in only afterwards."""
        if self.fs_root is None:
            return
        state = {"users": [user_to_dict(u) for u in users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailableError(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: user_from_dict(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _check_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise DuplicateKeyError("email")
            if existing.username == user.username:
                raise DuplicateKeyError("username")

    def _find(self, predicate) -> Optional[User]:
        with self._data_lock:
            match = next((u for u in self.users.values() if predicate(u)), None)
            return _copy(match) if match else None

    def find_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        return self._find(lambda u: u.email == normalized)

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy(user) if user else None

    def find_by_username(self, username: str) -> Optional[User]:
        normalized = normalize_username(username)
        return self._find(lambda u: u.username == normalized)

    def find_by_verification_token(self, token: str) -> Optional[User]:
        now = self._clock()
        return self._find(
            lambda u: token_is_live(
                u.verification_token, u.verification_token_expires, token, now
            )
        )

    def find_by_reset_token(self, token: str) -> Optional[User]:
        now = self._clock()
        return self._find(
            lambda u: token_is_live(u.reset_token, u.reset_token_expires, token, now)
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
        now = self._clock()
        user = User(
            id=str(uuid.uuid4()),
            username=normalize_username(username),
            email=normalize_email(email),
            password_hash=password_hash,
            is_verified=is_verified,
            verification_token=verification_token,
            verification_token_expires=verification_token_expires,
            provider_identities=dict(provider_identities or {}),
            created_at=now,
            updated_at=now,
        )
        with self._data_lock:
            self._check_unique(user)
            users = {**self.users, user.id: user}
            self._persist_state(users)
            self.users = users
            return _copy(user)

    def save(self, user: User) -> User:
        with self._data_lock:
            current = self.users.get(user.id)
            if current is None:
                raise RecordNotFoundError(f"user {user.id} not found")
            updated = replace(
                user,
                username=normalize_username(user.username),
                email=normalize_email(user.email),
                provider_identities=dict(user.provider_identities),
                created_at=current.created_at,
                updated_at=self._clock(),
            )
            self._check_unique(updated)
            users = {**self.users, user.id: updated}
            self._persist_state(users)
            self.users = users
            return _copy(updated)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
