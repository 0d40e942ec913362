from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from tripgate.logging import get_logger, redact_email
from tripgate.service.email import EmailService
from tripgate.service.errors import (
    AlreadyVerifiedError,
    AuthProviderError,
    InternalError,
    InvalidCredentialsError,
    InvalidFieldError,
    InvalidOrExpiredTokenError,
    NotFoundError,
)
from tripgate.service.oauth import FederatedIdentity, OAuthClient
from tripgate.service.passwords import PasswordService
from tripgate.service.tokens import SessionClaims, SessionCredential, TokenIssuer
from tripgate.storage.common import CredentialStore, normalize_email
from tripgate.storage.errors import DuplicateKeyError, StoreUnavailableError
from tripgate.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")

EDITABLE_PROFILE_FIELDS = frozenset({"username", "email"})
_USERNAME_STRIP = re.compile(r"[^a-zA-Z0-9_]+")
USERNAME_MIN, USERNAME_MAX = 3, 30


@dataclass
class AuthContext:
    user: User
    claims: SessionClaims

    @property
    def user_id(self) -> str:
        return self.user.id


class AuthService:
    """Credential lifecycle flows: registration, verification, login,
    password reset, federated sign-in and profile edits.

    Store calls and password hashing are blocking, so each runs in a worker
    thread under a timeout. Email delivery is best effort.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        tokens: TokenIssuer,
        passwords: PasswordService,
        email: EmailService,
        oauth: Optional[OAuthClient] = None,
        store_timeout: float = 10.0,
        hash_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.email = email
        self.oauth = oauth
        self.store_timeout = store_timeout
        self.hash_timeout = hash_timeout
        self.logger = logger

    async def _offload(self, func: Callable[..., T], *args: Any, timeout: float, op: str) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.logger.error("dependency_timeout", op=op, timeout=timeout)
            raise InternalError("Service temporarily unavailable") from exc
        except StoreUnavailableError as exc:
            self.logger.error("store_unavailable", op=op, error=exc.message)
            raise InternalError("Service temporarily unavailable") from exc

    async def _store(self, method: Callable[..., T], *args: Any) -> T:
        return await self._offload(
            method, *args, timeout=self.store_timeout, op=method.__name__
        )

    async def _hash(self, password: str) -> str:
        return await self._offload(
            self.passwords.hash, password, timeout=self.hash_timeout, op="hash"
        )

    async def _send(self, send: Callable[[str, str], bool], to_email: str, token: str, event: str) -> None:
        sent = await asyncio.to_thread(send, to_email, token)
        if not sent:
            self.logger.error(event, to=redact_email(to_email))

    async def register(self, username: str, email: str, password: str) -> User:
        password_hash = await self._hash(password)
        issued = self.tokens.issue_verification_token()

        def _create() -> User:
            return self.store.create(
                username=username,
                email=email,
                password_hash=password_hash,
                verification_token=issued.value,
                verification_token_expires=issued.expires_at,
            )

        try:
            user = await self._offload(_create, timeout=self.store_timeout, op="create")
        except DuplicateKeyError as exc:
            self.logger.info("register_duplicate", field=exc.field, email=redact_email(email))
            raise
        self.logger.info("user_registered", user_id=user.id, email=redact_email(user.email))
        await self._send(
            self.email.send_verification_email, user.email, issued.value, "verification_email_failed"
        )
        return user

    async def verify_email(self, token: str) -> User:
        user = await self._store(self.store.find_by_verification_token, token or "")
        if not user:
            self.logger.info("verify_email_rejected")
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        user.is_verified = True
        user.clear_verification_token()
        saved = await self._store(self.store.save, user)
        self.logger.info("email_verified", user_id=saved.id)
        return saved

    async def resend_verification(self, email: str) -> None:
        user = await self._store(self.store.find_by_email, email)
        if not user:
            raise NotFoundError("User not found", status_code=400)
        if user.is_verified:
            raise AlreadyVerifiedError("Email is already verified")
        issued = self.tokens.issue_verification_token()
        user.verification_token = issued.value
        user.verification_token_expires = issued.expires_at
        await self._store(self.store.save, user)
        self.logger.info("verification_reissued", user_id=user.id)
        await self._send(
            self.email.send_verification_email, user.email, issued.value, "verification_email_failed"
        )

    async def login(self, email: str, password: str) -> Tuple[User, SessionCredential]:
        user = await self._store(self.store.find_by_email, email)
        if not user:
            await self._offload(
                self.passwords.dummy_verify, password, timeout=self.hash_timeout, op="verify"
            )
            raise self._login_failure(email, "unknown_account")
        matches = await self._offload(
            self.passwords.verify,
            user.password_hash,
            password,
            timeout=self.hash_timeout,
            op="verify",
        )
        if not matches:
            raise self._login_failure(email, "bad_password")
        if not user.is_verified:
            raise self._login_failure(email, "unverified")

        if self.passwords.needs_rehash(user.password_hash):
            user.password_hash = await self._hash(password)
            user = await self._store(self.store.save, user)
            self.logger.info("password_rehashed", user_id=user.id)

        credential = self.tokens.issue_session_credential(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, credential

    def _login_failure(self, email: str, reason: str) -> InvalidCredentialsError:
        self.logger.info("login_failed", reason=reason, email=redact_email(normalize_email(email)))
        return InvalidCredentialsError("Invalid login credentials")

    async def forgot_password(self, email: str) -> None:
        user = await self._store(self.store.find_by_email, email)
        if not user:
            self.logger.info("password_reset_unknown_email", email=redact_email(email))
            return
        issued = self.tokens.issue_reset_token()
        user.reset_token = issued.value
        user.reset_token_expires = issued.expires_at
        await self._store(self.store.save, user)
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._send(
            self.email.send_password_reset_email, user.email, issued.value, "password_reset_email_failed"
        )

    async def reset_password(self, token: str, password: str) -> User:
        user = await self._store(self.store.find_by_reset_token, token or "")
        if not user:
            self.logger.info("password_reset_rejected")
            raise InvalidOrExpiredTokenError("Invalid or expired password reset token")
        user.password_hash = await self._hash(password)
        user.clear_reset_token()
        saved = await self._store(self.store.save, user)
        self.logger.info("password_reset_completed", user_id=saved.id)
        return saved

    async def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> User:
        if not fields or any(
            key not in EDITABLE_PROFILE_FIELDS or value is None for key, value in fields.items()
        ):
            self.logger.info("profile_update_rejected", user_id=user_id, fields=sorted(fields))
            raise InvalidFieldError("Invalid updates")
        user = await self._store(self.store.find_by_id, user_id)
        if not user:
            raise NotFoundError("User not found")
        for key, value in fields.items():
            setattr(user, key, value)
        saved = await self._store(self.store.save, user)
        self.logger.info("profile_updated", user_id=saved.id, fields=sorted(fields))
        return saved

    def logout(self, context: Optional[AuthContext]) -> None:
        # Credentials are stateless; the route clears the cookie
        if context is not None:
            self.logger.info("logout", user_id=context.user_id)

    async def resolve_session(self, token: Optional[str]) -> Optional[AuthContext]:
        claims = self.tokens.verify_session_credential(token)
        if not claims:
            return None
        user = await self._store(self.store.find_by_id, claims.user_id)
        if not user:
            return None
        return AuthContext(user=user, claims=claims)

    async def start_federated_login(self, provider: str) -> str:
        return await self._oauth_client().start(provider)

    async def complete_federated_login(
        self, provider: str, code: str, state: str
    ) -> Tuple[User, SessionCredential]:
        identity = await self._oauth_client().complete(provider, code, state)
        user = await self._store(self.store.find_by_email, identity.email)
        bound = user is not None and user.provider_identities.get(provider) == identity.provider_uid
        if not identity.email_verified and not bound:
            # An unverified address may only sign in to an account this provider uid already owns
            self.logger.warning(
                "federated_email_unverified",
                provider=provider,
                email=redact_email(identity.email),
                existing_account=user is not None,
            )
            raise AuthProviderError("Provider did not return a verified email")
        if user is None:
            user = await self._create_federated_user(identity)
            self.logger.info("federated_user_created", user_id=user.id, provider=provider)
        elif not bound or not user.is_verified:
            user.provider_identities[provider] = identity.provider_uid
            # The provider has confirmed ownership of the address
            user.is_verified = True
            user.clear_verification_token()
            user = await self._store(self.store.save, user)
        credential = self.tokens.issue_session_credential(user.id)
        self.logger.info("federated_login_succeeded", user_id=user.id, provider=provider)
        return user, credential

    def _oauth_client(self) -> OAuthClient:
        if self.oauth is None:
            raise InternalError("Federated sign-in is not available")
        return self.oauth

    async def _create_federated_user(self, identity: FederatedIdentity) -> User:
        placeholder = await self._offload(
            self.passwords.random_placeholder, timeout=self.hash_timeout, op="hash"
        )
        base = username_from_display_name(identity.display_name or identity.email.split("@")[0])
        for attempt in range(5):
            candidate = base if attempt == 0 else _with_suffix(base)
            existing = await self._store(self.store.find_by_username, candidate)
            if existing:
                continue

            def _create(name: str = candidate) -> User:
                return self.store.create(
                    username=name,
                    email=identity.email,
                    password_hash=placeholder,
                    is_verified=True,
                    provider_identities={identity.provider: identity.provider_uid},
                )

            try:
                return await self._offload(_create, timeout=self.store_timeout, op="create")
            except DuplicateKeyError as exc:
                if exc.field != "username":
                    raise
        raise InternalError("Could not allocate a username")


def username_from_display_name(display_name: str) -> str:
    """Fold a provider display name into the username alphabet."""
    base = _USERNAME_STRIP.sub("", display_name.replace(" ", "_"))[:USERNAME_MAX]
    if len(base) < USERNAME_MIN:
        base = (base + "user")[:USERNAME_MAX]
    return base


def _with_suffix(base: str) -> str:
    suffix = secrets.token_hex(3)
    return f"{base[: USERNAME_MAX - len(suffix) - 1]}_{suffix}"


def public_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "is_verified": user.is_verified,
        "created_at": user.created_at,
        "providers": sorted(user.provider_identities),
    }
