from __future__ import annotations

import base64
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from tripgate.logging import get_logger, redact_email
from tripgate.service.errors import AuthProviderError, ValidationError
from tripgate.storage.common import Clock
from tripgate.storage.models import utcnow

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class FederatedIdentity:
    provider: str
    provider_uid: str
    email: str
    display_name: Optional[str] = None
    email_verified: bool = False


class OAuthClient:
    """Authorization-code sign-in against the supported identity providers.

    ``state`` values are single use and expire after ten minutes. They live in
    Redis when a cache is configured and in a locked dict otherwise.
    """

    def __init__(
        self,
        *,
        credentials: Dict[str, Tuple[Optional[str], Optional[str]]],
        redirect_base: str,
        cache=None,
        clock: Clock = utcnow,
        http_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.redirect_base = redirect_base.rstrip("/")
        self.cache = cache
        self._clock = clock
        self.http_timeout = http_timeout
        self._transport = transport
        self._state_lock = threading.Lock()
        self._states: dict[str, tuple[str, datetime]] = {}
        self._code_registry: dict[tuple[str, str], FederatedIdentity] = {}

    def callback_uri(self, provider: str) -> str:
        return f"{self.redirect_base}/api/users/auth/{provider}/callback"

    def _client_credentials(self, provider: str) -> Tuple[str, Optional[str]]:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported auth provider: {provider}")
        client_id, client_secret = self.credentials.get(provider, (None, None))
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise AuthProviderError(f"Auth provider {provider} is not configured")
        return client_id, client_secret

    async def start(self, provider: str) -> str:
        """Store a fresh state and return the provider authorization URL."""
        client_id, _ = self._client_credentials(provider)
        state = uuid.uuid4().hex
        expires_at = self._clock() + STATE_TTL
        if self.cache is not None:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            with self._state_lock:
                self._purge_expired_states()
                self._states[state] = (provider, expires_at)

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.callback_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        logger.info("oauth_started", provider=provider)
        return f"{config['auth_url']}?{urlencode(params)}"

    def _purge_expired_states(self) -> None:
        now = self._clock()
        expired = [s for s, (_, expires_at) in self._states.items() if expires_at <= now]
        for state in expired:
            self._states.pop(state, None)

    async def _consume_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache is not None:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    def register_code(self, provider: str, code: str, identity: FederatedIdentity) -> None:
        """Pre-seed the identity a code resolves to, bypassing the provider."""
        self._code_registry[(provider, code)] = identity

    async def complete(self, provider: str, code: str, state: str) -> FederatedIdentity:
        """Validate ``state`` and exchange ``code`` for a normalized identity."""
        if provider not in OAUTH_PROVIDERS:
            raise AuthProviderError(f"Unsupported auth provider: {provider}")
        if not code or not state:
            raise AuthProviderError("Missing authorization code or state")
        stored = await self._consume_state(state)
        if not stored:
            logger.warning("oauth_state_unknown", provider=provider)
            raise AuthProviderError("Invalid or expired OAuth state")
        stored_provider, expires_at = stored
        if stored_provider != provider or expires_at <= self._clock():
            logger.warning("oauth_state_rejected", provider=provider)
            raise AuthProviderError("Invalid or expired OAuth state")

        identity = self._code_registry.pop((provider, code), None)
        if identity is None:
            identity = await self._exchange_code(provider, code)
        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_uid=identity.provider_uid,
            email=redact_email(identity.email),
        )
        return identity

    async def _exchange_code(self, provider: str, code: str) -> FederatedIdentity:
        client_id, client_secret = self._client_credentials(provider)
        if not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise AuthProviderError(f"Auth provider {provider} is not configured")
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.callback_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthProviderError("Provider did not return an access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthProviderError("Provider returned malformed user info")

                parsed = self._parse_userinfo(provider, userinfo)
                if provider == "microsoft":
                    claims = self._id_token_claims(token_result.get("id_token"))
                    if claims.get("email") and _claim_is_true(claims.get("xms_edov")):
                        parsed["email"] = claims["email"]
                        parsed["email_verified"] = True
                if provider == "github":
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                e.get("email")
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            parsed["email"] = primary
                            parsed["email_verified"] = True
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthProviderError("Identity provider rejected the request") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise AuthProviderError("Identity provider request failed") from exc

        if not parsed.get("provider_uid"):
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise AuthProviderError("Provider did not return an account id")
        if not parsed.get("email"):
            logger.error("oauth_identity_missing_email", provider=provider)
            raise AuthProviderError("Provider did not return an email address")
        return FederatedIdentity(
            provider=provider,
            provider_uid=str(parsed["provider_uid"]),
            email=parsed["email"],
            display_name=parsed.get("display_name"),
            email_verified=bool(parsed.get("email_verified")),
        )

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict) -> dict:
        """Normalize a userinfo payload. Only Google asserts verification here."""
        if provider == "google":
            return {
                "provider_uid": userinfo.get("id"),
                "email": userinfo.get("email"),
                "email_verified": userinfo.get("verified_email") is True,
                "display_name": userinfo.get("name"),
            }
        if provider == "github":
            return {
                "provider_uid": userinfo.get("id"),
                "email": userinfo.get("email"),
                "email_verified": False,
                "display_name": userinfo.get("name") or userinfo.get("login"),
            }
        if provider == "microsoft":
            # Graph mail and userPrincipalName are tenant-controlled
            return {
                "provider_uid": userinfo.get("id"),
                "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
                "email_verified": False,
                "display_name": userinfo.get("displayName"),
            }
        return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}

    @staticmethod
    def _id_token_claims(id_token: Optional[str]) -> dict:
        """Claims of an id_token taken straight from the token endpoint response."""
        if not isinstance(id_token, str) or id_token.count(".") != 2:
            return {}
        segment = id_token.split(".")[1]
        try:
            claims = json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))
        except (ValueError, TypeError):
            logger.warning("oauth_id_token_unreadable")
            return {}
        return claims if isinstance(claims, dict) else {}


def _claim_is_true(value) -> bool:
    return value is True or str(value).lower() in {"true", "1"}
