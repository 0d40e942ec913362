from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from tripgate.logging import get_logger
from tripgate.storage.common import Clock
from tripgate.storage.models import utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedToken:
    value: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionCredential:
    token: str
    nonce: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    nonce: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Issues one-time email tokens and signed stateless session credentials."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        session_ttl: timedelta = timedelta(hours=24),
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.session_ttl = session_ttl
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    def _random_token(self, ttl: timedelta) -> IssuedToken:
        return IssuedToken(
            value=secrets.token_hex(TOKEN_BYTES), expires_at=self._clock() + ttl
        )

    def issue_verification_token(self) -> IssuedToken:
        return self._random_token(self.verification_ttl)

    def issue_reset_token(self) -> IssuedToken:
        return self._random_token(self.reset_ttl)

    def issue_session_credential(self, user_id: str) -> SessionCredential:
        now = self._clock()
        expires_at = now + self.session_ttl
        nonce = secrets.token_hex(TOKEN_BYTES)
        token = self._encode_jwt(
            {
                "sub": user_id,
                "sid": nonce,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "iss": self.issuer,
                "aud": self.audience,
            }
        )
        return SessionCredential(token=token, nonce=nonce, expires_at=expires_at)

    def verify_session_credential(self, token: Optional[str]) -> Optional[SessionClaims]:
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload:
            return None
        user_id = payload.get("sub")
        nonce = payload.get("sid")
        if not isinstance(user_id, str) or not isinstance(nonce, str):
            return None
        return SessionClaims(
            user_id=user_id,
            nonce=nonce,
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=self._clock().tzinfo),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=self._clock().tzinfo),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload
