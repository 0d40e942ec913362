"""Tests for one-time email tokens and signed session credentials."""

import base64
import json
from datetime import timedelta

import pytest

from tripgate.service.tokens import TokenIssuer


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        "unit-test-signing-secret-0123456789",
        issuer="tripgate",
        audience="tripgate-clients",
        clock=clock,
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestEmailTokens:
    def test_verification_token_is_64_hex_chars_and_expires_in_24h(self, issuer, clock):
        token = issuer.issue_verification_token()

        assert len(token.value) == 64
        int(token.value, 16)
        assert token.expires_at == clock() + timedelta(hours=24)

    def test_reset_token_expires_in_one_hour(self, issuer, clock):
        token = issuer.issue_reset_token()

        assert token.expires_at == clock() + timedelta(hours=1)

    def test_tokens_are_unique(self, issuer):
        values = {issuer.issue_verification_token().value for _ in range(50)}
        assert len(values) == 50


class TestSessionCredentials:
    def test_round_trip_carries_user_and_nonce(self, issuer, clock):
        credential = issuer.issue_session_credential("user-1")

        claims = issuer.verify_session_credential(credential.token)

        assert claims is not None
        assert claims.user_id == "user-1"
        assert claims.nonce == credential.nonce
        assert len(credential.nonce) == 64
        assert credential.expires_at == clock() + timedelta(hours=24)

    def test_each_login_gets_a_distinct_nonce(self, issuer):
        first = issuer.issue_session_credential("user-1")
        second = issuer.issue_session_credential("user-1")

        assert first.nonce != second.nonce
        assert first.token != second.token

    def test_expired_credential_is_rejected(self, issuer, clock):
        credential = issuer.issue_session_credential("user-1")

        clock.advance(hours=24, seconds=1)

        assert issuer.verify_session_credential(credential.token) is None

    def test_tampered_payload_is_rejected(self, issuer):
        credential = issuer.issue_session_credential("user-1")
        header, payload, signature = credential.token.split(".")
        forged = _b64({**json.loads(issuer._decode_segment(payload)), "sub": "user-2"})

        assert issuer.verify_session_credential(f"{header}.{forged}.{signature}") is None

    def test_other_secret_is_rejected(self, issuer, clock):
        other = TokenIssuer(
            "a-completely-different-secret-value",
            issuer="tripgate",
            audience="tripgate-clients",
            clock=clock,
        )
        credential = other.issue_session_credential("user-1")

        assert issuer.verify_session_credential(credential.token) is None

    def test_wrong_audience_is_rejected(self, issuer, clock):
        other = TokenIssuer(
            "unit-test-signing-secret-0123456789",
            issuer="tripgate",
            audience="someone-else",
            clock=clock,
        )

        assert issuer.verify_session_credential(other.issue_session_credential("u").token) is None

    def test_none_algorithm_is_rejected(self, issuer):
        credential = issuer.issue_session_credential("user-1")
        _, payload, signature = credential.token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        assert issuer.verify_session_credential(f"{header}.{payload}.{signature}") is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, issuer, token):
        assert issuer.verify_session_credential(token) is None

    def test_secret_is_required(self):
        with pytest.raises(ValueError):
            TokenIssuer("", issuer="tripgate", audience="tripgate-clients")
