"""Tests for the error envelope format and exception mapping.

Every failure renders as::

    {
        "success": false,
        "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...}
    }
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tripgate.api.error_handling import _error_code_for_status, _error_response
from tripgate.api.schemas import ErrorBody
from tripgate.app import create_app
from tripgate.config import reset_settings_cache


class TestErrorBody:
    def test_known_code_is_accepted(self):
        error = ErrorBody(code="invalid_credentials", message="Invalid login credentials")

        assert error.details is None
        assert error.stack is None

    def test_unknown_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestErrorResponse:
    def test_none_fields_are_omitted(self):
        response = _error_response(401, "Please authenticate")

        assert response.status_code == 401
        assert json.loads(response.body) == {
            "success": False,
            "error": {"code": "unauthorized", "message": "Please authenticate"},
        }

    def test_headers_are_forwarded(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "30"})

        assert response.headers["Retry-After"] == "30"

    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (404, "not_found"), (418, "validation_error"), (503, "internal_error")],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code


def _app_with_failing_route():
    app = create_app()

    async def boom():
        raise RuntimeError("kaboom")

    app.add_api_route("/boom", boom, methods=["GET"])
    return app


class TestHandlers:
    def test_unknown_route(self):
        resp = TestClient(create_app()).get("/api/users/nope")

        assert resp.status_code == 404
        assert resp.json() == {
            "success": False,
            "error": {"code": "not_found", "message": "Route not found"},
        }

    def test_validation_error_lists_fields(self):
        resp = TestClient(create_app()).post(
            "/api/users/register",
            json={"username": "al", "email": "not-an-email", "password": "short"},
        )

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Username must be between 3 and 30 characters"
        assert {d["field"]: d["message"] for d in error["details"]} == {
            "username": "Username must be between 3 and 30 characters",
            "email": "Must be a valid email address",
            "password": "Password must be at least 8 characters long",
        }

    def test_weak_password_message(self):
        resp = TestClient(create_app()).post(
            "/api/users/register",
            json={"username": "alice", "email": "alice@x.com", "password": "alllowercase1"},
        )

        assert resp.json()["error"]["message"] == (
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number and one special character"
        )

    def test_unhandled_exception_includes_stack_outside_production(self):
        resp = TestClient(_app_with_failing_route(), raise_server_exceptions=False).get("/boom")

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["message"] == "Internal server error"
        assert any("kaboom" in line for line in error["stack"])

    def test_unhandled_exception_hides_stack_in_production(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_settings_cache()

        resp = TestClient(_app_with_failing_route(), raise_server_exceptions=False).get("/boom")

        assert resp.status_code == 500
        assert resp.json() == {
            "success": False,
            "error": {"code": "internal_error", "message": "Internal server error"},
        }

    def test_correlation_id_is_echoed(self):
        resp = TestClient(create_app()).get("/healthz", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Frame-Options"] == "DENY"
