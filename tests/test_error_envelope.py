import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore.api.error_handling import _error_response, register_exception_handlers
from authcore.api.schemas import ErrorBody, Envelope, LoginRequest, RegisterRequest
from authcore.service.errors import AccountLocked, InvalidRefreshToken, NotFound
from authcore.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLocked(retry_after=42)

    @app.get("/refresh")
    async def refresh():
        raise InvalidRefreshToken(reason="revoked", detail={"token_id": "tok-hidden-id"})

    @app.get("/missing")
    async def missing():
        raise NotFound("User not found", detail={"user_id": "u-1"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id

    def test_error_response_shape(self):
        response = _error_response(401, "nope", code="two_factor_required")
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {"code": "two_factor_required", "message": "nope", "details": None}

    def test_code_defaults_from_status(self):
        body = json.loads(_error_response(404, "gone").body)
        assert body["error"]["code"] == "not_found"


class TestHandlers:
    def test_account_locked_sets_retry_after(self, client):
        response = client.get("/locked")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["code"] == "account_locked"

    def test_refresh_reason_not_rendered(self, client):
        response = client.get("/refresh")
        assert response.status_code == 401
        assert "revoked" not in response.text
        assert "tok-hidden-id" not in response.text

    def test_service_detail_not_rendered(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["details"] is None
        assert "u-1" not in response.text

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_uncaught_error_is_generic(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text


class TestRequestSchemas:
    def test_register_normalizes_email(self):
        body = RegisterRequest(email=" User@Example.COM ", password="TestPassword123!")
        assert body.email == "user@example.com"

    def test_register_strips_zero_width_characters(self):
        body = RegisterRequest(email="us\u200ber@example.com", password="TestPassword123!")
        assert body.email == "user@example.com"

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_register_password_length(self, password):
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@example.com", password=password)

    def test_login_does_not_format_check_email(self):
        assert LoginRequest(email="not-an-email", password="x").email == "not-an-email"

    def test_login_code_length_capped(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="a@example.com", password="x", two_factor_code="1" * 11)
