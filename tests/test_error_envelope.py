"""Tests for the error envelope and the mapping of service errors onto it.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<safe text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from campauth.api.error_handling import (
    _error_code_for_status,
    _error_response,
    service_error_headers,
    service_error_response,
)
from campauth.api.schemas import Envelope, ErrorBody, LoginRequest
from campauth.logging import _redact_pii
from campauth.service.errors import (
    AccountLocked,
    AuthenticationRequired,
    EmailNotVerified,
    InfrastructureTimeout,
    InvalidCredentials,
    RateLimited,
    TokenExpired,
    TokenRevoked,
    TwoFactorAlreadyEnabled,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (409, "conflict"),
            (429, "rate_limited"),
            (503, "infrastructure_timeout"),
            (418, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentials(), 401, "invalid_credentials"),
            (AccountLocked(retry_after=30), 423, "account_locked"),
            (EmailNotVerified(), 403, "email_not_verified"),
            (TokenExpired(), 401, "token_expired"),
            (TokenRevoked(), 401, "token_revoked"),
            (RateLimited(retry_after=5), 429, "rate_limited"),
            (InfrastructureTimeout(), 503, "infrastructure_timeout"),
            (TwoFactorAlreadyEnabled(), 400, "validation_error"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        response = service_error_response(exc)

        assert response.status_code == status
        assert json.loads(response.body)["error"]["code"] == code

    def test_retry_after_header(self):
        headers = service_error_headers(AccountLocked(retry_after=90))
        assert headers["Retry-After"] == "90"

    def test_expired_token_challenge(self):
        headers = service_error_headers(TokenExpired())
        assert headers["WWW-Authenticate"].startswith('Bearer error="invalid_token"')

    def test_plain_bearer_challenge(self):
        assert service_error_headers(AuthenticationRequired())["WWW-Authenticate"] == "Bearer"

    def test_non_auth_errors_have_no_challenge(self):
        assert "WWW-Authenticate" not in service_error_headers(EmailNotVerified())

    def test_custom_message_is_rendered(self):
        response = service_error_response(AuthenticationRequired("access token has been revoked"))
        assert json.loads(response.body)["error"]["message"] == "access token has been revoked"


class TestRequestNormalization:
    def test_identifier_lowercased_and_stripped(self):
        body = LoginRequest(identifier="  Camper@Example.COM ", credential="x")
        assert body.identifier == "camper@example.com"

    def test_zero_width_characters_removed(self):
        body = LoginRequest(identifier="camp\u200ber@example.com", credential="x")
        assert body.identifier == "camper@example.com"


class TestLogRedaction:
    def test_sensitive_keys_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "identifier": "camper@example.com",
                "refresh_token": "abcdefgh",
                "attempts": 2,
            },
        )

        assert event["identifier"] == "ca***om"
        assert event["refresh_token"] == "ab***gh"
        assert event["attempts"] == 2
        assert event["event"] == "login_failed"
