"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import pytest
from pydantic import ValidationError

from admissions_portal.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from admissions_portal.api.schemas import Envelope, ErrorBody
from admissions_portal.service.errors import (
    InvalidTokenError,
    RateLimitedError,
    SessionExpiredError,
    SessionInvalidatedError,
    UnauthenticatedError,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthenticated", message="Invalid credentials")
        assert error.code == "unauthenticated"
        assert error.details is None

    @pytest.mark.parametrize(
        "code", ["unauthenticated", "invalid_token", "session_expired", "session_invalidated"]
    )
    def test_session_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")


class TestEnvelope:
    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthenticated"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(422) == "validation_error"

    def test_unknown_status_falls_back(self):
        assert 418 not in _STATUS_TO_CODE
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_carries_headers(self):
        response = _error_response(429, "slow down", code="rate_limited", headers={"Retry-After": "7"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_cls, code",
        [
            (UnauthenticatedError, "unauthenticated"),
            (InvalidTokenError, "invalid_token"),
            (SessionExpiredError, "session_expired"),
            (SessionInvalidatedError, "session_invalidated"),
        ],
    )
    def test_authentication_errors_are_401_with_challenge(self, exc_cls, code):
        exc = exc_cls("nope")
        assert exc.status_code == 401
        assert exc.error_code == code
        assert exc.headers == {"WWW-Authenticate": "Bearer"}

    def test_rate_limited_floor_of_one_second(self):
        exc = RateLimitedError("slow down", retry_after_seconds=0)
        assert exc.retry_after_seconds == 1
        assert exc.detail == {"retryAfterSeconds": 1}
        assert exc.headers == {"Retry-After": "1"}


class TestHandlers:
    def test_unknown_route_is_enveloped(self):
        from fastapi.testclient import TestClient

        from admissions_portal import app as app_module

        response = TestClient(app_module.app).get("/api/does-not-exist")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
