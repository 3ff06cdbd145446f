"""Tests for the error envelope format.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    _retry_headers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service.errors import (
    AccountLocked,
    InvalidCredentials,
    RateLimited,
    SessionReplay,
    StoreUnavailable,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="conflict", message="x", details={"field": "email"}).details
        assert ErrorBody(code="validation_error", message="x", details=[{"loc": []}]).details

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize(
        "code",
        ["account_locked", "mfa_required", "session_replay", "token_expired", "unavailable"],
    )
    def test_auth_specific_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.request_id
        assert Envelope(status="ok").request_id != envelope.request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (503, "unavailable"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_body_shape(self):
        response = _error_response(401, "invalid credentials")
        body = json.loads(response.body)

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }
        assert body["request_id"]

    def test_explicit_code_and_headers(self):
        response = _error_response(
            429, "slow down", {"retry_after": 30}, code="rate_limited", headers={"Retry-After": "30"}
        )
        assert response.headers["Retry-After"] == "30"
        assert json.loads(response.body)["error"]["details"] == {"retry_after": 30}


class TestRetryHeaders:
    def test_rate_limited(self):
        assert _retry_headers(RateLimited(42)) == {"Retry-After": "42"}

    def test_store_unavailable(self):
        assert _retry_headers(StoreUnavailable()) == {"Retry-After": "1"}

    def test_other_errors_have_none(self):
        assert _retry_headers(InvalidCredentials()) is None
        assert _retry_headers(SessionReplay()) is None


class TestServiceErrorCodes:
    def test_account_locked_carries_unlock_time(self):
        until = datetime(2024, 1, 1, 12, 15, tzinfo=timezone.utc)
        exc = AccountLocked(until)
        assert exc.status_code == 423
        assert exc.error_code == "account_locked"
        assert exc.detail["locked_until"] == until.isoformat()

    def test_session_replay_is_unauthorized(self):
        exc = SessionReplay()
        assert exc.status_code == 401
        assert exc.error_code == "session_replay"
