"""Error envelope format and service-error mapping.

Every error response has the shape::

    {"status": "error", "error": {"code", "message", "details"}, "request_id"}
"""

import json

import pytest
from pydantic import ValidationError

from authpool.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    service_error_response,
)
from authpool.api.schemas import Envelope, ErrorBody
from authpool.service.errors import (
    AuthInvalidError,
    AuthMissingError,
    AuthRevokedError,
    AuthorizationError,
    CsrfRejectedError,
    LockedError,
    RateLimitedError,
    StoreUnavailableError,
)


def _body(response):
    return json.loads(response.body)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="unauthorized")
        assert error.details is None

    def test_accepts_list_details(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["x"]}])
        assert len(error.details) == 1

    @pytest.mark.parametrize("code", ["csrf_rejected", "locked", "store_unavailable", "conflict"])
    def test_gateway_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="error", error=ErrorBody(code="not_found", message="m"))
        second = Envelope(status="error", error=ErrorBody(code="not_found", message="m"))
        assert first.request_id != second.request_id

    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="failed")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[429] == "rate_limited"
        assert _STATUS_TO_CODE[503] == "store_unavailable"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = error_response(404, "identity not found")
        body = _body(response)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "identity not found", "details": None}
        assert body["request_id"]


class TestServiceErrorResponse:
    @pytest.mark.parametrize(
        "exc",
        [
            AuthMissingError("no token"),
            AuthInvalidError("bad signature", detail={"reason": "signature"}),
            AuthRevokedError("token version mismatch"),
        ],
    )
    def test_authentication_failures_look_identical(self, exc):
        response = service_error_response(exc)
        body = _body(response)
        assert response.status_code == 401
        assert body["error"] == {"code": "unauthorized", "message": "unauthorized", "details": None}

    def test_rate_limited_sets_retry_after(self):
        response = service_error_response(RateLimitedError("too many requests", retry_after=12))
        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"
        assert _body(response)["error"]["details"]["retry_after_seconds"] == 12

    def test_locked_keeps_distinct_code(self):
        response = service_error_response(LockedError("locked", retry_after=900))
        assert response.status_code == 429
        assert _body(response)["error"]["code"] == "locked"
        assert response.headers["retry-after"] == "900"

    def test_forbidden_and_csrf(self):
        assert _body(service_error_response(AuthorizationError("insufficient role")))["error"]["code"] == "forbidden"
        csrf = service_error_response(CsrfRejectedError("missing or invalid CSRF token"))
        assert csrf.status_code == 403
        assert _body(csrf)["error"]["code"] == "csrf_rejected"

    def test_server_errors_are_sanitized(self):
        exc = StoreUnavailableError("connection to postgres://user:pw@db/app failed")
        body = _body(service_error_response(exc))
        assert body["error"]["code"] == "store_unavailable"
        assert "pw@db" not in body["error"]["message"]
