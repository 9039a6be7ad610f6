"""Tests for the error envelope format and rejection mapping.

Error responses share one envelope:
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

import json

import pytest
from pydantic import ValidationError

from learnity.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from learnity.api.schemas import Envelope, ErrorBody
from learnity.service.errors import (
    AuthRejection,
    Blacklisted,
    EmailNotVerified,
    ExpiredToken,
    InsufficientPermission,
    InsufficientRole,
    InvalidToken,
    ProviderUnreachable,
    RejectionKind,
    SessionTerminated,
    SubjectNotFound,
)


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_accepts_rejection_kinds(self):
        for kind in RejectionKind:
            assert ErrorBody(code=kind.value, message="denied").code == kind.value

    def test_error_body_unknown_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.status == "error"
        assert envelope.error.code == "forbidden"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_error_body_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert "request_id" in data

    def test_error_response_headers(self):
        response = _error_response(503, "down", code="provider_unreachable", headers={"Retry-After": "5"})
        assert response.headers["Retry-After"] == "5"

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None


class TestRejections:
    """Each rejection kind has a fixed status and wire code."""

    @pytest.mark.parametrize(
        "exc_type,status,code",
        [
            (InvalidToken, 401, "invalid_token"),
            (ExpiredToken, 401, "token_expired"),
            (Blacklisted, 401, "token_revoked"),
            (SessionTerminated, 401, "session_terminated"),
            (SubjectNotFound, 401, "subject_not_found"),
            (EmailNotVerified, 403, "email_not_verified"),
            (InsufficientRole, 403, "insufficient_role"),
            (InsufficientPermission, 403, "insufficient_permission"),
            (ProviderUnreachable, 503, "provider_unreachable"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type()
        assert isinstance(exc, AuthRejection)
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.to_response() == {"status": status, "body": {"error": exc.message, "code": code}}

    def test_only_provider_outage_is_retryable(self):
        assert ProviderUnreachable().retryable
        assert not InvalidToken().retryable
        assert not InsufficientRole().retryable
