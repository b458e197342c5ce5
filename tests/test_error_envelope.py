"""Tests for the error envelope format and error catalogue.

Error responses have the stable shape:
{
    "status": "error",
    "error": {
        "code": "<rejection reason>",
        "message": "<human_readable>",
        "details": {"category": ..., "retryable": ..., ...}
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from deskgate.api.error_handling import _error_code_for_status, _error_response
from deskgate.api.schemas import Envelope, ErrorBody, SignInRequest
from deskgate.service import errors


CATALOGUE = [
    (errors.CaptchaMissingError, "captcha_missing", 400, "input_rejected"),
    (errors.CaptchaInvalidError, "captcha_invalid", 400, "input_rejected"),
    (errors.CaptchaProviderError, "captcha_provider_error", 503, "dependency_failure"),
    (errors.InvalidCredentialsError, "invalid_credentials", 401, "input_rejected"),
    (errors.ProviderUnavailableError, "provider_unavailable", 503, "dependency_failure"),
    (errors.NotificationFailedError, "notification_failed", 503, "dependency_failure"),
    (errors.NoPendingCodeError, "no_pending_code", 400, "input_rejected"),
    (errors.CodeExpiredError, "code_expired", 400, "input_rejected"),
    (errors.CodeMismatchError, "code_mismatch", 400, "input_rejected"),
    (errors.SessionNotFoundError, "session_not_found", 401, "input_rejected"),
    (errors.SessionInactiveError, "session_inactive", 401, "input_rejected"),
    (errors.StorageUnavailableError, "storage_unavailable", 503, "dependency_failure"),
]


class TestErrorCatalogue:
    """Each rejection has a stable reason, status and category."""

    @pytest.mark.parametrize("cls,reason,status,category", CATALOGUE)
    def test_rejection_metadata(self, cls, reason, status, category):
        exc = cls()
        assert exc.reason == reason
        assert exc.status_code == status
        assert exc.category == category
        assert isinstance(exc, errors.AuthError)

    def test_rate_limits_carry_remaining_seconds(self):
        cooldown = errors.CooldownActiveError(17)
        limit = errors.ResendLimitExceededError(3000)
        assert cooldown.reason == "cooldown_active"
        assert limit.reason == "resend_limit_exceeded"
        assert cooldown.status_code == limit.status_code == 429
        assert cooldown.detail == {"remaining_seconds": 17}
        assert limit.retryable is True
        assert "17 seconds" in cooldown.message

    def test_dependency_messages_hide_internals(self):
        for cls in (errors.ProviderUnavailableError, errors.StorageUnavailableError):
            assert "try again" in cls().message

    def test_invariant_violation_is_not_a_service_error(self):
        assert not issubclass(errors.InvariantViolation, errors.ServiceError)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_every_reason_is_a_valid_code(self):
        for cls, reason, _, _ in CATALOGUE:
            assert ErrorBody(code=reason, message="x").code == reason
        ErrorBody(code="cooldown_active", message="x")
        ErrorBody(code="resend_limit_exceeded", message="x")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="x")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    """Tests for _error_response helper."""

    def test_error_response_body(self):
        resp = _error_response(
            429,
            "wait",
            {"remaining_seconds": 5},
            code="cooldown_active",
            headers={"Retry-After": "5"},
        )
        body = json.loads(resp.body)
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "5"
        assert body["status"] == "error"
        assert body["error"]["code"] == "cooldown_active"
        assert body["request_id"]

    def test_status_fallback_codes(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(418) == "server_error"


class TestRequestSchemas:
    """Tests for request normalization."""

    def test_email_normalized(self):
        req = SignInRequest(email="  Agent@Desk.Example ", password="pw", captcha_token="t")
        assert req.email == "agent@desk.example"
        assert req.admin_path is False

    def test_zero_width_characters_stripped(self):
        req = SignInRequest(email="agent\u200b@desk.example", password="pw")
        assert req.email == "agent@desk.example"
        assert req.captcha_token is None

    @pytest.mark.parametrize("email", ["agent", "agent@", "@desk.example", "agent@localhost"])
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            SignInRequest(email=email, password="pw")
