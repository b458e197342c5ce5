from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable machine-readable ``error_code`` (the
    rejection reason), an HTTP ``status_code`` and a ``category`` telling the
    caller whether retrying can help:

    - input_rejected: the request itself was refused; never retried automatically
    - rate_limited: retryable after ``detail["remaining_seconds"]``
    - dependency_failure: a collaborator failed; the caller may retry the step
    """

    status_code: int = 400
    error_code: str = "validation_error"
    category: str = "input_rejected"
    default_message: str = "request rejected"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def reason(self) -> str:
        return self.error_code

    @property
    def retryable(self) -> bool:
        return self.category in {"rate_limited", "dependency_failure"}


class AuthError(ServiceError):
    """Sign-in rejection surfaced to the caller."""

    status_code = 401
    error_code = "unauthorized"


class DependencyError(AuthError):
    """A collaborator could not confirm the step; no internals in the message."""

    status_code = 503
    category = "dependency_failure"
    default_message = "Service temporarily unavailable, please try again."


class RateLimitedError(AuthError):
    """Issuance refused until the stated interval elapses (429)."""

    status_code = 429
    error_code = "rate_limited"
    category = "rate_limited"

    def __init__(self, remaining_seconds: int, message: Optional[str] = None) -> None:
        self.remaining_seconds = max(0, int(remaining_seconds))
        super().__init__(
            message, detail={"remaining_seconds": self.remaining_seconds}
        )


# Human verification


class CaptchaMissingError(AuthError):
    status_code = 400
    error_code = "captcha_missing"
    default_message = "Please complete the human verification challenge."


class CaptchaInvalidError(AuthError):
    status_code = 400
    error_code = "captcha_invalid"
    default_message = "Human verification failed, please try again."


class CaptchaProviderError(DependencyError):
    error_code = "captcha_provider_error"
    default_message = "Human verification is temporarily unavailable, please try again."


# Credentials


class InvalidCredentialsError(AuthError):
    error_code = "invalid_credentials"
    default_message = "Invalid email or password."


class ProviderUnavailableError(DependencyError):
    error_code = "provider_unavailable"


# One-time codes


class CooldownActiveError(RateLimitedError):
    error_code = "cooldown_active"

    def __init__(self, remaining_seconds: int) -> None:
        super().__init__(
            remaining_seconds,
            f"Please wait {max(0, int(remaining_seconds))} seconds before requesting a new code.",
        )


class ResendLimitExceededError(RateLimitedError):
    error_code = "resend_limit_exceeded"

    def __init__(self, remaining_seconds: int) -> None:
        super().__init__(
            remaining_seconds,
            "Too many verification codes requested, please try again later.",
        )


class NotificationFailedError(DependencyError):
    error_code = "notification_failed"
    default_message = "We could not send your verification code, please try again."


class NoPendingCodeError(AuthError):
    status_code = 400
    error_code = "no_pending_code"
    default_message = "No verification code is pending, please sign in again."


class CodeExpiredError(AuthError):
    status_code = 400
    error_code = "code_expired"
    default_message = "Verification code has expired, please request a new one."


class CodeMismatchError(AuthError):
    status_code = 400
    error_code = "code_mismatch"
    default_message = "Invalid verification code, please check and try again."


# Sessions


class SessionNotFoundError(AuthError):
    error_code = "session_not_found"
    default_message = "Session not found, please sign in."


class SessionInactiveError(AuthError):
    error_code = "session_inactive"
    default_message = "Session has ended, please sign in again."


class StorageUnavailableError(DependencyError):
    error_code = "storage_unavailable"


class InvariantViolation(RuntimeError):
    """A state-machine or storage invariant was broken; a bug, not a user error."""


__all__ = [
    "ServiceError",
    "AuthError",
    "DependencyError",
    "RateLimitedError",
    "CaptchaMissingError",
    "CaptchaInvalidError",
    "CaptchaProviderError",
    "InvalidCredentialsError",
    "ProviderUnavailableError",
    "CooldownActiveError",
    "ResendLimitExceededError",
    "NotificationFailedError",
    "NoPendingCodeError",
    "CodeExpiredError",
    "CodeMismatchError",
    "SessionNotFoundError",
    "SessionInactiveError",
    "StorageUnavailableError",
    "InvariantViolation",
]
