from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from deskgate.service.errors import ServiceError
from deskgate.storage.models import SignInState


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _error_codes() -> frozenset[str]:
    codes = {"validation_error", "unauthorized", "not_found", "rate_limited", "server_error"}
    pending = list(ServiceError.__subclasses__())
    while pending:
        cls = pending.pop()
        codes.add(cls.error_code)
        pending.extend(cls.__subclasses__())
    return frozenset(codes)


_VALID_ERROR_CODES = _error_codes()


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable rejection reason."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailRequest(BaseModel):
    email: str
    # Optional so a missing token is reported as captcha_missing, not a schema error
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class SignInRequest(_EmailRequest):
    password: str = Field(..., max_length=1024)
    admin_path: bool = False


class MFAVerifyRequest(_EmailRequest):
    code: str = Field(..., max_length=16)


class MFAResendRequest(_EmailRequest):
    pass


class SignOutRequest(BaseModel):
    session_token: Optional[str] = Field(default=None, max_length=256)


class SignInResponse(BaseModel):
    state: SignInState
    requires_mfa: bool
    session_token: Optional[str] = None
    is_admin: bool = False
    principal_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    code_expires_at: Optional[datetime] = None


class MFAResendResponse(BaseModel):
    code_expires_at: datetime
    issuances_remaining: int


class SessionResponse(BaseModel):
    principal_id: str
    email: str
    is_admin: bool
    session_id: str


class SignOutResponse(BaseModel):
    signed_out: bool = True
