from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

DEFAULT_ADMIN_PERMISSIONS = ("view_tickets", "manage_users", "view_stats", "full_admin")
MAX_CAPTCHA_HASHES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical key form of an address; emails compare case-insensitively."""
    return (email or "").strip().lower()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    display_name: Optional[str] = None


@dataclass
class MFARecord:
    email: str
    code: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    @classmethod
    def new(cls, email: str, code: str, issued_at: datetime, ttl_seconds: int) -> "MFARecord":
        return cls(
            email=normalize_email(email),
            code=code,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class ResendCounter:
    email: str
    count: int
    window_started_at: datetime
    last_issued_at: datetime


@dataclass
class AdminRole:
    principal_id: str
    role: str = "admin"
    permissions: List[str] = field(default_factory=lambda: list(DEFAULT_ADMIN_PERMISSIONS))
    organization_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


class SessionEndReason(str, Enum):
    SIGNED_OUT = "signed_out"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    IDLE = "idle"


@dataclass
class Session:
    id: str
    principal_id: str
    email: str
    token_hash: str
    started_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        principal: Principal,
        token: str,
        started_at: datetime,
        ttl_minutes: int,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal.id,
            email=normalize_email(principal.email),
            token_hash=hash_token(token),
            started_at=started_at,
            expires_at=started_at + timedelta(minutes=ttl_minutes),
            last_seen_at=started_at,
        )


class SignInState(str, Enum):
    START = "start"
    CREDENTIALS_CHECKED = "credentials_checked"
    ADMIN_FAST_PATH = "admin_fast_path"
    MFA_PENDING = "mfa_pending"
    MFA_VERIFIED = "mfa_verified"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


@dataclass
class SignInAttempt:
    """A sign-in parked in MFA_PENDING between the password and code requests."""

    email: str
    principal_id: str
    display_name: Optional[str]
    state: SignInState
    started_at: datetime
    expires_at: datetime
    captcha_hashes: List[str] = field(default_factory=list)

    def principal(self) -> Principal:
        return Principal(id=self.principal_id, email=self.email, display_name=self.display_name)

    def captcha_seen(self, token: str) -> bool:
        return hash_token(token) in self.captcha_hashes

    def record_captcha(self, token: str) -> None:
        digest = hash_token(token)
        if digest not in self.captcha_hashes:
            self.captcha_hashes = (self.captcha_hashes + [digest])[-MAX_CAPTCHA_HASHES:]
