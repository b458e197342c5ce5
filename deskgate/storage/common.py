"""Storage contract and helpers shared between the memory and Redis backends.

Both backends must make every multi-step update atomic per key (email for
codes, counters and attempts; principal for sessions and admin roles) so
horizontally scaled service instances observe one consistent state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from deskgate.storage.models import (
    AdminRole,
    MFARecord,
    ResendCounter,
    Session,
    SignInAttempt,
    SignInState,
)


@dataclass(frozen=True)
class IssuancePolicy:
    cooldown_seconds: int
    max_issuances: int
    window_seconds: int


@dataclass(frozen=True)
class IssuanceDecision:
    """Outcome of an atomic check-and-increment on a resend counter.

    ``previous`` is the counter as it was before this reservation so a failed
    delivery can put it back.
    """

    allowed: bool
    reason: Optional[str] = None  # "cooldown" | "limit"
    remaining_seconds: int = 0
    count: int = 0
    previous: Optional[ResendCounter] = None
    reserved_at: Optional[datetime] = None


def decide_issuance(
    counter: Optional[ResendCounter],
    email: str,
    now: datetime,
    policy: IssuancePolicy,
) -> tuple[IssuanceDecision, Optional[ResendCounter]]:
    """Pure cooldown/ceiling rule; returns the decision and the counter to store."""
    if counter is not None:
        window_age = (now - counter.window_started_at).total_seconds()
        if window_age >= policy.window_seconds:
            counter = None
    if counter is not None:
        since_last = (now - counter.last_issued_at).total_seconds()
        if since_last < policy.cooldown_seconds:
            return (
                IssuanceDecision(
                    allowed=False,
                    reason="cooldown",
                    remaining_seconds=max(1, math.ceil(policy.cooldown_seconds - since_last)),
                    count=counter.count,
                ),
                None,
            )
        if counter.count >= policy.max_issuances:
            window_left = policy.window_seconds - (now - counter.window_started_at).total_seconds()
            return (
                IssuanceDecision(
                    allowed=False,
                    reason="limit",
                    remaining_seconds=max(1, math.ceil(window_left)),
                    count=counter.count,
                ),
                None,
            )
        updated = ResendCounter(
            email=email,
            count=counter.count + 1,
            window_started_at=counter.window_started_at,
            last_issued_at=now,
        )
    else:
        updated = ResendCounter(email=email, count=1, window_started_at=now, last_issued_at=now)
    return (
        IssuanceDecision(
            allowed=True, count=updated.count, previous=counter, reserved_at=now
        ),
        updated,
    )


class AuthStore(Protocol):
    """Durable state for the sign-in flow; every method is atomic per key."""

    # one-time codes
    async def replace_mfa_record(self, record: MFARecord) -> Optional[MFARecord]: ...

    async def get_mfa_record(self, email: str) -> Optional[MFARecord]: ...

    async def consume_mfa_record(self, email: str, code: str) -> bool: ...

    async def delete_mfa_record(self, email: str, *, code: Optional[str] = None) -> bool: ...

    # resend counters
    async def reserve_issuance(
        self, email: str, now: datetime, policy: IssuancePolicy
    ) -> IssuanceDecision: ...

    async def release_issuance(self, email: str, decision: IssuanceDecision) -> None: ...

    async def reset_resend_counter(self, email: str) -> None: ...

    async def get_resend_counter(self, email: str) -> Optional[ResendCounter]: ...

    # sign-in attempts
    async def save_attempt(self, attempt: SignInAttempt) -> None: ...

    async def get_attempt(self, email: str) -> Optional[SignInAttempt]: ...

    async def delete_attempt(self, email: str) -> None: ...

    # admin roles
    async def get_admin_role(self, principal_id: str) -> Optional[AdminRole]: ...

    async def ensure_admin_role(self, role: AdminRole) -> AdminRole: ...

    # sessions
    async def start_session(self, session: Session) -> List[Session]: ...

    async def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    async def end_session(
        self, session_id: str, ended_at: datetime, reason: str
    ) -> Optional[Session]: ...

    async def end_principal_sessions(
        self, principal_id: str, ended_at: datetime, reason: str
    ) -> int: ...

    async def touch_session(self, session_id: str, seen_at: datetime) -> None: ...

    async def list_sessions(self, principal_id: str) -> List[Session]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ============================================================================
# SERIALIZATION - shared wire form for the Redis backend
# ============================================================================


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_dt(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(raw: Any) -> datetime:
    return datetime.fromtimestamp(float(raw), tz=timezone.utc)


def serialize_mfa_record(record: MFARecord) -> Dict[str, Any]:
    return {
        "email": record.email,
        "code": record.code,
        "issued_at": to_iso(record.issued_at),
        "expires_at": to_iso(record.expires_at),
        "consumed": record.consumed,
    }


def deserialize_mfa_record(data: Dict[str, Any]) -> MFARecord:
    return MFARecord(
        email=data["email"],
        code=data["code"],
        issued_at=_parse_dt(data["issued_at"]),
        expires_at=_parse_dt(data["expires_at"]),
        consumed=bool(data.get("consumed", False)),
    )


def serialize_attempt(attempt: SignInAttempt) -> Dict[str, Any]:
    return {
        "email": attempt.email,
        "principal_id": attempt.principal_id,
        "display_name": attempt.display_name,
        "state": attempt.state.value,
        "started_at": to_iso(attempt.started_at),
        "expires_at": to_iso(attempt.expires_at),
        "captcha_hashes": list(attempt.captcha_hashes),
    }


def deserialize_attempt(data: Dict[str, Any]) -> SignInAttempt:
    return SignInAttempt(
        email=data["email"],
        principal_id=data["principal_id"],
        display_name=data.get("display_name"),
        state=SignInState(data["state"]),
        started_at=_parse_dt(data["started_at"]),
        expires_at=_parse_dt(data["expires_at"]),
        captcha_hashes=list(data.get("captcha_hashes") or []),
    )


def serialize_admin_role(role: AdminRole) -> Dict[str, Any]:
    return {
        "principal_id": role.principal_id,
        "role": role.role,
        "permissions": list(role.permissions),
        "organization_id": role.organization_id,
        "created_at": to_iso(role.created_at),
    }


def deserialize_admin_role(data: Dict[str, Any]) -> AdminRole:
    return AdminRole(
        principal_id=data["principal_id"],
        role=data.get("role", "admin"),
        permissions=list(data.get("permissions") or []),
        organization_id=data.get("organization_id"),
        created_at=_parse_dt(data.get("created_at")) or datetime.now(timezone.utc),
    )


def serialize_session(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "principal_id": session.principal_id,
        "email": session.email,
        "token_hash": session.token_hash,
        "started_at": to_iso(session.started_at),
        "expires_at": to_iso(session.expires_at),
        "last_seen_at": to_iso(session.last_seen_at),
        "active": session.active,
        "ended_at": to_iso(session.ended_at),
        "end_reason": session.end_reason,
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    return Session(
        id=data["id"],
        principal_id=data["principal_id"],
        email=data["email"],
        token_hash=data["token_hash"],
        started_at=_parse_dt(data["started_at"]),
        expires_at=_parse_dt(data["expires_at"]),
        last_seen_at=_parse_dt(data.get("last_seen_at")) or _parse_dt(data["started_at"]),
        active=bool(data.get("active", False)),
        ended_at=_parse_dt(data.get("ended_at")),
        end_reason=data.get("end_reason"),
    )
