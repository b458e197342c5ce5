from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from deskgate.logging import get_logger
from deskgate.service.errors import InvariantViolation
from deskgate.storage.common import IssuanceDecision, IssuancePolicy, decide_issuance
from deskgate.storage.models import (
    AdminRole,
    MFARecord,
    ResendCounter,
    Session,
    SignInAttempt,
    normalize_email,
)


class MemoryStore:
    """In-process backing store for tests and single-instance development.

    Every method runs under one re-entrant lock, so each check-then-write
    sequence is atomic with respect to concurrent requests in this process.
    State is not shared across processes; production uses RedisStore.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.mfa_records: Dict[str, MFARecord] = {}
        self.resend_counters: Dict[str, ResendCounter] = {}
        self.attempts: Dict[str, SignInAttempt] = {}
        self.admin_roles: Dict[str, AdminRole] = {}
        self.sessions: Dict[str, Session] = {}
        self._sessions_by_token: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # one-time codes
    async def replace_mfa_record(self, record: MFARecord) -> Optional[MFARecord]:
        key = normalize_email(record.email)
        with self._data_lock:
            previous = self.mfa_records.get(key)
            self.mfa_records[key] = replace(record, email=key)
            return previous

    async def get_mfa_record(self, email: str) -> Optional[MFARecord]:
        with self._data_lock:
            record = self.mfa_records.get(normalize_email(email))
            return replace(record) if record else None

    async def consume_mfa_record(self, email: str, code: str) -> bool:
        key = normalize_email(email)
        with self._data_lock:
            record = self.mfa_records.get(key)
            if not record or record.consumed or record.code != code:
                return False
            # Single use: the record is gone once consumed
            self.mfa_records.pop(key, None)
            return True

    async def delete_mfa_record(self, email: str, *, code: Optional[str] = None) -> bool:
        key = normalize_email(email)
        with self._data_lock:
            record = self.mfa_records.get(key)
            if not record:
                return False
            if code is not None and record.code != code:
                return False
            self.mfa_records.pop(key, None)
            return True

    # resend counters
    async def reserve_issuance(
        self, email: str, now: datetime, policy: IssuancePolicy
    ) -> IssuanceDecision:
        key = normalize_email(email)
        with self._data_lock:
            decision, updated = decide_issuance(
                self.resend_counters.get(key), key, now, policy
            )
            if decision.allowed and updated is not None:
                self.resend_counters[key] = updated
            return decision

    async def release_issuance(self, email: str, decision: IssuanceDecision) -> None:
        key = normalize_email(email)
        with self._data_lock:
            current = self.resend_counters.get(key)
            # Only undo our own reservation; a later issuance wins
            if not current or current.last_issued_at != decision.reserved_at:
                return
            if decision.previous is None:
                self.resend_counters.pop(key, None)
            else:
                self.resend_counters[key] = decision.previous

    async def reset_resend_counter(self, email: str) -> None:
        with self._data_lock:
            self.resend_counters.pop(normalize_email(email), None)

    async def get_resend_counter(self, email: str) -> Optional[ResendCounter]:
        with self._data_lock:
            counter = self.resend_counters.get(normalize_email(email))
            return replace(counter) if counter else None

    # sign-in attempts
    async def save_attempt(self, attempt: SignInAttempt) -> None:
        key = normalize_email(attempt.email)
        with self._data_lock:
            self.attempts[key] = replace(attempt, email=key)

    async def get_attempt(self, email: str) -> Optional[SignInAttempt]:
        with self._data_lock:
            attempt = self.attempts.get(normalize_email(email))
            return replace(attempt) if attempt else None

    async def delete_attempt(self, email: str) -> None:
        with self._data_lock:
            self.attempts.pop(normalize_email(email), None)

    # admin roles
    async def get_admin_role(self, principal_id: str) -> Optional[AdminRole]:
        with self._data_lock:
            role = self.admin_roles.get(principal_id)
            return replace(role) if role else None

    async def ensure_admin_role(self, role: AdminRole) -> AdminRole:
        with self._data_lock:
            existing = self.admin_roles.get(role.principal_id)
            if existing:
                return replace(existing)
            self.admin_roles[role.principal_id] = replace(role)
            return replace(role)

    # sessions
    async def start_session(self, session: Session) -> List[Session]:
        """End the principal's active sessions and insert ``session`` in one step."""
        with self._data_lock:
            if session.token_hash in self._sessions_by_token:
                raise InvariantViolation("session token collision")
            superseded: List[Session] = []
            for existing in self.sessions.values():
                if existing.principal_id == session.principal_id and existing.active:
                    existing.active = False
                    existing.ended_at = session.started_at
                    existing.end_reason = "superseded"
                    superseded.append(replace(existing))
            self.sessions[session.id] = replace(session)
            self._sessions_by_token[session.token_hash] = session.id
            return superseded

    async def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_token.get(token_hash)
            session = self.sessions.get(session_id) if session_id else None
            return replace(session) if session else None

    async def end_session(
        self, session_id: str, ended_at: datetime, reason: str
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            if session.active:
                session.active = False
                session.ended_at = ended_at
                session.end_reason = reason
            return replace(session)

    async def end_principal_sessions(
        self, principal_id: str, ended_at: datetime, reason: str
    ) -> int:
        ended = 0
        with self._data_lock:
            for session in self.sessions.values():
                if session.principal_id == principal_id and session.active:
                    session.active = False
                    session.ended_at = ended_at
                    session.end_reason = reason
                    ended += 1
        return ended

    async def touch_session(self, session_id: str, seen_at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session and session.active and seen_at > session.last_seen_at:
                session.last_seen_at = seen_at

    async def list_sessions(self, principal_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [
                replace(s) for s in self.sessions.values() if s.principal_id == principal_id
            ]
        return sorted(sessions, key=lambda s: s.started_at)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
