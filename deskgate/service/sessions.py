from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from deskgate.logging import get_logger
from deskgate.service.errors import SessionInactiveError, SessionNotFoundError
from deskgate.storage.common import AuthStore
from deskgate.storage.models import (
    Principal,
    Session,
    SessionEndReason,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    """The raw token exists only here; storage keeps its SHA-256."""

    token: str
    session: Session


class SessionManager:
    """Issues opaque session tokens with one active session per principal."""

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl_minutes: int = 60 * 24,
        idle_timeout_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self.clock = clock

    async def start_session(self, principal: Principal) -> SessionGrant:
        token = secrets.token_urlsafe(32)
        session = Session.new(principal, token, self.clock(), self.ttl_minutes)
        # Ending the old sessions and inserting this one is a single store step
        superseded = await self.store.start_session(session)
        logger.info(
            "session_started",
            principal_id=principal.id,
            session_id=session.id,
            superseded=len(superseded),
        )
        return SessionGrant(token=token, session=session)

    async def _lookup(self, token: Optional[str]) -> Session:
        if not token:
            raise SessionNotFoundError()
        session = await self.store.get_session_by_token_hash(hash_token(token))
        if session is None:
            raise SessionNotFoundError()
        return session

    async def end_session(
        self, token: Optional[str], reason: SessionEndReason = SessionEndReason.SIGNED_OUT
    ) -> Session:
        session = await self._lookup(token)
        if not session.active:
            return session
        ended = await self.store.end_session(session.id, self.clock(), reason.value)
        logger.info(
            "session_ended",
            principal_id=session.principal_id,
            session_id=session.id,
            reason=reason.value,
        )
        return ended or session

    async def validate(self, token: Optional[str]) -> Session:
        session = await self._lookup(token)
        if not session.active:
            raise SessionInactiveError()

        now = self.clock()
        reason = None
        if now >= session.expires_at:
            reason = SessionEndReason.EXPIRED
        elif now - session.last_seen_at > self.idle_timeout:
            reason = SessionEndReason.IDLE
        if reason is not None:
            await self.store.end_session(session.id, now, reason.value)
            logger.info(
                "session_ended",
                principal_id=session.principal_id,
                session_id=session.id,
                reason=reason.value,
            )
            raise SessionInactiveError()

        await self.store.touch_session(session.id, now)
        session.last_seen_at = now
        return session

    async def end_all_sessions(
        self,
        principal_id: str,
        reason: SessionEndReason = SessionEndReason.SIGNED_OUT,
    ) -> int:
        ended = await self.store.end_principal_sessions(principal_id, self.clock(), reason.value)
        logger.info(
            "sessions_ended", principal_id=principal_id, count=ended, reason=reason.value
        )
        return ended

    async def list_sessions(self, principal_id: str) -> List[Session]:
        return await self.store.list_sessions(principal_id)
