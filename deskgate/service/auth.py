from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Optional

from deskgate.logging import get_logger, redact_email
from deskgate.service.admin import AdminResolver
from deskgate.service.captcha import CaptchaGate
from deskgate.service.errors import (
    AuthError,
    CaptchaInvalidError,
    InvariantViolation,
    NoPendingCodeError,
    NotificationFailedError,
)
from deskgate.service.identity import CredentialValidator
from deskgate.service.mfa import IssueReceipt, MFAIssuer, MFAVerifier
from deskgate.service.sessions import SessionManager
from deskgate.storage.common import AuthStore
from deskgate.storage.models import (
    Principal,
    SignInAttempt,
    SignInState,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

S = SignInState

SIGN_IN_TRANSITIONS: Dict[SignInState, FrozenSet[SignInState]] = {
    S.START: frozenset({S.CREDENTIALS_CHECKED, S.REJECTED}),
    S.CREDENTIALS_CHECKED: frozenset({S.ADMIN_FAST_PATH, S.MFA_PENDING, S.REJECTED}),
    S.ADMIN_FAST_PATH: frozenset({S.SESSION_ESTABLISHED, S.REJECTED}),
    S.MFA_PENDING: frozenset({S.MFA_VERIFIED, S.REJECTED}),
    S.MFA_VERIFIED: frozenset({S.SESSION_ESTABLISHED, S.REJECTED}),
    S.SESSION_ESTABLISHED: frozenset(),
    S.REJECTED: frozenset(),
}


def advance(current: SignInState, target: SignInState) -> SignInState:
    """Move the sign-in state machine; an unlisted transition is a bug."""
    if target not in SIGN_IN_TRANSITIONS[current]:
        raise InvariantViolation(
            f"illegal sign-in transition {current.value} -> {target.value}"
        )
    return target


@dataclass
class SignInResult:
    state: SignInState
    requires_mfa: bool
    session_token: Optional[str] = None
    is_admin: bool = False
    principal_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    code_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    email: str
    is_admin: bool
    session_id: str


class AuthOrchestrator:
    """Composes the sign-in protocol out of the gate, validator, MFA, roles and sessions.

    Between the password step and the code step the attempt is persisted in
    the store as MFA_PENDING, so any service instance can finish it. No step
    with a side effect is retried here; retries are the caller's decision.
    """

    def __init__(
        self,
        *,
        store: AuthStore,
        captcha: CaptchaGate,
        credentials: CredentialValidator,
        issuer: MFAIssuer,
        verifier: MFAVerifier,
        admin: AdminResolver,
        sessions: SessionManager,
        operator_email: Optional[str] = None,
        operator_password: Optional[str] = None,
        admin_fast_path_enabled: bool = False,
        attempt_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.captcha = captcha
        self.credentials = credentials
        self.issuer = issuer
        self.verifier = verifier
        self.admin = admin
        self.sessions = sessions
        self.operator_email = normalize_email(operator_email) if operator_email else None
        self.operator_password = operator_password
        self.admin_fast_path_enabled = admin_fast_path_enabled
        self.attempt_ttl_seconds = attempt_ttl_seconds
        self.clock = clock

    def _fast_path_allowed(self, email: str, password: str) -> bool:
        if not (self.admin_fast_path_enabled and self.operator_email and self.operator_password):
            return False
        email_ok = hmac.compare_digest(email.encode("utf-8"), self.operator_email.encode("utf-8"))
        password_ok = hmac.compare_digest(
            password.encode("utf-8"), self.operator_password.encode("utf-8")
        )
        return email_ok and password_ok

    async def sign_in(
        self,
        email: str,
        password: str,
        captcha_token: Optional[str],
        *,
        admin_path: bool = False,
        remote_ip: Optional[str] = None,
    ) -> SignInResult:
        email = normalize_email(email)
        state = S.START
        try:
            await self.captcha.require(captcha_token, remote_ip=remote_ip)
            principal = await self.credentials.validate(email, password)
        except AuthError as exc:
            state = advance(state, S.REJECTED)
            logger.info("sign_in_rejected", to=redact_email(email), reason=exc.reason)
            raise
        state = advance(state, S.CREDENTIALS_CHECKED)

        if admin_path and self._fast_path_allowed(email, password or ""):
            state = advance(state, S.ADMIN_FAST_PATH)
            logger.warning("admin_fast_path_used", principal_id=principal.id)
            return await self._establish(principal, state)
        if admin_path:
            logger.info("admin_fast_path_refused", principal_id=principal.id)

        state = advance(state, S.MFA_PENDING)
        now = self.clock()
        attempt = SignInAttempt(
            email=email,
            principal_id=principal.id,
            display_name=principal.display_name,
            state=state,
            started_at=now,
            expires_at=now + timedelta(seconds=self.attempt_ttl_seconds),
        )
        previous = await self.store.get_attempt(email)
        if previous is not None and previous.expires_at > now:
            attempt.captcha_hashes = list(previous.captcha_hashes)
        attempt.record_captcha(captcha_token.strip())
        await self.store.save_attempt(attempt)
        try:
            receipt = await self.issuer.issue(email)
        except NotificationFailedError:
            await self.store.delete_attempt(email)
            advance(state, S.REJECTED)
            raise
        # Cooldown and ceiling rejections leave the attempt pending

        return SignInResult(
            state=state,
            requires_mfa=True,
            principal_id=principal.id,
            code_expires_at=receipt.expires_at,
        )

    async def _pending_attempt(self, email: str) -> SignInAttempt:
        attempt = await self.store.get_attempt(email)
        if attempt is None or attempt.expires_at <= self.clock():
            raise NoPendingCodeError()
        if attempt.state is not S.MFA_PENDING:
            raise InvariantViolation(f"stored attempt in state {attempt.state.value}")
        return attempt

    async def _claim_captcha(self, attempt: SignInAttempt, captcha_token: str) -> None:
        """Each step of one sign-in must present a token it has not presented before."""
        token = captcha_token.strip()
        if attempt.captcha_seen(token):
            logger.info("captcha_token_reused", to=redact_email(attempt.email))
            raise CaptchaInvalidError()
        attempt.record_captcha(token)
        await self.store.save_attempt(attempt)

    async def resend_code(
        self,
        email: str,
        captcha_token: Optional[str],
        *,
        remote_ip: Optional[str] = None,
    ) -> IssueReceipt:
        email = normalize_email(email)
        await self.captcha.require(captcha_token, remote_ip=remote_ip)
        attempt = await self._pending_attempt(email)
        await self._claim_captcha(attempt, captcha_token)
        try:
            receipt = await self.issuer.issue(email)
        except NotificationFailedError:
            await self.store.delete_attempt(email)
            advance(attempt.state, S.REJECTED)
            raise
        if receipt.expires_at > attempt.expires_at:
            attempt.expires_at = receipt.expires_at
            await self.store.save_attempt(attempt)
        return receipt

    async def verify_mfa(
        self,
        email: str,
        code: Optional[str],
        captcha_token: Optional[str],
        *,
        remote_ip: Optional[str] = None,
    ) -> SignInResult:
        email = normalize_email(email)
        # A fresh challenge is required for the code step
        await self.captcha.require(captcha_token, remote_ip=remote_ip)
        attempt = await self._pending_attempt(email)
        await self._claim_captcha(attempt, captcha_token)
        await self.verifier.verify(email, code)
        state = advance(attempt.state, S.MFA_VERIFIED)
        await self.store.delete_attempt(email)
        return await self._establish(attempt.principal(), state)

    async def _establish(self, principal: Principal, state: SignInState) -> SignInResult:
        is_admin = await self.admin.resolve_role(principal)
        grant = await self.sessions.start_session(principal)
        state = advance(state, S.SESSION_ESTABLISHED)
        logger.info(
            "sign_in_completed",
            principal_id=principal.id,
            session_id=grant.session.id,
            is_admin=is_admin,
        )
        return SignInResult(
            state=state,
            requires_mfa=False,
            session_token=grant.token,
            is_admin=is_admin,
            principal_id=principal.id,
            expires_at=grant.session.expires_at,
        )

    async def sign_out(self, session_token: Optional[str]) -> None:
        await self.sessions.end_session(session_token)

    async def authenticate(self, session_token: Optional[str]) -> AuthContext:
        """Resolve a bearer session token; the role is recomputed on every call."""
        session = await self.sessions.validate(session_token)
        principal = Principal(id=session.principal_id, email=session.email)
        return AuthContext(
            principal_id=session.principal_id,
            email=session.email,
            is_admin=await self.admin.resolve_role(principal),
            session_id=session.id,
        )
