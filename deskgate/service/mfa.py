from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from deskgate.logging import get_logger, redact_email
from deskgate.service.email import CodeNotifier
from deskgate.service.errors import (
    CodeExpiredError,
    CodeMismatchError,
    CooldownActiveError,
    NoPendingCodeError,
    NotificationFailedError,
    ResendLimitExceededError,
    StorageUnavailableError,
)
from deskgate.storage.common import AuthStore, IssuanceDecision, IssuancePolicy
from deskgate.storage.models import MFARecord, normalize_email, utcnow

logger = get_logger(__name__)


def generate_code(digits: int = 6) -> str:
    """Uniformly random fixed-width numeric code; leading zeros are kept."""
    return str(secrets.randbelow(10**digits)).zfill(digits)


@dataclass(frozen=True)
class IssueReceipt:
    email: str
    issued_at: datetime
    expires_at: datetime
    issuances_remaining: int


class MFAIssuer:
    """Generates, stores and dispatches one-time codes under the resend policy.

    The cooldown and ceiling check is a single atomic reservation in the
    store, so concurrent requests for one email cannot both pass it. When the
    notifier fails, the record written here and the reservation are undone.
    """

    def __init__(
        self,
        store: AuthStore,
        notifier: CodeNotifier,
        *,
        code_digits: int = 6,
        code_ttl_seconds: int = 600,
        cooldown_seconds: int = 30,
        max_issuances: int = 3,
        window_seconds: int = 3600,
        notify_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[int], str] = generate_code,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.code_digits = code_digits
        self.code_ttl_seconds = code_ttl_seconds
        self.policy = IssuancePolicy(
            cooldown_seconds=cooldown_seconds,
            max_issuances=max_issuances,
            window_seconds=window_seconds,
        )
        self.notify_timeout_seconds = notify_timeout_seconds
        self.clock = clock
        self._code_factory = code_factory

    async def issue(self, email: str) -> IssueReceipt:
        email = normalize_email(email)
        now = self.clock()
        decision = await self.store.reserve_issuance(email, now, self.policy)
        if not decision.allowed:
            if decision.reason == "cooldown":
                logger.info(
                    "mfa_issue_cooldown",
                    to=redact_email(email),
                    remaining_seconds=decision.remaining_seconds,
                )
                raise CooldownActiveError(decision.remaining_seconds)
            logger.warning(
                "mfa_issue_limit_reached",
                to=redact_email(email),
                issued=decision.count,
                remaining_seconds=decision.remaining_seconds,
            )
            raise ResendLimitExceededError(decision.remaining_seconds)

        code = self._code_factory(self.code_digits)
        record = MFARecord.new(email, code, now, self.code_ttl_seconds)
        try:
            await self.store.replace_mfa_record(record)
        except StorageUnavailableError:
            await self._release(email, decision)
            raise

        try:
            await asyncio.wait_for(
                self.notifier.send_code(
                    email, code, expires_in_seconds=self.code_ttl_seconds
                ),
                timeout=self.notify_timeout_seconds,
            )
        except (asyncio.TimeoutError, NotificationFailedError) as exc:
            logger.error(
                "mfa_code_delivery_failed",
                to=redact_email(email),
                timed_out=isinstance(exc, asyncio.TimeoutError),
            )
            await self._rollback(email, code, decision)
            raise NotificationFailedError() from exc

        logger.info(
            "mfa_code_issued",
            to=redact_email(email),
            issuance=decision.count,
            expires_at=record.expires_at.isoformat(),
        )
        return IssueReceipt(
            email=email,
            issued_at=now,
            expires_at=record.expires_at,
            issuances_remaining=max(0, self.policy.max_issuances - decision.count),
        )

    async def _rollback(self, email: str, code: str, decision: IssuanceDecision) -> None:
        try:
            # Conditional on the code so a newer issuance is left alone
            await self.store.delete_mfa_record(email, code=code)
        except StorageUnavailableError:
            logger.error("mfa_rollback_record_failed", to=redact_email(email))
        await self._release(email, decision)

    async def _release(self, email: str, decision: IssuanceDecision) -> None:
        try:
            await self.store.release_issuance(email, decision)
        except StorageUnavailableError:
            logger.error("mfa_rollback_counter_failed", to=redact_email(email))


class MFAVerifier:
    """Checks a submitted code; success consumes it and clears the resend counter."""

    def __init__(
        self,
        store: AuthStore,
        *,
        code_digits: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.code_digits = code_digits
        self.clock = clock

    def _well_formed(self, code: str) -> bool:
        return len(code) == self.code_digits and code.isascii() and code.isdigit()

    async def verify(self, email: str, code: Optional[str]) -> None:
        email = normalize_email(email)
        record = await self.store.get_mfa_record(email)
        if record is None or record.consumed:
            raise NoPendingCodeError()

        if record.is_expired(self.clock()):
            await self.store.delete_mfa_record(email, code=record.code)
            logger.info("mfa_code_expired", to=redact_email(email))
            raise CodeExpiredError()

        submitted = (code or "").strip()
        matches = hmac.compare_digest(
            submitted.encode("utf-8"), record.code.encode("utf-8")
        )
        if not (self._well_formed(submitted) and matches):
            logger.info("mfa_code_mismatch", to=redact_email(email))
            raise CodeMismatchError()

        if not await self.store.consume_mfa_record(email, record.code):
            # Another request consumed or replaced it first
            raise NoPendingCodeError()
        await self.store.reset_resend_counter(email)
        logger.info("mfa_code_verified", to=redact_email(email))
