"""Unit tests for one-time code issuance and verification.

Tests for:
- Code format (fixed width, leading zeros)
- Resend cooldown and per-window ceiling
- Rollback when the notifier fails
- Expiry, single use and malformed submissions
- Concurrent issuance for one email
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from deskgate.service.email import ConsoleCodeNotifier
from deskgate.service.errors import (
    CodeExpiredError,
    CodeMismatchError,
    CooldownActiveError,
    NoPendingCodeError,
    NotificationFailedError,
    ResendLimitExceededError,
    StorageUnavailableError,
)
from deskgate.service.mfa import MFAIssuer, MFAVerifier, generate_code

EMAIL = "agent@desk.example"


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    async def send_code(self, email, code, *, expires_in_seconds):
        self.calls += 1
        raise NotificationFailedError()


class HangingNotifier:
    async def send_code(self, email, code, *, expires_in_seconds):
        await asyncio.sleep(1)


class CountingCodes:
    def __init__(self):
        self.n = 0

    def __call__(self, digits):
        self.n += 1
        return str(100000 + self.n)


@pytest.fixture
def notifier():
    return ConsoleCodeNotifier()


@pytest.fixture
def issuer(store, notifier, clock):
    return MFAIssuer(store, notifier, clock=clock)


@pytest.fixture
def verifier(store, clock):
    return MFAVerifier(store, clock=clock)


class TestGenerateCode:
    """Tests for code generation."""

    def test_code_is_six_ascii_digits(self):
        for _ in range(50):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_leading_zeros_are_kept(self):
        with patch("deskgate.service.mfa.secrets.randbelow", return_value=42):
            assert generate_code(6) == "000042"

    def test_width_follows_digits(self):
        assert len(generate_code(8)) == 8


class TestIssuance:
    """Tests for MFAIssuer.issue."""

    async def test_issue_stores_and_delivers_code(self, issuer, store, notifier, clock):
        receipt = await issuer.issue(EMAIL)

        record = await store.get_mfa_record(EMAIL)
        assert record is not None
        assert notifier.last_code_for(EMAIL) == record.code
        assert record.issued_at == clock.now
        assert (record.expires_at - record.issued_at).total_seconds() == 600
        assert receipt.expires_at == record.expires_at
        assert receipt.issuances_remaining == 2

    async def test_email_is_normalized(self, issuer, store, notifier):
        await issuer.issue("  Agent@DESK.example ")
        assert await store.get_mfa_record(EMAIL) is not None
        assert notifier.outbox[0].email == EMAIL

    async def test_cooldown_blocks_second_request(self, issuer, clock):
        await issuer.issue(EMAIL)
        clock.advance(10)
        with pytest.raises(CooldownActiveError) as exc_info:
            await issuer.issue(EMAIL)
        assert exc_info.value.remaining_seconds == 20
        assert exc_info.value.status_code == 429
        assert exc_info.value.detail == {"remaining_seconds": 20}

    async def test_immediate_resend_reports_full_cooldown(self, issuer):
        await issuer.issue(EMAIL)
        with pytest.raises(CooldownActiveError) as exc_info:
            await issuer.issue(EMAIL)
        assert exc_info.value.remaining_seconds == 30

    async def test_new_code_replaces_old_after_cooldown(self, store, notifier, clock):
        issuer = MFAIssuer(store, notifier, clock=clock, code_factory=CountingCodes())
        await issuer.issue(EMAIL)
        clock.advance(31)
        receipt = await issuer.issue(EMAIL)
        record = await store.get_mfa_record(EMAIL)
        assert record.code == "100002"
        assert [d.code for d in notifier.outbox] == ["100001", "100002"]
        assert record.issued_at == clock.now
        assert receipt.issuances_remaining == 1

    async def test_fourth_issuance_in_window_is_refused(self, issuer, clock):
        for _ in range(3):
            await issuer.issue(EMAIL)
            clock.advance(31)
        with pytest.raises(ResendLimitExceededError) as exc_info:
            await issuer.issue(EMAIL)
        # Window opened 93s ago
        assert exc_info.value.remaining_seconds == 3600 - 93

    async def test_window_resets_after_an_hour(self, issuer, clock):
        for _ in range(3):
            await issuer.issue(EMAIL)
            clock.advance(31)
        clock.advance(3600)
        receipt = await issuer.issue(EMAIL)
        assert receipt.issuances_remaining == 2

    async def test_counters_are_per_email(self, issuer, notifier):
        await issuer.issue(EMAIL)
        await issuer.issue("other@desk.example")
        assert [d.email for d in notifier.outbox] == [EMAIL, "other@desk.example"]

    async def test_notifier_failure_rolls_back(self, store, clock):
        issuer = MFAIssuer(store, FailingNotifier(), clock=clock)
        with pytest.raises(NotificationFailedError):
            await issuer.issue(EMAIL)
        assert await store.get_mfa_record(EMAIL) is None
        assert await store.get_resend_counter(EMAIL) is None

    async def test_rollback_frees_the_cooldown(self, store, notifier, clock):
        failing = MFAIssuer(store, FailingNotifier(), clock=clock)
        with pytest.raises(NotificationFailedError):
            await failing.issue(EMAIL)
        # Same instant: no cooldown was recorded
        await MFAIssuer(store, notifier, clock=clock).issue(EMAIL)

    async def test_rollback_restores_previous_counter(self, issuer, store, clock):
        await issuer.issue(EMAIL)
        before = await store.get_resend_counter(EMAIL)
        clock.advance(31)
        failing = MFAIssuer(store, FailingNotifier(), clock=clock)
        with pytest.raises(NotificationFailedError):
            await failing.issue(EMAIL)
        after = await store.get_resend_counter(EMAIL)
        assert after == before

    async def test_notifier_timeout_is_failure(self, store, clock):
        issuer = MFAIssuer(
            store, HangingNotifier(), notify_timeout_seconds=0.01, clock=clock
        )
        with pytest.raises(NotificationFailedError):
            await issuer.issue(EMAIL)
        assert await store.get_mfa_record(EMAIL) is None

    async def test_storage_failure_releases_reservation(self, store, notifier, clock):
        store.replace_mfa_record = AsyncMock(side_effect=StorageUnavailableError())
        issuer = MFAIssuer(store, notifier, clock=clock)
        with pytest.raises(StorageUnavailableError):
            await issuer.issue(EMAIL)
        assert await store.get_resend_counter(EMAIL) is None
        assert not notifier.outbox

    async def test_concurrent_issue_delivers_once(self, issuer, notifier):
        results = await asyncio.gather(
            issuer.issue(EMAIL), issuer.issue(EMAIL), return_exceptions=True
        )
        delivered = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, CooldownActiveError)]
        assert len(delivered) == 1
        assert len(refused) == 1
        assert len(notifier.outbox) == 1


class TestVerification:
    """Tests for MFAVerifier.verify."""

    @pytest.fixture
    def fixed_issuer(self, store, notifier, clock):
        return MFAIssuer(store, notifier, clock=clock, code_factory=lambda digits: "123456")

    async def test_correct_code_verifies_and_is_consumed(self, fixed_issuer, verifier, store):
        await fixed_issuer.issue(EMAIL)
        await verifier.verify(EMAIL, "123456")
        assert await store.get_mfa_record(EMAIL) is None
        with pytest.raises(NoPendingCodeError):
            await verifier.verify(EMAIL, "123456")

    async def test_success_clears_resend_counter(self, fixed_issuer, verifier, store):
        await fixed_issuer.issue(EMAIL)
        await verifier.verify(EMAIL, "123456")
        assert await store.get_resend_counter(EMAIL) is None

    async def test_no_code_issued(self, verifier):
        with pytest.raises(NoPendingCodeError):
            await verifier.verify(EMAIL, "123456")

    async def test_wrong_code_keeps_record(self, fixed_issuer, verifier, store):
        await fixed_issuer.issue(EMAIL)
        with pytest.raises(CodeMismatchError):
            await verifier.verify(EMAIL, "654321")
        assert await store.get_mfa_record(EMAIL) is not None
        await verifier.verify(EMAIL, "123456")

    @pytest.mark.parametrize("submitted", ["", "12345", "1234567", "12345a", "١٢٣٤٥٦", None])
    async def test_malformed_codes_mismatch(self, fixed_issuer, verifier, submitted):
        await fixed_issuer.issue(EMAIL)
        with pytest.raises(CodeMismatchError):
            await verifier.verify(EMAIL, submitted)

    async def test_surrounding_whitespace_is_ignored(self, fixed_issuer, verifier):
        await fixed_issuer.issue(EMAIL)
        await verifier.verify(EMAIL, " 123456 ")

    async def test_code_expires_after_ten_minutes(self, fixed_issuer, verifier, store, clock):
        await fixed_issuer.issue(EMAIL)
        clock.advance(601)
        with pytest.raises(CodeExpiredError):
            await verifier.verify(EMAIL, "123456")
        assert await store.get_mfa_record(EMAIL) is None

    async def test_code_valid_at_expiry_instant(self, fixed_issuer, verifier, clock):
        await fixed_issuer.issue(EMAIL)
        clock.advance(600)
        await verifier.verify(EMAIL, "123456")

    async def test_only_latest_code_verifies(self, store, notifier, clock, verifier):
        issuer = MFAIssuer(store, notifier, clock=clock, code_factory=CountingCodes())
        await issuer.issue(EMAIL)
        clock.advance(31)
        await issuer.issue(EMAIL)
        with pytest.raises(CodeMismatchError):
            await verifier.verify(EMAIL, "100001")
        await verifier.verify(EMAIL, "100002")

    async def test_concurrent_verify_succeeds_once(self, fixed_issuer, verifier):
        await fixed_issuer.issue(EMAIL)
        results = await asyncio.gather(
            verifier.verify(EMAIL, "123456"),
            verifier.verify(EMAIL, "123456"),
            return_exceptions=True,
        )
        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, NoPendingCodeError)) == 1
