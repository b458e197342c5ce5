"""Tests for one-time code delivery."""

import smtplib
import time
from unittest.mock import MagicMock, patch

import pytest

from deskgate.service.email import ConsoleCodeNotifier, EmailCodeNotifier
from deskgate.service.errors import NotificationFailedError


@pytest.fixture
def notifier():
    return EmailCodeNotifier(
        smtp_host="smtp.example",
        smtp_port=587,
        smtp_user="desk",
        smtp_password="pw",
        from_email="desk@example.com",
        timeout_seconds=1,
    )


class TestEmailCodeNotifier:
    """Tests for SMTP delivery."""

    async def test_sends_code_over_starttls(self, notifier):
        server = MagicMock()
        with patch("deskgate.service.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = server
            await notifier.send_code("agent@desk.example", "042917", expires_in_seconds=600)

        smtp_cls.assert_called_once_with("smtp.example", 587, timeout=1)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("desk", "pw")
        from_addr, to_addr, message = server.sendmail.call_args.args
        assert from_addr == "desk@example.com"
        assert to_addr == "agent@desk.example"
        assert "042917" in message
        assert "10 minutes" in message

    async def test_smtp_failure_raises(self, notifier):
        with patch("deskgate.service.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.side_effect = smtplib.SMTPConnectError(421, "try later")
            with pytest.raises(NotificationFailedError):
                await notifier.send_code("agent@desk.example", "123456", expires_in_seconds=600)

    async def test_slow_smtp_times_out(self, notifier):
        notifier.timeout_seconds = 0.05

        def slow_send(*args):
            time.sleep(0.3)
            return True

        with patch.object(notifier, "_send_email", side_effect=slow_send):
            with pytest.raises(NotificationFailedError):
                await notifier.send_code("agent@desk.example", "123456", expires_in_seconds=600)

    async def test_unconfigured_notifier_fails(self):
        notifier = EmailCodeNotifier()
        assert notifier.is_configured is False
        with pytest.raises(NotificationFailedError):
            await notifier.send_code("agent@desk.example", "123456", expires_in_seconds=600)


class TestConsoleCodeNotifier:
    """Tests for the outbox notifier used in tests and local dev."""

    async def test_outbox_keeps_latest_code(self):
        notifier = ConsoleCodeNotifier()
        await notifier.send_code("a@desk.example", "111111", expires_in_seconds=600)
        await notifier.send_code("b@desk.example", "222222", expires_in_seconds=600)
        await notifier.send_code("a@desk.example", "333333", expires_in_seconds=600)
        assert notifier.last_code_for("a@desk.example") == "333333"
        assert notifier.last_code_for("c@desk.example") is None
        assert len(notifier.outbox) == 3

    async def test_outbox_keeps_only_recent_deliveries(self):
        notifier = ConsoleCodeNotifier(outbox_size=2)
        for n in range(5):
            await notifier.send_code("a@desk.example", f"00000{n}", expires_in_seconds=600)
        assert [d.code for d in notifier.outbox] == ["000003", "000004"]
        assert notifier.last_code_for("a@desk.example") == "000004"
