from __future__ import annotations

import asyncio
import smtplib
import ssl
import threading
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional, Protocol

from deskgate.logging import get_logger, redact_email
from deskgate.service.errors import NotificationFailedError

logger = get_logger(__name__)

OUTBOX_SIZE = 100


class CodeNotifier(Protocol):
    async def send_code(self, email: str, code: str, *, expires_in_seconds: int) -> None: ...


class EmailCodeNotifier:
    """Delivers one-time sign-in codes over SMTP.

    smtplib is blocking, so each send runs in a worker thread under an overall
    deadline; a send that does not finish in time is reported as failed.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Service Desk",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.error("email_not_configured", to=redact_email(to_email))
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

    @staticmethod
    def _render_code_email(code: str, expires_minutes: int) -> tuple[str, str, str]:
        subject = "Your sign-in verification code"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verify your sign-in</h1>
        <p>Enter this code to finish signing in:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {expires_minutes} minutes and can be used once.</p>
        <p>If you didn't try to sign in, you can ignore this email and consider changing your password.</p>
    </div>
</body>
</html>
"""
        text_body = f"""Verify your sign-in

Enter this code to finish signing in: {code}

This code will expire in {expires_minutes} minutes and can be used once.

If you didn't try to sign in, you can ignore this email and consider changing your password.
"""
        return subject, html_body, text_body

    async def send_code(self, email: str, code: str, *, expires_in_seconds: int) -> None:
        expires_minutes = max(1, round(expires_in_seconds / 60))
        subject, html_body, text_body = self._render_code_email(code, expires_minutes)
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(self._send_email, email, subject, html_body, text_body),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "email_timeout", to=redact_email(email), timeout_seconds=self.timeout_seconds
            )
            raise NotificationFailedError() from exc
        if not sent:
            raise NotificationFailedError()


@dataclass(frozen=True)
class DeliveredCode:
    email: str
    code: str
    expires_in_seconds: int


class ConsoleCodeNotifier:
    """Keeps delivered codes in an outbox instead of sending mail.

    Only wired in TEST_MODE or the explicit development fallback; with
    ``reveal`` set the code is also written to the log for local sign-in.
    The outbox keeps the most recent ``outbox_size`` deliveries.
    """

    def __init__(self, *, reveal: bool = False, outbox_size: int = OUTBOX_SIZE) -> None:
        self.reveal = reveal
        self.outbox: Deque[DeliveredCode] = deque(maxlen=outbox_size)
        self._lock = threading.Lock()

    async def send_code(self, email: str, code: str, *, expires_in_seconds: int) -> None:
        with self._lock:
            self.outbox.append(
                DeliveredCode(email=email, code=code, expires_in_seconds=expires_in_seconds)
            )
        if self.reveal:
            logger.warning(
                "mfa_code_console_delivery",
                to=redact_email(email),
                dev_code=code,
                expires_in_seconds=expires_in_seconds,
            )
        else:
            logger.info("mfa_code_console_delivery", to=redact_email(email))

    def last_code_for(self, email: str) -> Optional[str]:
        with self._lock:
            for delivered in reversed(self.outbox):
                if delivered.email == email:
                    return delivered.code
        return None
