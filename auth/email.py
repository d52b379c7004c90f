"""
auth/email.py -- Outbound email collaborator for password-reset links.

The core only depends on the EmailSender protocol. Two implementations:
  SmtpEmailSender    -- smtplib with STARTTLS, used when SMTP_HOST is set.
  LoggingEmailSender -- dev/test fallback. Logs a redacted recipient and
                        keeps messages in an in-memory outbox instead of
                        sending them. The reset link is never logged.

Delivery failures are logged and reported as False. They never reach the
caller of request_reset(), whose response must not depend on whether the
address exists or the mail went out.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authcore.email")

_RESET_SUBJECT = "Reset your password"


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    body: str


class EmailSender(Protocol):
    def send_password_reset(self, to_email: str, name: str, reset_url: str, expires_minutes: int) -> bool: ...


def _reset_body(name: str, reset_url: str, expires_minutes: int) -> str:
    return (
        f"Hello {name},\n\n"
        "We received a request to reset the password for your account.\n"
        f"Use the link below within {expires_minutes} minutes to choose a new password:\n\n"
        f"{reset_url}\n\n"
        "If you did not request this, you can ignore this message. Your password will not change.\n"
    )


class LoggingEmailSender:
    """Keeps messages in memory instead of sending them (dev mode, tests)."""

    def __init__(self, max_outbox: int = 100) -> None:
        self.outbox: deque[OutboundEmail] = deque(maxlen=max_outbox)

    def send_password_reset(self, to_email: str, name: str, reset_url: str, expires_minutes: int) -> bool:
        body = _reset_body(name, reset_url, expires_minutes)
        self.outbox.append(OutboundEmail(to=to_email, subject=_RESET_SUBJECT, body=body))
        logger.info("Email (dev mode, not sent) to=%s subject=%r", redact_email(to_email), _RESET_SUBJECT)
        return True


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.use_tls = use_tls
        self.from_email = from_email or user
        self.timeout = timeout

    def send_password_reset(self, to_email: str, name: str, reset_url: str, expires_minutes: int) -> bool:
        msg = EmailMessage()
        msg["Subject"] = _RESET_SUBJECT
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.set_content(_reset_body(name, reset_url, expires_minutes))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.user:
                    smtp.login(self.user, self._password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send reset email to %s", redact_email(to_email))
            return False
        logger.info("Reset email sent to %s", redact_email(to_email))
        return True


def build_email_sender(settings: Settings) -> EmailSender:
    """Return an SMTP sender when SMTP_HOST is configured, otherwise the logging fallback."""
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- reset emails will be logged, not sent")
        return LoggingEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
    )
