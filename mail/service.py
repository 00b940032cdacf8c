"""
mail/service.py -- SMTP email delivery for account and security notices.

When SMTP_HOST is empty the service runs in log-only dev mode: each message is
logged (recipient redacted, body preview included so verification links can be
copied from the console) and reported as sent.

Every send_* method returns True on success and False on a delivery failure it
could classify. Callers in auth/ treat all notification sends as best-effort
and never let a mail failure abort the operation that triggered it.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from core.config import Settings

logger = logging.getLogger("authgate.mail")


def _redact_email(email: str) -> str:
    """Redact an email address for logging: 'alice@example.com' -> 'al***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _fmt_time(when: datetime | None) -> str:
    return when.strftime("%Y-%m-%d %H:%M UTC") if when else "just now"


class EmailService:
    """Transactional email sender.

    Usage:
        mailer = EmailService.from_settings(get_settings())
        mailer.send_verification_email("a@example.com", "Alice", token)
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_address: str = "noreply@example.com",
        from_name: str = "AuthGate",
        app_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            app_url=settings.app_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_address)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "Email (dev mode, not sent) to=%s subject=%r body=%r",
                _redact_email(to_email),
                subject,
                text_body[:300],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(f"<pre>{html.escape(text_body)}</pre>", "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP authentication failed for %s: %s", self.smtp_user, exc)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("SMTP recipient refused: %s", _redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error("Email to %s failed (%s): %s", _redact_email(to_email), type(exc).__name__, exc)
            return False

        logger.info("Email sent to=%s subject=%r", _redact_email(to_email), subject)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_verification_email(self, to_email: str, name: str, token: str) -> bool:
        link = f"{self.app_url}/verify-email?token={token}"
        body = (
            f"Hi {name or 'there'},\n\n"
            f"Confirm your email address for {self.from_name} by opening this link:\n\n"
            f"{link}\n\n"
            "If you did not create an account, you can ignore this message."
        )
        return self._send(to_email, "Verify your email address", body)

    def send_password_reset_email(self, to_email: str, name: str, token: str) -> bool:
        link = f"{self.app_url}/reset-password?token={token}"
        body = (
            f"Hi {name or 'there'},\n\n"
            "Someone asked to reset the password on your account. To choose a new one, open:\n\n"
            f"{link}\n\n"
            "The link expires in one hour. If this was not you, ignore this message; "
            "your password has not changed."
        )
        return self._send(to_email, "Reset your password", body)

    def send_welcome_email(self, to_email: str, name: str) -> bool:
        body = f"Hi {name or 'there'},\n\nWelcome to {self.from_name}. Your account is ready.\n\n{self.app_url}"
        return self._send(to_email, f"Welcome to {self.from_name}", body)

    def send_login_notification(
        self, to_email: str, name: str, ip_address: str, location: str, device: str, when: datetime | None = None
    ) -> bool:
        body = (
            f"Hi {name or 'there'},\n\n"
            "We noticed a sign-in to your account from a new device or location.\n\n"
            f"  Time:     {_fmt_time(when)}\n"
            f"  Device:   {device}\n"
            f"  Location: {location}\n"
            f"  IP:       {ip_address}\n\n"
            "If this was you, no action is needed. Otherwise, change your password now."
        )
        return self._send(to_email, "New sign-in to your account", body)

    def send_password_changed_email(
        self, to_email: str, name: str, ip_address: str, when: datetime | None = None
    ) -> bool:
        body = (
            f"Hi {name or 'there'},\n\n"
            f"The password on your account was changed at {_fmt_time(when)} from {ip_address or 'an unknown address'}.\n\n"
            "All other sessions have been signed out. If you did not do this, reset your password immediately."
        )
        return self._send(to_email, "Your password was changed", body)

    def send_account_locked_email(self, to_email: str, name: str, unlock_at: datetime, reason: str) -> bool:
        body = (
            f"Hi {name or 'there'},\n\n"
            f"Your account has been temporarily locked: {reason}.\n\n"
            f"It will unlock automatically at {_fmt_time(unlock_at)}. "
            "If these attempts were not yours, reset your password once the lock expires."
        )
        return self._send(to_email, "Your account has been locked", body)

    def send_suspicious_activity_email(
        self,
        to_email: str,
        name: str,
        activity: str,
        ip_address: str,
        location: str,
        when: datetime | None = None,
    ) -> bool:
        body = (
            f"Hi {name or 'there'},\n\n"
            "We detected unusual activity on your account.\n\n"
            f"  Activity: {activity}\n"
            f"  Time:     {_fmt_time(when)}\n"
            f"  Location: {location}\n"
            f"  IP:       {ip_address}\n\n"
            "If this was not you, change your password and sign out all sessions."
        )
        return self._send(to_email, "Unusual activity on your account", body)
