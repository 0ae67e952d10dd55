"""
auth/notifier.py -- Outbound email for MFA codes, resets, verification and invites.

Every send runs in a FastAPI BackgroundTask after the response has been
built, so a slow or failing SMTP server never delays or fails the request
that triggered it. Failures are logged and reported as False.

With no SMTP_HOST configured the notifier runs in dev mode: messages are
logged (recipient redacted) instead of sent. Raw codes and tokens are never
logged in either mode.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage

from core.config import Settings, get_settings

logger = logging.getLogger("tenantgate.auth.notifier")


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.sent_count = 0

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.mail_from)

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("Email (dev mode) to %s: %s", redact_email(to_email), subject)
            self.sent_count += 1
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.mail_from
        msg["To"] = to_email
        msg.set_content(body)

        s = self.settings
        context = ssl.create_default_context()
        try:
            if s.smtp_use_tls:
                with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if s.smtp_user and s.smtp_password:
                        server.login(s.smtp_user, s.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=30) as server:
                    if s.smtp_user and s.smtp_password:
                        server.login(s.smtp_user, s.smtp_password)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Email to %s failed (%s): %s", redact_email(to_email), type(exc).__name__, exc
            )
            return False

        logger.info("Email sent to %s: %s", redact_email(to_email), subject)
        self.sent_count += 1
        return True

    def send_mfa_code(self, to_email: str, code: str, expires_in_minutes: int) -> bool:
        return self._send(
            to_email,
            "Your verification code",
            f"Your verification code is {code}.\n\n"
            f"It expires in {expires_in_minutes} minutes. If you did not try to sign in, "
            "change your password.\n",
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = f"{self.settings.app_base_url}/reset-password?token={token}"
        return self._send(
            to_email,
            "Reset your password",
            "We received a request to reset your password. Choose a new one here:\n\n"
            f"{url}\n\n"
            f"This link expires in {self.settings.password_reset_ttl_minutes} minutes. "
            "If you did not request it, ignore this email.\n",
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        url = f"{self.settings.app_base_url}/verify-email?token={token}"
        return self._send(
            to_email,
            "Verify your email address",
            f"Confirm your email address:\n\n{url}\n\n"
            f"This link expires in {self.settings.email_verification_ttl_hours} hours.\n",
        )

    def send_invite(self, to_email: str, token: str, company_name: str, *, existing_user: bool) -> bool:
        url = f"{self.settings.app_base_url}/accept-invite?token={token}"
        action = "Log in and accept" if existing_user else "Create your account"
        return self._send(
            to_email,
            f"You have been invited to {company_name}",
            f"You have been invited to join {company_name}.\n\n"
            f"{action} here:\n\n{url}\n\n"
            f"This invitation expires in {self.settings.invite_ttl_days} days.\n",
        )
