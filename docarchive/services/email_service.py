"""Out-of-band delivery of password reset secrets."""

from datetime import datetime
from typing import Protocol
from urllib.parse import urlencode

import aiosmtplib
import structlog

from docarchive.config import Settings

logger = structlog.get_logger(__name__)


class ResetNotifier(Protocol):
    async def send_password_reset(
        self, to_email: str, username: str, reset_token: str, expires_at: datetime
    ) -> bool: ...


class PasswordResetMailer:
    """Sends password reset links over SMTP."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_message(
        self, to_email: str, username: str, reset_token: str, expires_at: datetime
    ) -> str:
        link = f"{self.settings.reset_url_base}?{urlencode({'token': reset_token})}"
        body = (
            f"Hello {username},\n\n"
            f"A password reset was requested for your Document Archive account.\n"
            f"Use the link below to choose a new password:\n\n"
            f"{link}\n\n"
            f"The link expires at {expires_at.strftime('%Y-%m-%d %H:%M UTC')}.\n"
            f"If you did not request a reset you can ignore this message."
        )
        return (
            f"From: {self.settings.reset_email_from}\r\n"
            f"To: {to_email}\r\n"
            f"Subject: [Document Archive] Password reset\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"\r\n"
            f"{body}"
        )

    async def send_password_reset(
        self, to_email: str, username: str, reset_token: str, expires_at: datetime
    ) -> bool:
        """Send the reset link. Returns True on success, False on failure."""
        if not self.settings.reset_email_enabled:
            logger.warning("password_reset_email_disabled", to=to_email)
            return False

        message = self.build_message(to_email, username, reset_token, expires_at)

        try:
            await aiosmtplib.send(
                message,
                sender=self.settings.reset_email_from,
                recipients=[to_email],
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_username or None,
                password=self.settings.smtp_password or None,
                use_tls=self.settings.smtp_use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("password_reset_email_failed", to=to_email, error=str(e))
            return False

        logger.info("password_reset_email_sent", to=to_email)
        return True
