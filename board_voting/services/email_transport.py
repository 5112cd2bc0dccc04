"""
Email transports: the last hop of summary delivery.

The dispatch service only relies on ``send(address, message)`` returning
``(success, error_message)``. Transports do not retry; retries, timeouts
and bookkeeping belong to the dispatcher.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage

import aiosmtplib

from ..core.config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class EmailConfig:
    """Email delivery configuration."""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = "notifications@boardvoting.local"
    from_name: str = "Board Voting"
    use_tls: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailConfig":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            use_tls=settings.smtp_use_tls,
        )


@dataclass(frozen=True)
class RenderedEmail:
    """One recipient's personalized message."""
    subject: str
    text_body: str
    html_body: str


# =============================================================================
# TRANSPORTS
# =============================================================================


class EmailTransport(ABC):
    """Abstract base for email delivery."""

    name: str = "base"

    @abstractmethod
    async def send(self, address: str, message: RenderedEmail) -> tuple[bool, str | None]:
        """
        Deliver one message.

        Returns:
            (success, error_message)
        """
        pass


class LoggingEmailTransport(EmailTransport):
    """Logs messages instead of sending them (development)."""

    name = "log"

    async def send(self, address: str, message: RenderedEmail) -> tuple[bool, str | None]:
        logger.info(f"[EMAIL] To: {address}, Subject: {message.subject}")
        return True, None


class SmtpEmailTransport(EmailTransport):
    """SMTP delivery through aiosmtplib."""

    name = "smtp"

    def __init__(self, config: EmailConfig, timeout: float = 30.0):
        self._config = config
        self._timeout = timeout

    def _build(self, address: str, message: RenderedEmail) -> EmailMessage:
        email = EmailMessage()
        email["From"] = f"{self._config.from_name} <{self._config.from_email}>"
        email["To"] = address
        email["Subject"] = message.subject
        email.set_content(message.text_body)
        email.add_alternative(message.html_body, subtype="html")
        return email

    async def send(self, address: str, message: RenderedEmail) -> tuple[bool, str | None]:
        try:
            await aiosmtplib.send(
                self._build(address, message),
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                username=self._config.smtp_user or None,
                password=self._config.smtp_password or None,
                start_tls=self._config.use_tls,
                timeout=self._timeout,
            )
            return True, None
        except (aiosmtplib.SMTPException, OSError) as e:
            error_msg = f"Failed to send email: {str(e)}"
            logger.error(error_msg)
            return False, error_msg


def build_email_transport(settings: Settings) -> EmailTransport:
    if settings.smtp_enabled:
        return SmtpEmailTransport(
            EmailConfig.from_settings(settings),
            timeout=settings.email_send_timeout_seconds,
        )
    return LoggingEmailTransport()
