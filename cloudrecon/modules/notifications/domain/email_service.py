"""
SMTP email notifications.

Used by the deletion audit on threshold breach and by the ``notify`` command.
Delivery failures raise TransportError; callers decide whether that is fatal.
"""

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cloudrecon.shared.core.config import Settings
from cloudrecon.shared.core.exceptions import ConfigurationError, TransportError

logger = structlog.get_logger()

_SMTP_SSL_PORT = 465


class EmailMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    to: List[str] = Field(..., min_length=1)
    subject: str = Field(..., min_length=1, max_length=998)
    body: str = ""

    @field_validator("to", mode="before")
    @classmethod
    def split_recipients(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [str(item).strip() for item in v if str(item).strip()]
        return v

    @field_validator("to")
    @classmethod
    def validate_addresses(cls, v: List[str]) -> List[str]:
        for address in v:
            local, sep, domain = address.rpartition("@")
            if not sep or not local or "." not in domain:
                raise ValueError(f"invalid email address: {address}")
        return v

    @field_validator("subject")
    @classmethod
    def single_line_subject(cls, v: str) -> str:
        if "\r" in v or "\n" in v:
            raise ValueError("subject must be a single line")
        return v


class EmailService:
    """Plain-text SMTP sender (STARTTLS on submission ports, implicit TLS on 465)."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        from_email: str,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        if not settings.SMTP_HOST:
            raise ConfigurationError("SMTP_HOST is required to send email")
        return cls(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=(
                settings.SMTP_PASSWORD.get_secret_value() if settings.SMTP_PASSWORD else None
            ),
            from_email=settings.SMTP_FROM,
            use_tls=settings.SMTP_USE_TLS,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    def _build(self, message: EmailMessage) -> MIMEText:
        mime = MIMEText(message.body, "plain", "utf-8")
        mime["Subject"] = message.subject
        mime["From"] = self.from_email
        mime["To"] = ", ".join(message.to)
        return mime

    def _deliver(self, message: EmailMessage) -> None:
        payload = self._build(message).as_string()
        context = ssl.create_default_context()
        if self.smtp_port == _SMTP_SSL_PORT:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, message.to, payload)
            return

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, message.to, payload)

    async def send(self, message: EmailMessage) -> None:
        try:
            await asyncio.to_thread(self._deliver, message)
        except Exception as e:
            logger.error(
                "email_send_failed",
                recipients=message.to,
                subject=message.subject,
                error=str(e),
            )
            raise TransportError(f"Email delivery via {self.smtp_host} failed: {e}") from e
        logger.info("email_sent", recipients=message.to, subject=message.subject)

    async def send_email(self, to: List[str], subject: str, body: str) -> None:
        await self.send(EmailMessage(to=to, subject=subject, body=body))
