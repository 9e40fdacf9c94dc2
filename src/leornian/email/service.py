"""
Email service with provider abstraction.

Supports the Resend API (default) and SMTP. Provider is selected via
configuration.
"""

from __future__ import annotations

import hashlib
import ssl
from abc import ABC, abstractmethod
from collections.abc import Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

import aiosmtplib
import httpx
import structlog

from leornian.config import get_settings
from leornian.email.templates import password_changed, password_reset, verify_email, welcome

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger()

_TEMPLATE_REGISTRY: dict[str, Callable[..., tuple[str, str, str]]] = {
    "verify_email": lambda ctx: verify_email(
        ctx.get("name"),
        ctx.get("verify_url", ""),
        int(ctx.get("expires_hours", 24)),
    ),
    "password_reset": lambda ctx: password_reset(
        ctx.get("name"),
        ctx.get("reset_url", ""),
        int(ctx.get("expires_minutes", 60)),
    ),
    "password_changed": lambda ctx: password_changed(ctx.get("name")),
    "welcome": lambda ctx: welcome(ctx.get("name"), ctx.get("app_url", "")),
}


class BaseEmailProvider(ABC):
    """Abstract base class for email delivery providers."""

    @abstractmethod
    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email. Returns True on success."""
        ...


class SMTPProvider(BaseEmailProvider):
    """Send emails via SMTP using aiosmtplib."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = f"{from_name} <{from_address}>"
        self.use_tls = use_tls

    def _build_message(self, to_email: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send via SMTP with STARTTLS when enabled."""
        try:
            await aiosmtplib.send(
                self._build_message(to_email, subject, html_body, text_body),
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
                tls_context=ssl.create_default_context() if self.use_tls else None,
            )
        except (aiosmtplib.SMTPException, OSError):
            logger.exception("email_send_failed", to=to_email, provider="smtp")
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider="smtp")
        return True


class ResendProvider(BaseEmailProvider):
    """Send emails via the Resend HTTP API."""

    API_URL = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender = f"{from_name} <{from_address}>"
        self._transport = transport

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """POST the message to Resend."""
        if not self.api_key:
            logger.warning("email_provider_not_configured", provider="resend", to=to_email)
            return False
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
                response = await client.post(
                    self.API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from": self.sender,
                        "to": [to_email],
                        "subject": subject,
                        "html": html_body,
                        "text": text_body,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("email_send_failed", to=to_email, provider="resend")
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider="resend")
        return True


def _create_provider() -> BaseEmailProvider:
    """Create email provider based on configuration."""
    settings = get_settings()
    provider_name = settings.email_provider.lower()

    if provider_name == "smtp":
        return SMTPProvider(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            use_tls=settings.smtp_use_tls,
        )
    if provider_name == "resend":
        return ResendProvider(
            api_key=settings.resend_api_key,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    msg = f"Unsupported email provider: {provider_name}"
    raise ValueError(msg)


class EmailService:
    """Template rendering plus an optional per-recipient hourly cap backed by Redis."""

    RATE_LIMIT_MAX = 5
    RATE_LIMIT_WINDOW = 3600

    def __init__(
        self,
        provider: BaseEmailProvider | None = None,
        redis: Redis | None = None,
    ) -> None:
        self.provider = provider or _create_provider()
        self._redis = redis

    async def _check_rate_limit(self, email: str) -> bool:
        """Check if we can send another email to this address."""
        if self._redis is None:
            return True
        key = f"email_rate:{hashlib.sha256(email.lower().encode()).hexdigest()}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, self.RATE_LIMIT_WINDOW)
        return int(count) <= self.RATE_LIMIT_MAX

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """
        Send an email subject to the per-recipient cap.

        Returns True if sent, False if rate limited or failed.
        """
        if not await self._check_rate_limit(to):
            logger.warning("email_rate_limited", subject=subject)
            return False
        return await self.provider.send(to, subject, html_body, text_body)

    async def send_template(self, to: str, template_name: str, context: dict[str, Any]) -> bool:
        """
        Render a registered template and send it.

        Raises:
            ValueError: If the template name is unknown.
        """
        render = _TEMPLATE_REGISTRY.get(template_name)
        if render is None:
            msg = f"Unknown template: {template_name}"
            raise ValueError(msg)
        subject, html_body, text_body = render(context)
        return await self.send_email(to, subject, html_body, text_body)

