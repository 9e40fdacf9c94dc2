"""Email rendering, provider delivery and the per-recipient cap."""

import json
from unittest.mock import AsyncMock, patch

import aiosmtplib
import httpx
import pytest

from leornian.email.service import EmailService, ResendProvider, SMTPProvider
from leornian.email.templates import password_reset, verify_email, welcome


class RecordingProvider:
    def __init__(self, result: bool = True) -> None:
        self.sent: list[tuple[str, str, str, str]] = []
        self.result = result

    async def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        self.sent.append((to_email, subject, html_body, text_body))
        return self.result


class FakeRedis:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> None:
        self.expiries[key] = seconds


class TestTemplates:
    def test_verify_email(self):
        subject, html_body, text_body = verify_email("Alice", "https://app.example.com/verify?token=abc", 24)
        assert "Verify" in subject
        assert "https://app.example.com/verify?token=abc" in text_body
        assert "24 hours" in text_body
        assert "Hi Alice," in html_body

    def test_names_are_escaped(self):
        _, html_body, _ = welcome("<script>alert(1)</script>", "https://app.example.com")
        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body

    def test_urls_are_escaped_in_html(self):
        _, html_body, text_body = password_reset(None, 'https://x.example.com/?a=1&b="2"', 60)
        assert "&amp;b=&quot;2&quot;" in html_body
        assert 'a=1&b="2"' in text_body
        assert "Hi there," in text_body


class TestEmailService:
    async def test_send_template_renders_and_sends(self):
        provider = RecordingProvider()
        service = EmailService(provider=provider)
        ok = await service.send_template(
            to="bob@example.com",
            template_name="password_reset",
            context={"name": "Bob", "reset_url": "https://app/reset?token=t", "expires_minutes": 60},
        )
        assert ok is True
        to, subject, _, text_body = provider.sent[0]
        assert to == "bob@example.com"
        assert subject == "Reset your Leornian password"
        assert "https://app/reset?token=t" in text_body

    async def test_unknown_template(self):
        service = EmailService(provider=RecordingProvider())
        with pytest.raises(ValueError, match="Unknown template"):
            await service.send_template(to="a@example.com", template_name="nope", context={})

    async def test_recipient_cap(self):
        provider = RecordingProvider()
        redis = FakeRedis()
        service = EmailService(provider=provider, redis=redis)
        results = [await service.send_email("cap@example.com", "s", "<p>h</p>", "t") for _ in range(6)]
        assert results == [True] * 5 + [False]
        assert len(provider.sent) == 5
        assert list(redis.expiries.values()) == [EmailService.RATE_LIMIT_WINDOW]

    async def test_cap_key_hides_address(self):
        redis = FakeRedis()
        service = EmailService(provider=RecordingProvider(), redis=redis)
        await service.send_email("Private@Example.com", "s", "h", "t")
        (key,) = redis.counts
        assert "private" not in key.lower()


class TestResendProvider:
    async def test_posts_message(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        provider = ResendProvider("re_key", "noreply@leornian.app", "Leornian", transport=httpx.MockTransport(handler))
        assert await provider.send("c@example.com", "Subject", "<p>h</p>", "t") is True
        body = json.loads(captured[0].content)
        assert captured[0].headers["Authorization"] == "Bearer re_key"
        assert body["from"] == "Leornian <noreply@leornian.app>"
        assert body["to"] == ["c@example.com"]

    async def test_api_error_returns_false(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        provider = ResendProvider("re_key", "noreply@leornian.app", "Leornian", transport=transport)
        assert await provider.send("c@example.com", "s", "h", "t") is False

    async def test_missing_key_returns_false(self):
        provider = ResendProvider("", "noreply@leornian.app", "Leornian")
        assert await provider.send("c@example.com", "s", "h", "t") is False


class TestSMTPProvider:
    def _provider(self) -> SMTPProvider:
        return SMTPProvider("smtp.example.com", 587, "user", "pass", "noreply@leornian.app", "Leornian")

    async def test_sends_multipart(self):
        with patch("leornian.email.service.aiosmtplib.send", new=AsyncMock()) as send:
            assert await self._provider().send("d@example.com", "Hello", "<p>h</p>", "t") is True
        message = send.await_args.args[0]
        assert message["To"] == "d@example.com"
        assert message["From"] == "Leornian <noreply@leornian.app>"
        assert send.await_args.kwargs["start_tls"] is True

    async def test_smtp_failure_returns_false(self):
        failing = AsyncMock(side_effect=aiosmtplib.SMTPException("boom"))
        with patch("leornian.email.service.aiosmtplib.send", new=failing):
            assert await self._provider().send("d@example.com", "Hello", "<p>h</p>", "t") is False
