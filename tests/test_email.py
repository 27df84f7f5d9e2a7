import aiosmtplib
import pytest

from app.core import email as email_module
from app.core.config import settings
from app.core.email import (
    build_unsubscribe_url, render_campaign_email, render_welcome_email, send_email, send_welcome_email
)


@pytest.fixture(name="smtp_configured")
def smtp_configured_fixture(monkeypatch):
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
    monkeypatch.setattr(settings, "EMAIL_FROM", "news@example.com")


class TestUnsubscribeUrl:
    def test_email_is_url_encoded(self):
        url = build_unsubscribe_url("a+b@example.com", "abc123", "https://mwm.test")
        assert url == "https://mwm.test/newsletter/unsubscribe?email=a%2Bb%40example.com&token=abc123"

    def test_defaults_to_client_url(self):
        url = build_unsubscribe_url("a@example.com", "t")
        assert url.startswith(f"{settings.CLIENT_URL}/newsletter/unsubscribe?")


class TestRendering:
    def test_arabic_campaign_is_rtl(self):
        html = render_campaign_email(
            locale="ar",
            subject="نشرة",
            content="<p>مرحبا</p>",
            unsubscribe_url="https://mwm.test/u",
            preheader="أخبار"
        )
        assert 'dir="rtl"' in html
        assert 'lang="ar"' in html
        assert "<p>مرحبا</p>" in html
        assert "أخبار" in html
        assert "إلغاء الاشتراك" in html

    def test_english_campaign_is_ltr(self):
        html = render_campaign_email(
            locale="en",
            subject="News",
            content="<p>Hello</p>",
            unsubscribe_url="https://mwm.test/u",
            name="Sam"
        )
        assert 'dir="ltr"' in html
        assert "Hi Sam," in html
        assert "Unsubscribe" in html

    def test_name_is_escaped(self):
        html = render_welcome_email("en", "https://mwm.test/u", name="<b>Eve</b>")
        assert "<b>Eve</b>" not in html
        assert "&lt;b&gt;Eve&lt;/b&gt;" in html


class TestSendEmail:
    @pytest.mark.asyncio
    async def test_unconfigured_smtp_returns_false(self, monkeypatch):
        monkeypatch.setattr(settings, "SMTP_HOST", None)
        assert await send_email("a@example.com", "Subject", "<p>Hi</p>") is False

    @pytest.mark.asyncio
    async def test_accepted(self, monkeypatch, smtp_configured):
        sent = []

        async def fake_send(message, **kwargs):
            sent.append((message, kwargs))

        monkeypatch.setattr(email_module.aiosmtplib, "send", fake_send)

        assert await send_email("a@example.com", "Subject", "<p>Hi</p>") is True
        message, kwargs = sent[0]
        assert message["To"] == "a@example.com"
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["start_tls"] is True

    @pytest.mark.asyncio
    async def test_connection_errors_propagate(self, monkeypatch, smtp_configured):
        async def fake_send(message, **kwargs):
            raise aiosmtplib.SMTPConnectError("connection refused")

        monkeypatch.setattr(email_module.aiosmtplib, "send", fake_send)

        with pytest.raises(aiosmtplib.SMTPConnectError):
            await send_email("a@example.com", "Subject", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_temporary_reply_propagates(self, monkeypatch, smtp_configured):
        async def fake_send(message, **kwargs):
            raise aiosmtplib.SMTPResponseException(451, "try again later")

        monkeypatch.setattr(email_module.aiosmtplib, "send", fake_send)

        with pytest.raises(aiosmtplib.SMTPResponseException):
            await send_email("a@example.com", "Subject", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_permanent_reply_returns_false(self, monkeypatch, smtp_configured):
        async def fake_send(message, **kwargs):
            raise aiosmtplib.SMTPResponseException(550, "mailbox unavailable")

        monkeypatch.setattr(email_module.aiosmtplib, "send", fake_send)

        assert await send_email("a@example.com", "Subject", "<p>Hi</p>") is False


class TestWelcomeEmail:
    @pytest.mark.asyncio
    async def test_uses_locale_and_mailer(self, mailer):
        assert await send_welcome_email(
            "w@example.com", "tok", locale="en", name="Wes", mailer=mailer, client_url="https://mwm.test"
        ) is True

        message = mailer.sent_to("w@example.com")[0]
        assert message["subject"] == "Welcome to our Newsletter - MWM"
        assert "https://mwm.test/newsletter/unsubscribe?email=w%40example.com&amp;token=tok" in message["html_content"]
