"""
Tests for email delivery providers.
"""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest
import respx

from app.services.email_service import EmailMessage, EmailProvider, EmailService

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
MAILGUN_URL = "https://api.mailgun.net/v3/mg.example.com/messages"


@pytest.fixture
def message():
    return EmailMessage(
        to=["billing@acme.example"],
        subject="Invoice INV-00001 from Owner Studio",
        body_text="Please find your invoice attached.",
        body_html="<p>Please find your invoice attached.</p>",
        attachments=[{"filename": "INV-00001.pdf", "content": b"%PDF-1.4", "mime_type": "application/pdf"}],
    )


@pytest.fixture
def sendgrid_service():
    service = EmailService()
    service.provider = EmailProvider.SENDGRID
    service.sendgrid_api_key = "SG.test-key"
    return service


@pytest.fixture
def mailgun_service():
    service = EmailService()
    service.provider = EmailProvider.MAILGUN
    service.mailgun_api_key = "key-test"
    service.mailgun_domain = "mg.example.com"
    return service


class TestProviderSelection:

    def test_missing_credentials_fall_back_to_mock(self):
        service = EmailService()
        service.provider = EmailProvider.SENDGRID
        service.sendgrid_api_key = None
        assert service._determine_provider() == EmailProvider.MOCK

    def test_mailgun_needs_domain(self, mailgun_service):
        mailgun_service.mailgun_domain = None
        assert mailgun_service._determine_provider() == EmailProvider.MOCK

    @pytest.mark.asyncio
    async def test_mock_provider_reports_delivery(self, message):
        service = EmailService()
        service.provider = EmailProvider.MOCK
        assert await service.send_email(message) is True


class TestSendGrid:

    @pytest.mark.asyncio
    @respx.mock
    async def test_accepted(self, sendgrid_service, message):
        route = respx.post(SENDGRID_URL).mock(return_value=httpx.Response(202))

        assert await sendgrid_service.send_email(message) is True

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer SG.test-key"
        payload = json.loads(request.content)
        assert payload["attachments"][0]["filename"] == "INV-00001.pdf"
        assert payload["personalizations"][0]["to"] == [{"email": "billing@acme.example"}]

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_status_returns_false(self, sendgrid_service, message):
        respx.post(SENDGRID_URL).mock(return_value=httpx.Response(500, text="boom"))
        assert await sendgrid_service.send_email(message) is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_never_raises(self, sendgrid_service, message):
        respx.post(SENDGRID_URL).mock(side_effect=httpx.ConnectError("unreachable"))
        assert await sendgrid_service.send_email(message) is False


class TestMailgun:

    @pytest.mark.asyncio
    @respx.mock
    async def test_sent(self, mailgun_service, message):
        route = respx.post(MAILGUN_URL).mock(return_value=httpx.Response(200, json={"id": "<1@mg>"}))

        assert await mailgun_service.send_email(message) is True
        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected(self, mailgun_service, message):
        respx.post(MAILGUN_URL).mock(return_value=httpx.Response(401))
        assert await mailgun_service.send_email(message) is False


class TestSmtp:

    @pytest.mark.asyncio
    async def test_smtp_failure_returns_false(self, message):
        service = EmailService()
        service.provider = EmailProvider.SMTP
        service.smtp_host = "smtp.example.com"

        with patch("app.services.email_service.smtplib.SMTP", side_effect=OSError("refused")):
            assert await service.send_email(message) is False


class TestTemplates:

    @pytest.mark.asyncio
    async def test_invoice_email_attaches_pdf(self):
        service = EmailService()
        captured = []

        async def capture(msg):
            captured.append(msg)
            return True

        with patch.object(service, "send_email", side_effect=capture):
            sent = await service.send_invoice_email(
                to_email="billing@acme.example",
                client_name="Acme Corp",
                sender_name="Owner Studio",
                invoice_number="INV-00007",
                amount=Decimal("1250.5"),
                currency="USD",
                due_date=date(2024, 3, 1),
                view_url="http://localhost:8000/public/invoices/abc",
                pdf_bytes=b"%PDF-1.4",
            )

        assert sent is True
        msg = captured[0]
        assert msg.subject == "Invoice INV-00007 from Owner Studio"
        assert "USD 1,250.50" in msg.body_text
        assert "March 01, 2024" in msg.body_text
        assert msg.attachments[0]["filename"] == "INV-00007.pdf"
