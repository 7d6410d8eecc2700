"""
Billforge - Email Service

Handles transactional invoice email sending.
Supports SendGrid, Mailgun, SMTP, or a logging mock for development.

send_email never raises: delivery problems are logged and reported as False.
"""

import asyncio
import base64
import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class EmailProvider:
    """Email provider types."""
    SMTP = "smtp"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    MOCK = "mock"


@dataclass
class EmailMessage:
    """Email message data structure."""
    to: List[str]
    subject: str
    body_text: str
    body_html: Optional[str] = None
    cc: Optional[List[str]] = None
    bcc: Optional[List[str]] = None
    reply_to: Optional[str] = None
    # [{"filename": str, "content": bytes, "mime_type": str}]
    attachments: Optional[List[Dict[str, Any]]] = None


def _money(amount: Decimal, currency: str) -> str:
    return f"{currency} {Decimal(amount):,.2f}"


def _fmt_date(value: date) -> str:
    return value.strftime("%B %d, %Y")


class EmailService:
    """Service for sending transactional emails."""

    def __init__(self):
        self.from_email = settings.email_from
        self.from_name = settings.mail_from_name
        self.provider = settings.email_provider
        self.timeout = settings.email_timeout_seconds

        # SMTP settings
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.mail_username
        self.smtp_password = settings.mail_password
        self.smtp_use_tls = settings.mail_use_tls

        # SendGrid settings
        self.sendgrid_api_key = settings.sendgrid_api_key

        # Mailgun settings
        self.mailgun_api_key = settings.mailgun_api_key
        self.mailgun_domain = settings.mailgun_domain

    def _determine_provider(self) -> str:
        """Use the configured provider when its credentials are present."""
        if self.provider == EmailProvider.SENDGRID and self.sendgrid_api_key:
            return EmailProvider.SENDGRID
        if self.provider == EmailProvider.MAILGUN and self.mailgun_api_key and self.mailgun_domain:
            return EmailProvider.MAILGUN
        if self.provider == EmailProvider.SMTP and self.smtp_host:
            return EmailProvider.SMTP
        return EmailProvider.MOCK

    async def send_email(self, message: EmailMessage) -> bool:
        """
        Send an email using the configured provider.
        """
        provider = self._determine_provider()

        try:
            if provider == EmailProvider.SENDGRID:
                return await self._send_via_sendgrid(message)
            elif provider == EmailProvider.MAILGUN:
                return await self._send_via_mailgun(message)
            elif provider == EmailProvider.SMTP:
                return await self._send_via_smtp(message)
            else:
                return await self._send_mock(message)
        except Exception as e:
            logger.error(f"Failed to send email via {provider}: {e}")
            return False

    async def _send_via_sendgrid(self, message: EmailMessage) -> bool:
        """Send email via SendGrid API."""
        url = "https://api.sendgrid.com/v3/mail/send"

        payload: Dict[str, Any] = {
            "personalizations": [
                {
                    "to": [{"email": email} for email in message.to],
                }
            ],
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.body_text},
            ],
        }

        if message.body_html:
            payload["content"].append({
                "type": "text/html",
                "value": message.body_html,
            })

        if message.cc:
            payload["personalizations"][0]["cc"] = [{"email": email} for email in message.cc]

        if message.bcc:
            payload["personalizations"][0]["bcc"] = [{"email": email} for email in message.bcc]

        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        if message.attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(attachment["content"]).decode("ascii"),
                    "filename": attachment["filename"],
                    "type": attachment.get("mime_type", "application/octet-stream"),
                    "disposition": "attachment",
                }
                for attachment in message.attachments
            ]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.sendgrid_api_key}",
                    "Content-Type": "application/json",
                },
            )

        if response.status_code in [200, 202]:
            logger.info(f"Email sent via SendGrid to {message.to}")
            return True
        logger.error(f"SendGrid API error: {response.status_code} - {response.text}")
        return False

    async def _send_via_mailgun(self, message: EmailMessage) -> bool:
        """Send email via Mailgun API."""
        url = f"https://api.mailgun.net/v3/{self.mailgun_domain}/messages"

        data: Dict[str, Any] = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": message.to,
            "subject": message.subject,
            "text": message.body_text,
        }

        if message.body_html:
            data["html"] = message.body_html
        if message.cc:
            data["cc"] = message.cc
        if message.bcc:
            data["bcc"] = message.bcc
        if message.reply_to:
            data["h:Reply-To"] = message.reply_to

        files = [
            ("attachment", (a["filename"], a["content"], a.get("mime_type", "application/octet-stream")))
            for a in (message.attachments or [])
        ]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                url,
                data=data,
                files=files or None,
                auth=("api", self.mailgun_api_key),
            )

        if response.status_code == 200:
            logger.info(f"Email sent via Mailgun to {message.to}")
            return True
        logger.error(f"Mailgun API error: {response.status_code} - {response.text}")
        return False

    def _build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart('mixed')
        msg['Subject'] = message.subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = ', '.join(message.to)

        if message.cc:
            msg['Cc'] = ', '.join(message.cc)
        if message.reply_to:
            msg['Reply-To'] = message.reply_to

        body = MIMEMultipart('alternative')
        body.attach(MIMEText(message.body_text, 'plain'))
        if message.body_html:
            body.attach(MIMEText(message.body_html, 'html'))
        msg.attach(body)

        for attachment in message.attachments or []:
            part = MIMEBase('application', 'octet-stream')
            part.set_payload(attachment['content'])
            encoders.encode_base64(part)
            part.add_header(
                'Content-Disposition',
                f'attachment; filename="{attachment["filename"]}"'
            )
            msg.attach(part)

        return msg

    def _smtp_send_blocking(self, message: EmailMessage) -> None:
        msg = self._build_mime(message)

        all_recipients = list(message.to)
        if message.cc:
            all_recipients.extend(message.cc)
        if message.bcc:
            all_recipients.extend(message.bcc)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.sendmail(self.from_email, all_recipients, msg.as_string())

    async def _send_via_smtp(self, message: EmailMessage) -> bool:
        """Send email via SMTP in a worker thread."""
        await asyncio.to_thread(self._smtp_send_blocking, message)
        logger.info(f"Email sent via SMTP to {message.to}")
        return True

    async def _send_mock(self, message: EmailMessage) -> bool:
        """Mock email sending for development."""
        logger.info(f"[MOCK EMAIL] To: {message.to} | Subject: {message.subject}")
        logger.debug(f"[MOCK EMAIL] Body: {message.body_text[:200]}...")
        return True

    # ===========================================
    # TRANSACTIONAL EMAIL TEMPLATES
    # ===========================================

    async def send_invoice_email(
        self,
        to_email: str,
        client_name: str,
        sender_name: str,
        invoice_number: str,
        amount: Decimal,
        currency: str,
        due_date: date,
        view_url: str,
        pdf_bytes: Optional[bytes] = None,
    ) -> bool:
        """Send an invoice to the client with the PDF attached."""
        subject = f"Invoice {invoice_number} from {sender_name}"

        body_html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #1a365d;">Invoice {invoice_number}</h2>
                <p>Dear {client_name},</p>
                <p>{sender_name} has sent you an invoice.</p>
                <table style="width: 100%; border-collapse: collapse; margin: 20px 0;">
                    <tr><td style="padding: 8px;">Amount Due</td><td style="padding: 8px; text-align: right;"><strong>{_money(amount, currency)}</strong></td></tr>
                    <tr><td style="padding: 8px;">Due Date</td><td style="padding: 8px; text-align: right;">{_fmt_date(due_date)}</td></tr>
                </table>
                <p>
                    <a href="{view_url}"
                       style="display: inline-block; background-color: #1a365d; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px;">
                        View Invoice
                    </a>
                </p>
                <p>Best regards,<br>{sender_name}</p>
            </div>
        </body>
        </html>
        """

        body_text = f"""
        Invoice {invoice_number}

        Dear {client_name},

        {sender_name} has sent you an invoice.

        Amount Due: {_money(amount, currency)}
        Due Date: {_fmt_date(due_date)}

        View online: {view_url}

        Best regards,
        {sender_name}
        """

        attachments = None
        if pdf_bytes:
            attachments = [{
                "filename": f"{invoice_number}.pdf",
                "content": pdf_bytes,
                "mime_type": "application/pdf",
            }]

        return await self.send_email(EmailMessage(
            to=[to_email],
            subject=subject,
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
        ))

    async def send_payment_confirmation(
        self,
        to_email: str,
        client_name: str,
        invoice_number: str,
        amount: Decimal,
        currency: str,
        balance_due: Decimal,
    ) -> bool:
        """Confirm a received payment to the client."""
        subject = f"Payment received for invoice {invoice_number}"

        body_text = f"""
        Dear {client_name},

        We have received your payment of {_money(amount, currency)} for invoice {invoice_number}.
        Remaining balance: {_money(balance_due, currency)}

        Thank you for your business.
        """

        return await self.send_email(EmailMessage(
            to=[to_email],
            subject=subject,
            body_text=body_text,
        ))

    async def send_payment_received_notice(
        self,
        to_email: str,
        owner_name: str,
        client_name: str,
        invoice_number: str,
        amount: Decimal,
        currency: str,
        fully_paid: bool,
    ) -> bool:
        """Tell the invoice owner a payment arrived."""
        state = "is now paid in full" if fully_paid else "is partially paid"
        subject = f"Payment of {_money(amount, currency)} received for {invoice_number}"

        body_text = f"""
        Hi {owner_name},

        {client_name} paid {_money(amount, currency)} against invoice {invoice_number}, which {state}.
        """

        return await self.send_email(EmailMessage(
            to=[to_email],
            subject=subject,
            body_text=body_text,
        ))

    async def send_overdue_reminder(
        self,
        to_email: str,
        client_name: str,
        sender_name: str,
        invoice_number: str,
        balance_due: Decimal,
        currency: str,
        due_date: date,
        days_overdue: int,
        view_url: str,
    ) -> bool:
        """Send overdue invoice reminder to the client."""
        subject = f"Reminder: invoice {invoice_number} is {days_overdue} day(s) overdue"

        body_html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #dc2626;">Payment Reminder</h2>
                <p>Dear {client_name},</p>
                <p>Invoice <strong>{invoice_number}</strong> from {sender_name} was due on {_fmt_date(due_date)}.</p>
                <p>Outstanding balance: <strong>{_money(balance_due, currency)}</strong></p>
                <p><a href="{view_url}">View and pay the invoice</a></p>
            </div>
        </body>
        </html>
        """

        body_text = f"""
        Payment Reminder

        Dear {client_name},

        Invoice {invoice_number} from {sender_name} was due on {_fmt_date(due_date)}
        and is {days_overdue} day(s) overdue.

        Outstanding balance: {_money(balance_due, currency)}

        View and pay: {view_url}
        """

        return await self.send_email(EmailMessage(
            to=[to_email],
            subject=subject,
            body_text=body_text,
            body_html=body_html,
        ))
