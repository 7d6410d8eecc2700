"""
Billforge - Notification Service

Outbound invoice emails. Everything here runs after the financial change it
reports on has been committed: each delivery is bounded by a timeout, failures
are logged and written to the invoice history, and nothing is raised back to
the caller.
"""

import asyncio
import logging
import uuid
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.invoice import HistoryAction, Invoice
from app.services.email_service import EmailService
from app.services.invoice_pdf_service import InvoicePDFService
from app.services.invoice_workflow import fetch_invoice, record_history
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    NO_RECIPIENT = "no_recipient"
    FAILED = "failed"


def share_url(invoice: Invoice) -> str:
    return f"{settings.base_url.rstrip('/')}/public/invoices/{invoice.share_id}"


class NotificationService:
    """Post-commit email dispatch for invoices."""

    def __init__(
        self,
        db: AsyncSession,
        email_service: Optional[EmailService] = None,
        pdf_service: Optional[InvoicePDFService] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.email_service = email_service or EmailService()
        self.pdf_service = pdf_service or InvoicePDFService()
        self.timeout = settings.email_timeout_seconds if timeout is None else timeout

    async def _deliver(self, send: Awaitable[bool], label: str) -> bool:
        """Await a delivery with the timeout; any problem counts as not delivered."""
        try:
            return bool(await asyncio.wait_for(send, timeout=self.timeout))
        except asyncio.TimeoutError:
            logger.error(f"Timed out after {self.timeout}s sending {label}")
            return False
        except Exception as e:
            logger.error(f"Failed to send {label}: {e}")
            return False

    # ===========================================
    # INVOICE DELIVERY
    # ===========================================

    async def send_invoice(self, invoice: Invoice) -> DeliveryOutcome:
        """Render the invoice PDF and email it to the client."""
        client = invoice.client
        if not client or not client.email:
            return DeliveryOutcome.NO_RECIPIENT

        async def render_and_send() -> bool:
            pdf_bytes = await asyncio.to_thread(self.pdf_service.render_invoice, invoice)
            return await self.email_service.send_invoice_email(
                to_email=client.email,
                client_name=client.name,
                sender_name=invoice.user.company_name or invoice.user.full_name,
                invoice_number=invoice.invoice_number,
                amount=invoice.balance_due,
                currency=invoice.currency,
                due_date=invoice.due_date,
                view_url=share_url(invoice),
                pdf_bytes=pdf_bytes,
            )

        delivered = await self._deliver(render_and_send(), f"invoice {invoice.invoice_number}")
        return DeliveryOutcome.SENT if delivered else DeliveryOutcome.FAILED

    async def send_overdue_reminder(self, invoice: Invoice) -> DeliveryOutcome:
        """Overdue reminder, gated by the owner's preferences."""
        if not invoice.user.wants_email("email_notify_invoice_overdue"):
            return DeliveryOutcome.SKIPPED
        client = invoice.client
        if not client or not client.email:
            return DeliveryOutcome.NO_RECIPIENT

        days_overdue = max(1, (utcnow().date() - invoice.due_date).days)
        delivered = await self._deliver(
            self.email_service.send_overdue_reminder(
                to_email=client.email,
                client_name=client.name,
                sender_name=invoice.user.company_name or invoice.user.full_name,
                invoice_number=invoice.invoice_number,
                balance_due=invoice.balance_due,
                currency=invoice.currency,
                due_date=invoice.due_date,
                days_overdue=days_overdue,
                view_url=share_url(invoice),
            ),
            f"overdue reminder for {invoice.invoice_number}",
        )
        return DeliveryOutcome.SENT if delivered else DeliveryOutcome.FAILED

    # ===========================================
    # PAYMENT NOTIFICATIONS
    # ===========================================

    async def notify_payment_received(self, invoice_id: uuid.UUID, amount: Decimal) -> DeliveryOutcome:
        """
        Email the client a receipt and the owner a notice for a committed payment.

        Writes one NOTIFICATION history row describing the outcome unless the
        owner's preferences skip it. Never raises.
        """
        try:
            invoice = await fetch_invoice(self.db, invoice_id)
            if invoice is None:
                return DeliveryOutcome.SKIPPED
            user = invoice.user
            if not user.wants_email("email_notify_payment_received"):
                return DeliveryOutcome.SKIPPED

            client = invoice.client
            client_ok = True
            if client.email:
                client_ok = await self._deliver(
                    self.email_service.send_payment_confirmation(
                        to_email=client.email,
                        client_name=client.name,
                        invoice_number=invoice.invoice_number,
                        amount=amount,
                        currency=invoice.currency,
                        balance_due=invoice.balance_due,
                    ),
                    f"payment confirmation for {invoice.invoice_number}",
                )
            owner_ok = await self._deliver(
                self.email_service.send_payment_received_notice(
                    to_email=user.email,
                    owner_name=user.full_name,
                    client_name=client.name,
                    invoice_number=invoice.invoice_number,
                    amount=amount,
                    currency=invoice.currency,
                    fully_paid=invoice.is_fully_paid,
                ),
                f"payment notice for {invoice.invoice_number}",
            )

            if client_ok and owner_ok:
                outcome = DeliveryOutcome.SENT
                description = f"Payment notification emails sent for {amount}"
            else:
                outcome = DeliveryOutcome.FAILED
                description = f"Payment notification email sending failed for {amount}"
            record_history(self.db, invoice.id, HistoryAction.NOTIFICATION, description, amount=amount)
            await self.db.commit()
            return outcome
        except Exception:
            logger.exception(f"Payment notification dispatch failed for invoice {invoice_id}")
            await self.db.rollback()
            return DeliveryOutcome.FAILED
