"""
Billforge - Overdue Service

Hourly sweep moving unpaid SENT/VIEWED invoices past their due date to
OVERDUE, followed by one reminder attempt per invoice.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.invoice import HistoryAction, Invoice, InvoiceStatus
from app.services.invoice_workflow import apply_status, fetch_invoice, record_history
from app.services.notification_service import DeliveryOutcome, NotificationService
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

SWEPT_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.VIEWED)

REMINDER_DESCRIPTIONS = {
    DeliveryOutcome.SENT: "Overdue reminder sent to {email}",
    DeliveryOutcome.SKIPPED: "Overdue reminder skipped by user preferences",
    DeliveryOutcome.NO_RECIPIENT: "Overdue reminder not sent (client email missing)",
    DeliveryOutcome.FAILED: "Overdue reminder sending failed",
}


class OverdueService:
    """Overdue detection and reminders."""

    def __init__(self, db: AsyncSession, notifications: Optional[NotificationService] = None):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    async def mark_overdue(self, now: datetime) -> List[uuid.UUID]:
        """Flip every past-due SENT/VIEWED invoice to OVERDUE in one commit."""
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.status.in_(SWEPT_STATUSES))
            .where(Invoice.due_date < now.date())
            .order_by(Invoice.due_date)
        )
        invoices = list(result.scalars().all())
        if not invoices:
            return []

        try:
            for invoice in invoices:
                previous = invoice.status
                apply_status(invoice, InvoiceStatus.OVERDUE, now=now)
                record_history(
                    self.db,
                    invoice.id,
                    HistoryAction.STATUS_CHANGED,
                    f"Status changed from {previous.value.upper()} to OVERDUE (auto)",
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Marked {len(invoices)} invoice(s) overdue")
        return [invoice.id for invoice in invoices]

    async def send_reminder(self, invoice_id: uuid.UUID) -> DeliveryOutcome:
        """Attempt the reminder and record exactly one REMINDER_SENT row for it."""
        invoice = await fetch_invoice(self.db, invoice_id)
        outcome = await self.notifications.send_overdue_reminder(invoice)
        description = REMINDER_DESCRIPTIONS[outcome].format(
            email=invoice.client.email if invoice.client else ""
        )
        record_history(self.db, invoice.id, HistoryAction.REMINDER_SENT, description)
        await self.db.commit()
        return outcome

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        invoice_ids = await self.mark_overdue(now)

        counts = {outcome.value: 0 for outcome in DeliveryOutcome}
        errors = 0
        for invoice_id in invoice_ids:
            try:
                outcome = await self.send_reminder(invoice_id)
                counts[outcome.value] += 1
            except Exception as e:
                errors += 1
                await self.db.rollback()
                logger.error(f"Overdue reminder for invoice {invoice_id} failed: {e}")

        return {"marked_overdue": len(invoice_ids), "errors": errors, **counts}
