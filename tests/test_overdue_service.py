"""
Tests for the overdue sweep and reminders.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.models.invoice import HistoryAction, Invoice, InvoiceHistory, InvoiceStatus
from app.services.invoice_service import InvoiceService
from app.services.notification_service import DeliveryOutcome
from app.services.overdue_service import OverdueService
from app.utils.time import utcnow


def after_due(days: int = 45):
    return utcnow() + timedelta(days=days)


async def history_for(db_session, invoice_id, action):
    result = await db_session.execute(
        select(InvoiceHistory)
        .where(InvoiceHistory.invoice_id == invoice_id, InvoiceHistory.action == action)
        .order_by(InvoiceHistory.created_at)
    )
    return [h.description for h in result.scalars().all()]


class TestSweep:

    @pytest.mark.asyncio
    async def test_marks_overdue_and_reminds_once(self, db_session, sent_invoice):
        invoice_id = sent_invoice.id
        service = OverdueService(db_session)

        result = await service.sweep(after_due())

        assert result == {
            "marked_overdue": 1,
            "errors": 0,
            "sent": 1,
            "skipped": 0,
            "no_recipient": 0,
            "failed": 0,
        }
        invoice = await db_session.get(Invoice, invoice_id)
        assert invoice.status == InvoiceStatus.OVERDUE
        assert await history_for(db_session, invoice_id, HistoryAction.STATUS_CHANGED) == [
            "Status changed from SENT to OVERDUE (auto)"
        ]
        assert await history_for(db_session, invoice_id, HistoryAction.REMINDER_SENT) == [
            "Overdue reminder sent to billing@acme.example"
        ]

    @pytest.mark.asyncio
    async def test_second_sweep_does_nothing(self, db_session, sent_invoice):
        invoice_id = sent_invoice.id
        service = OverdueService(db_session)
        await service.sweep(after_due())

        again = await service.sweep(after_due(46))

        assert again["marked_overdue"] == 0
        assert again["sent"] == 0
        assert len(await history_for(db_session, invoice_id, HistoryAction.REMINDER_SENT)) == 1

    @pytest.mark.asyncio
    async def test_not_yet_due_is_left_alone(self, db_session, sent_invoice):
        result = await OverdueService(db_session).sweep(utcnow())
        assert result["marked_overdue"] == 0
        assert sent_invoice.status == InvoiceStatus.SENT

    @pytest.mark.asyncio
    async def test_only_sent_and_viewed_are_swept(self, db_session, test_user, sent_invoice):
        draft = await InvoiceService(db_session).create_invoice(
            test_user.id,
            sent_invoice.client_id,
            utcnow().date() + timedelta(days=10),
            [{"description": "Draft work", "quantity": Decimal("1"), "rate": Decimal("10.00")}],
        )
        viewed = await InvoiceService(db_session).mark_viewed(sent_invoice.share_id)
        viewed_id, draft_id = viewed.id, draft.id

        ids = await OverdueService(db_session).mark_overdue(after_due())

        assert ids == [viewed_id]
        assert (await db_session.get(Invoice, draft_id)).status == InvoiceStatus.DRAFT
        assert await history_for(db_session, viewed_id, HistoryAction.STATUS_CHANGED) == [
            "Status changed from VIEWED to OVERDUE (auto)"
        ]

    @pytest.mark.asyncio
    async def test_preferences_skip_reminder(self, db_session, test_user, sent_invoice):
        invoice_id = sent_invoice.id
        test_user.email_notify_invoice_overdue = False
        await db_session.commit()

        result = await OverdueService(db_session).sweep(after_due())

        assert result["skipped"] == 1
        assert await history_for(db_session, invoice_id, HistoryAction.REMINDER_SENT) == [
            "Overdue reminder skipped by user preferences"
        ]

    @pytest.mark.asyncio
    async def test_missing_client_email(self, db_session, test_user, client_without_email, sample_items):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(
            test_user.id, client_without_email.id, utcnow().date() + timedelta(days=7), sample_items
        )
        await service.send_invoice(test_user.id, invoice.id)
        invoice_id = invoice.id

        result = await OverdueService(db_session).sweep(after_due())

        assert result["no_recipient"] == 1
        assert await history_for(db_session, invoice_id, HistoryAction.REMINDER_SENT) == [
            "Overdue reminder not sent (client email missing)"
        ]

    @pytest.mark.asyncio
    async def test_failed_delivery_is_recorded(self, db_session, sent_invoice):
        invoice_id = sent_invoice.id
        notifications = AsyncMock()
        notifications.send_overdue_reminder.return_value = DeliveryOutcome.FAILED

        result = await OverdueService(db_session, notifications=notifications).sweep(after_due())

        assert result["failed"] == 1
        assert await history_for(db_session, invoice_id, HistoryAction.REMINDER_SENT) == [
            "Overdue reminder sending failed"
        ]

    @pytest.mark.asyncio
    async def test_one_failing_reminder_does_not_stop_the_rest(
        self, db_session, test_user, test_client_record, sample_items, sent_invoice
    ):
        service = InvoiceService(db_session)
        earlier = await service.create_invoice(
            test_user.id, test_client_record.id, utcnow().date() + timedelta(days=5), sample_items
        )
        await service.send_invoice(test_user.id, earlier.id)
        broken_id, healthy_id = earlier.id, sent_invoice.id

        async def reminder(invoice):
            if invoice.id == broken_id:
                raise RuntimeError("template rendering failed")
            return DeliveryOutcome.SENT

        notifications = AsyncMock()
        notifications.send_overdue_reminder.side_effect = reminder

        result = await OverdueService(db_session, notifications=notifications).sweep(after_due())

        assert result["marked_overdue"] == 2
        assert result["errors"] == 1
        assert result["sent"] == 1
        assert (await db_session.get(Invoice, broken_id)).status == InvoiceStatus.OVERDUE
        assert await history_for(db_session, broken_id, HistoryAction.REMINDER_SENT) == []
        assert len(await history_for(db_session, healthy_id, HistoryAction.REMINDER_SENT)) == 1
