"""
Tests for the periodic task bodies.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.models.invoice import Invoice, InvoiceStatus
from app.models.recurring_invoice import RecurringFrequency
from app.services.recurring_invoice_service import RecurringInvoiceService
from app.tasks.scheduled_tasks import check_overdue_invoices, process_recurring_invoices
from app.utils.time import utcnow


@pytest.mark.asyncio
async def test_check_overdue_invoices(db_session, sent_invoice):
    invoice_id = sent_invoice.id

    result = await check_overdue_invoices(db_session, now=utcnow() + timedelta(days=31))

    assert result["marked_overdue"] == 1
    assert result["sent"] == 1
    assert (await db_session.get(Invoice, invoice_id)).status == InvoiceStatus.OVERDUE


@pytest.mark.asyncio
async def test_check_overdue_invoices_with_nothing_due(db_session, test_user):
    result = await check_overdue_invoices(db_session)
    assert result["marked_overdue"] == 0
    assert result["errors"] == 0


@pytest.mark.asyncio
async def test_process_recurring_invoices(db_session, test_user, test_client_record):
    await RecurringInvoiceService(db_session).create_template(
        test_user.id,
        test_client_record.id,
        name="Weekly support",
        frequency=RecurringFrequency.WEEKLY,
        start_date=date(2024, 5, 6),
        items=[{"description": "Support", "quantity": Decimal("3"), "rate": Decimal("50.00")}],
    )

    first = await process_recurring_invoices(db_session, now=datetime(2024, 5, 6, 10))
    again = await process_recurring_invoices(db_session, now=datetime(2024, 5, 6, 11))

    assert first == {"processed": 1, "failed": 0}
    assert again == {"processed": 0, "failed": 0}
    count = (await db_session.execute(select(func.count(Invoice.id)))).scalar()
    assert count == 1
