"""
Tests for recurring invoice templates and the generation engine.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.invoice import DiscountType, HistoryAction, Invoice, InvoiceHistory, InvoiceStatus
from app.models.recurring_invoice import RecurringFrequency, RecurringStatus
from app.services.invoice_service import InvoiceService
from app.services.recurring_invoice_service import RecurringInvoiceService, compute_next_run
from app.utils.time import start_of_day, utcnow
from app.utils.error_handling import (
    ErrorCode,
    RecurringScheduleException,
    ValidationException,
)

F = RecurringFrequency

ITEMS = [{"description": "Monthly retainer", "quantity": Decimal("1"), "rate": Decimal("500.00")}]


async def make_template(db_session, user, client_record, **overrides):
    fields = dict(
        name="Retainer",
        frequency=F.MONTHLY,
        start_date=date(2024, 1, 15),
        items=ITEMS,
    )
    fields.update(overrides)
    return await RecurringInvoiceService(db_session).create_template(user.id, client_record.id, **fields)


class TestComputeNextRun:

    def test_month_end_clamps_and_returns_to_anchor(self):
        jan_31 = datetime(2024, 1, 31)
        feb = compute_next_run(jan_31, F.MONTHLY, 1, anchor_day=31)
        mar = compute_next_run(feb, F.MONTHLY, 1, anchor_day=31)
        assert feb == datetime(2024, 2, 29)
        assert mar == datetime(2024, 3, 31)

    def test_without_anchor_the_clamped_day_sticks(self):
        assert compute_next_run(datetime(2024, 2, 29), F.MONTHLY) == datetime(2024, 3, 29)

    def test_yearly_from_leap_day(self):
        assert compute_next_run(datetime(2024, 2, 29), F.YEARLY, anchor_day=29) == datetime(2025, 2, 28)

    @pytest.mark.parametrize(
        "frequency,interval,expected",
        [
            (F.DAILY, 3, datetime(2024, 1, 18, 9, 0)),
            (F.WEEKLY, 2, datetime(2024, 1, 29, 9, 0)),
            (F.MONTHLY, 3, datetime(2024, 4, 15, 9, 0)),
        ],
    )
    def test_intervals(self, frequency, interval, expected):
        assert compute_next_run(datetime(2024, 1, 15, 9, 0), frequency, interval) == expected

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            compute_next_run(datetime(2024, 1, 1), F.DAILY, 0)


class TestTemplateCrud:

    @pytest.mark.asyncio
    async def test_create_schedules_first_run_at_start(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record)

        assert template.status == RecurringStatus.ACTIVE
        assert template.next_run_at == datetime(2024, 1, 15)
        assert template.occurrences_count == 0
        assert [item.description for item in template.items] == ["Monthly retainer"]

    @pytest.mark.asyncio
    async def test_invalid_interval(self, db_session, test_user, test_client_record):
        with pytest.raises(ValidationException):
            await make_template(db_session, test_user, test_client_record, interval=0)

    @pytest.mark.asyncio
    async def test_discount_larger_than_items_is_rejected(self, db_session, test_user, test_client_record):
        with pytest.raises(ValidationException) as exc_info:
            await make_template(db_session, test_user, test_client_record, discount=Decimal("600"))
        assert exc_info.value.field == "discount"

    @pytest.mark.asyncio
    async def test_update_checks_merged_discount(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record)
        user_id, template_id = test_user.id, template.id
        service = RecurringInvoiceService(db_session)

        with pytest.raises(ValidationException):
            await service.update_template(
                user_id, template_id, discount=Decimal("150"), discount_type=DiscountType.PERCENTAGE
            )
        with pytest.raises(ValidationException):
            await service.update_template(user_id, template_id, discount=Decimal("500.01"))

        template = await service.get_template(user_id, template_id)
        assert template.discount == Decimal("0")
        assert template.discount_type == DiscountType.FIXED

    @pytest.mark.asyncio
    async def test_schedule_change_moves_next_run(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record)
        updated = await RecurringInvoiceService(db_session).update_template(
            test_user.id, template.id, start_date=date(2024, 2, 1), name="Renamed"
        )
        assert updated.next_run_at == datetime(2024, 2, 1)
        assert updated.name == "Renamed"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        template = await make_template(db_session, test_user, test_client_record)
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        paused = await service.pause(user_id, template_id)
        assert paused.status == RecurringStatus.PAUSED

        with pytest.raises(RecurringScheduleException) as exc_info:
            await service.generate(template_id, now=datetime(2024, 1, 15, 1, 0))
        assert exc_info.value.code == ErrorCode.SCHEDULE_NOT_ACTIVE

        resumed = await service.resume(user_id, template_id)
        assert resumed.status == RecurringStatus.ACTIVE
        with pytest.raises(RecurringScheduleException):
            await service.resume(user_id, template_id)

    @pytest.mark.asyncio
    async def test_delete_keeps_generated_invoices(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        template = await make_template(db_session, test_user, test_client_record)
        service = RecurringInvoiceService(db_session)
        invoice = await service.generate(template.id, now=datetime(2024, 1, 15, 1, 0))

        await service.delete_template(user_id, template.id)

        kept = await InvoiceService(db_session).get_invoice(user_id, invoice.id)
        assert kept.recurring_template_id is None
        assert kept.generated_from_recurring is True


class TestGeneration:

    @pytest.mark.asyncio
    async def test_three_occurrences_then_cancelled(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        template = await make_template(db_session, test_user, test_client_record, max_occurrences=3)
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        for month in (1, 2, 3):
            result = await service.process_due(datetime(2024, month, 15, 9, 0))
            assert result == {"processed": 1, "failed": 0}

        assert await service.process_due(datetime(2024, 4, 15, 9, 0)) == {"processed": 0, "failed": 0}

        template = await service.get_template(user_id, template_id)
        assert template.status == RecurringStatus.CANCELLED
        assert template.occurrences_count == 3

        invoices = await service.generated_invoices(user_id, template_id)
        assert [inv.invoice_date for inv in invoices] == [
            date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15),
        ]
        assert [inv.invoice_number for inv in invoices] == ["INV-00001", "INV-00002", "INV-00003"]
        assert all(inv.status == InvoiceStatus.DRAFT for inv in invoices)
        assert invoices[0].due_date == date(2024, 2, 14)
        assert invoices[0].total_amount == Decimal("500.00")

        history = (
            await db_session.execute(
                select(InvoiceHistory).where(InvoiceHistory.invoice_id == invoices[0].id)
            )
        ).scalars().all()
        assert [(h.action, h.description) for h in history] == [
            (HistoryAction.CREATED, "Invoice generated from recurring invoice 'Retainer'"),
        ]

    @pytest.mark.asyncio
    async def test_month_end_template_keeps_its_anchor(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        template = await make_template(
            db_session, test_user, test_client_record, start_date=date(2024, 1, 31)
        )
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        for now in (datetime(2024, 1, 31, 6), datetime(2024, 2, 29, 6), datetime(2024, 3, 31, 6)):
            await service.process_due(now)

        invoices = await service.generated_invoices(user_id, template_id)
        assert [inv.invoice_date for inv in invoices] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31),
        ]

    @pytest.mark.asyncio
    async def test_end_date_finishes_schedule(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        template = await make_template(
            db_session, test_user, test_client_record,
            frequency=F.DAILY, start_date=date(2024, 1, 1), end_date=date(2024, 1, 2),
        )
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        await service.process_due(datetime(2024, 1, 1, 12))
        assert (await service.get_template(user_id, template_id)).status == RecurringStatus.ACTIVE

        await service.process_due(datetime(2024, 1, 2, 12))
        assert (await service.get_template(user_id, template_id)).status == RecurringStatus.CANCELLED
        assert len(await service.generated_invoices(user_id, template_id)) == 2

    @pytest.mark.asyncio
    async def test_not_due_is_refused_but_run_now_bypasses(self, db_session, test_user, test_client_record):
        user_id = test_user.id
        start = utcnow().date() + timedelta(days=10)
        template = await make_template(db_session, test_user, test_client_record, start_date=start)
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        with pytest.raises(RecurringScheduleException) as exc_info:
            await service.generate(template_id, now=start_of_day(utcnow().date()))
        assert exc_info.value.code == ErrorCode.SCHEDULE_NOT_DUE

        today = utcnow().date()
        invoice = await service.run_now(user_id, template_id)
        assert invoice.invoice_date == today
        template = await service.get_template(user_id, template_id)
        assert template.occurrences_count == 1
        assert template.next_run_at.date() > start

    @pytest.mark.asyncio
    async def test_early_manual_run_is_dated_when_it_runs(self, db_session, test_user, test_client_record):
        template = await make_template(
            db_session, test_user, test_client_record, start_date=date(2024, 3, 1)
        )
        template_id = template.id
        service = RecurringInvoiceService(db_session)

        invoice = await service.generate(template_id, now=datetime(2024, 2, 10, 9), bypass_due=True)

        assert invoice.invoice_date == date(2024, 2, 10)
        assert invoice.due_date == date(2024, 3, 11)
        template = await service.get_template(test_user.id, template_id)
        assert template.next_run_at == datetime(2024, 4, 1)

    @pytest.mark.asyncio
    async def test_late_manual_run_keeps_the_scheduled_date(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record)
        invoice = await RecurringInvoiceService(db_session).generate(
            template.id, now=datetime(2024, 1, 20, 9), bypass_due=True
        )
        assert invoice.invoice_date == date(2024, 1, 15)

    @pytest.mark.asyncio
    async def test_due_in_days_overrides_payment_terms(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record, due_in_days=14)
        invoice = await RecurringInvoiceService(db_session).generate(
            template.id, now=datetime(2024, 1, 15, 8)
        )
        assert invoice.due_date == date(2024, 1, 29)

    @pytest.mark.asyncio
    async def test_auto_send(self, db_session, test_user, test_client_record):
        template = await make_template(db_session, test_user, test_client_record, auto_send=True)
        invoice = await RecurringInvoiceService(db_session).generate(
            template.id, now=datetime(2024, 1, 15, 8)
        )
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.share_enabled is True

    @pytest.mark.asyncio
    async def test_one_failing_template_does_not_stop_others(
        self, db_session, test_user, free_user, test_client_record
    ):
        from app.services.client_service import ClientService

        free_client = await ClientService(db_session).create_client(free_user.id, "Free Client")
        free_user.invoice_limit = 1
        await db_session.commit()
        await InvoiceService(db_session).create_invoice(
            free_user.id, free_client.id, utcnow().date() + timedelta(days=5), ITEMS
        )

        blocked = await make_template(db_session, free_user, free_client)
        healthy = await make_template(db_session, test_user, test_client_record)
        blocked_id, healthy_id, user_id = blocked.id, healthy.id, test_user.id

        result = await RecurringInvoiceService(db_session).process_due(datetime(2024, 1, 15, 9))

        assert result == {"processed": 1, "failed": 1}
        generated = (
            await db_session.execute(
                select(Invoice).where(Invoice.recurring_template_id.in_([blocked_id, healthy_id]))
            )
        ).scalars().all()
        assert [inv.recurring_template_id for inv in generated] == [healthy_id]

        healthy = await RecurringInvoiceService(db_session).get_template(user_id, healthy_id)
        assert healthy.occurrences_count == 1
