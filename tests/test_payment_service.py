"""
Tests for payment accounting: manual and gateway payments, refunds,
card checkouts, notifications and statistics.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import UUID

import pytest
from sqlalchemy import select

from app.models.invoice import HistoryAction, InvoiceHistory, InvoiceStatus
from app.models.payment import Payment, PaymentMethod, PaymentStatus
from app.services.email_service import EmailService
from app.services.invoice_service import InvoiceService
from app.services.notification_service import DeliveryOutcome, NotificationService
from app.services.payment_gateway import GatewayResult, PaymentGateway, SimulatedGateway
from app.services.payment_service import PaymentService, generate_payment_number
from app.utils.error_handling import (
    ErrorCode,
    InvalidStatusTransitionException,
    OverpaymentException,
    PaymentDeclinedException,
    PaymentNotRefundableException,
    RefundExceedsPaymentException,
)


class SlowGateway(PaymentGateway):
    name = "slow"

    async def authorize(self, amount, currency, method, reference) -> GatewayResult:
        await asyncio.sleep(5)
        return GatewayResult(success=True, transaction_id="TXN-LATE")


async def history_for(db_session, invoice_id, action=None):
    query = select(InvoiceHistory).where(InvoiceHistory.invoice_id == invoice_id)
    if action is not None:
        query = query.where(InvoiceHistory.action == action)
    result = await db_session.execute(query.order_by(InvoiceHistory.id))
    return list(result.scalars().all())


async def payments_for(db_session, invoice_id):
    result = await db_session.execute(
        select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.created_at)
    )
    return list(result.scalars().all())


def test_payment_number_format():
    number = generate_payment_number()
    prefix, day, suffix = number.split("-")
    assert prefix == "PMT"
    assert len(day) == 8 and day.isdigit()
    assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix


class TestRecordPayment:

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)

        first = await service.record_payment(test_user.id, sent_invoice.id, Decimal("40.00"))
        assert first.status == PaymentStatus.COMPLETED
        assert first.net_amount == Decimal("40.00")
        assert first.payment_number.startswith("PMT-")

        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PARTIALLY_PAID
        assert invoice.paid_amount == Decimal("40.00")
        assert invoice.balance_due == Decimal("60.00")
        assert invoice.paid_at is None

        await service.record_payment(test_user.id, sent_invoice.id, Decimal("60.00"))
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.balance_due == Decimal("0")
        assert invoice.paid_at is not None

        received = await history_for(db_session, sent_invoice.id, HistoryAction.PAYMENT_RECEIVED)
        assert [h.amount for h in received] == [Decimal("40.00"), Decimal("60.00")]
        assert received[0].description == "Payment of USD 40.00 received"

    @pytest.mark.asyncio
    async def test_overpayment_is_rejected(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session)
        await service.record_payment(user_id, invoice_id, Decimal("60.00"))

        with pytest.raises(OverpaymentException) as exc_info:
            await service.record_payment(user_id, invoice_id, Decimal("50.00"))
        assert exc_info.value.code == ErrorCode.OVERPAYMENT

        invoice = await InvoiceService(db_session).get_invoice(user_id, invoice_id)
        assert invoice.paid_amount == Decimal("60.00")
        assert len(await payments_for(db_session, invoice_id)) == 1

    @pytest.mark.asyncio
    async def test_draft_invoice_refuses_payments(self, db_session, test_user, test_invoice):
        with pytest.raises(InvalidStatusTransitionException):
            await PaymentService(db_session).record_payment(test_user.id, test_invoice.id, Decimal("10.00"))

    @pytest.mark.asyncio
    async def test_cancelled_invoice_refuses_payments(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        await InvoiceService(db_session).cancel_invoice(user_id, invoice_id)
        with pytest.raises(InvalidStatusTransitionException):
            await PaymentService(db_session).record_payment(user_id, invoice_id, Decimal("10.00"))

    @pytest.mark.asyncio
    async def test_overdue_invoice_accepts_payment(self, db_session, test_user, sent_invoice):
        await InvoiceService(db_session).change_status(test_user.id, sent_invoice.id, InvoiceStatus.OVERDUE)
        await PaymentService(db_session).record_payment(test_user.id, sent_invoice.id, Decimal("100.00"))
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID


class TestPaymentNotifications:

    @pytest.mark.asyncio
    async def test_notification_history_row(self, db_session, test_user, sent_invoice, notifications):
        await PaymentService(db_session, notifications=notifications).record_payment(
            test_user.id, sent_invoice.id, Decimal("25.00")
        )
        rows = await history_for(db_session, sent_invoice.id, HistoryAction.NOTIFICATION)
        assert len(rows) == 1
        assert rows[0].description == "Payment notification emails sent for 25.00"

    @pytest.mark.asyncio
    async def test_preferences_skip_notification(self, db_session, test_user, sent_invoice):
        test_user.email_notify_payment_received = False
        await db_session.commit()

        await PaymentService(db_session).record_payment(test_user.id, sent_invoice.id, Decimal("25.00"))
        assert await history_for(db_session, sent_invoice.id, HistoryAction.NOTIFICATION) == []

    @pytest.mark.asyncio
    async def test_email_failure_keeps_payment(self, db_session, test_user, sent_invoice):
        email = EmailService()
        email.send_email = AsyncMock(side_effect=RuntimeError("smtp down"))
        service = PaymentService(db_session, notifications=NotificationService(db_session, email_service=email))

        payment = await service.record_payment(test_user.id, sent_invoice.id, Decimal("100.00"))

        assert payment.status == PaymentStatus.COMPLETED
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID
        rows = await history_for(db_session, sent_invoice.id, HistoryAction.NOTIFICATION)
        assert rows[0].description == "Payment notification email sending failed for 100.00"

    @pytest.mark.asyncio
    async def test_notify_never_raises(self, db_session, sent_invoice):
        notifications = NotificationService(db_session)
        notifications.email_service.send_payment_received_notice = AsyncMock(side_effect=ValueError("boom"))

        outcome = await notifications.notify_payment_received(sent_invoice.id, Decimal("1.00"))
        assert outcome == DeliveryOutcome.FAILED


class TestGatewayPayments:

    @pytest.mark.asyncio
    async def test_approved_payment(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session, gateway=SimulatedGateway(success_rate=1.0))
        payment = await service.process_payment(test_user.id, sent_invoice.id, Decimal("100.00"))

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.payment_method == PaymentMethod.CREDIT_CARD
        assert payment.transaction_id.startswith("TXN-")
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_declined_payment_leaves_failed_record(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session, gateway=SimulatedGateway(success_rate=0.0))

        with pytest.raises(PaymentDeclinedException) as exc_info:
            await service.process_payment(user_id, invoice_id, Decimal("50.00"))
        assert exc_info.value.status_code == 402

        payments = await payments_for(db_session, invoice_id)
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.FAILED
        assert payments[0].net_amount == Decimal("0")
        assert "declined" in payments[0].failure_reason

        invoice = await InvoiceService(db_session).get_invoice(user_id, invoice_id)
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.paid_amount == Decimal("0")
        assert len(await history_for(db_session, invoice_id, HistoryAction.PAYMENT_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_gateway_timeout_counts_as_decline(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session, gateway=SlowGateway(), gateway_timeout=0.01)

        with pytest.raises(PaymentDeclinedException):
            await service.process_payment(user_id, invoice_id, Decimal("10.00"))

        payments = await payments_for(db_session, invoice_id)
        assert payments[0].failure_reason == "Payment gateway timed out"

    @pytest.mark.asyncio
    async def test_guard_runs_before_gateway(self, db_session, test_user, sent_invoice):
        gateway = SimulatedGateway(success_rate=1.0)
        gateway.authorize = AsyncMock()
        service = PaymentService(db_session, gateway=gateway)

        with pytest.raises(OverpaymentException):
            await service.process_payment(test_user.id, sent_invoice.id, Decimal("150.00"))
        gateway.authorize.assert_not_awaited()


class TestRefunds:

    @pytest.mark.asyncio
    async def test_full_refund_reopens_invoice(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)
        payment = await service.record_payment(test_user.id, sent_invoice.id, Decimal("100.00"))

        refund = await service.refund_payment(test_user.id, payment.id, reason="Duplicate charge")

        assert refund.amount == Decimal("-100.00")
        assert refund.status == PaymentStatus.REFUNDED
        assert refund.transaction_id == f"REFUND-{payment.payment_number}"
        assert refund.notes == "Duplicate charge"

        original = await service.get_payment(test_user.id, payment.id)
        assert original.status == PaymentStatus.REFUNDED

        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.paid_amount == Decimal("0")
        assert invoice.balance_due == Decimal("100.00")
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.paid_at is None

        rows = await history_for(db_session, sent_invoice.id, HistoryAction.STATUS_CHANGED)
        assert rows[-1].description == "Payment refunded: USD 100.00 (status PAID -> SENT)"
        assert rows[-1].amount == Decimal("-100.00")

        # Money can be collected again
        await service.record_payment(test_user.id, sent_invoice.id, Decimal("100.00"))
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_partial_refunds_accumulate(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session)
        payment = await service.record_payment(user_id, invoice_id, Decimal("100.00"))
        payment_id = payment.id

        await service.refund_payment(user_id, payment_id, amount=Decimal("30.00"))
        invoice = await InvoiceService(db_session).get_invoice(user_id, invoice_id)
        assert invoice.paid_amount == Decimal("70.00")
        assert invoice.balance_due == Decimal("30.00")
        assert invoice.status == InvoiceStatus.SENT
        assert (await service.get_payment(user_id, payment_id)).status == PaymentStatus.COMPLETED

        with pytest.raises(RefundExceedsPaymentException):
            await service.refund_payment(user_id, payment_id, amount=Decimal("80.00"))

        await service.refund_payment(user_id, payment_id, amount=Decimal("70.00"))
        assert (await service.get_payment(user_id, payment_id)).status == PaymentStatus.REFUNDED
        invoice = await InvoiceService(db_session).get_invoice(user_id, invoice_id)
        assert invoice.paid_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_refund_rows_cannot_be_refunded(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)
        payment = await service.record_payment(test_user.id, sent_invoice.id, Decimal("20.00"))
        refund = await service.refund_payment(test_user.id, payment.id)

        with pytest.raises(PaymentNotRefundableException):
            await service.refund_payment(test_user.id, refund.id)

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_be_refunded(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        with pytest.raises(PaymentDeclinedException) as exc_info:
            await PaymentService(db_session, gateway=SimulatedGateway(success_rate=0.0)).process_payment(
                user_id, invoice_id, Decimal("5.00")
            )

        with pytest.raises(PaymentNotRefundableException):
            await PaymentService(db_session).refund_payment(user_id, UUID(exc_info.value.details["payment_id"]))


class TestExternalPayments:

    @pytest.mark.asyncio
    async def test_checkout_is_idempotent(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)
        first = await service.record_external_payment(sent_invoice.id, Decimal("40.00"), "cs_test_1")
        replay = await service.record_external_payment(sent_invoice.id, Decimal("40.00"), "cs_test_1")

        assert replay.id == first.id
        assert first.payment_method == PaymentMethod.STRIPE
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.paid_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_float_noise_is_clamped_to_balance(self, db_session, test_user, sent_invoice):
        payment = await PaymentService(db_session).record_external_payment(
            sent_invoice.id, Decimal("100.00009"), "cs_test_2"
        )
        assert payment.amount == Decimal("100.00")
        invoice = await InvoiceService(db_session).get_invoice(test_user.id, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_real_overshoot_is_rejected(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session)
        with pytest.raises(OverpaymentException):
            await service.record_external_payment(invoice_id, Decimal("100.50"), "cs_test_3")

        # The locked read is released with the failed checkout
        assert not db_session.in_transaction()

        payment = await service.record_external_payment(invoice_id, Decimal("40.00"), "cs_test_3b")
        assert payment.amount == Decimal("40.00")
        invoice = await InvoiceService(db_session).get_invoice(user_id, invoice_id)
        assert invoice.status == InvoiceStatus.PARTIALLY_PAID

    @pytest.mark.asyncio
    async def test_settled_invoice_is_ignored(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)
        await service.record_payment(test_user.id, sent_invoice.id, Decimal("100.00"))
        assert await service.record_external_payment(sent_invoice.id, Decimal("10.00"), "cs_test_4") is None


class TestPaymentQueries:

    @pytest.mark.asyncio
    async def test_statistics(self, db_session, test_user, sent_invoice):
        user_id, invoice_id = test_user.id, sent_invoice.id
        service = PaymentService(db_session)
        await service.record_payment(user_id, invoice_id, Decimal("40.00"))
        second = await service.record_payment(user_id, invoice_id, Decimal("60.00"))
        second_id = second.id
        await service.refund_payment(user_id, second_id, amount=Decimal("10.00"))
        with pytest.raises(PaymentDeclinedException):
            await PaymentService(db_session, gateway=SimulatedGateway(success_rate=0.0)).process_payment(
                user_id, invoice_id, Decimal("5.00")
            )

        stats = await service.get_statistics(user_id)

        assert stats["total_received"] == Decimal("90.00")
        assert stats["monthly_received"] == Decimal("90.00")
        assert stats["refunded_total"] == Decimal("10.00")
        assert stats["total_count"] == 4
        assert stats["completed_count"] == 2
        assert stats["failed_count"] == 1
        assert stats["pending_count"] == 0

    @pytest.mark.asyncio
    async def test_list_filters(self, db_session, test_user, sent_invoice):
        service = PaymentService(db_session)
        await service.record_payment(test_user.id, sent_invoice.id, Decimal("10.00"), PaymentMethod.CASH)
        await service.record_payment(test_user.id, sent_invoice.id, Decimal("20.00"), PaymentMethod.CHECK)

        cash, total = await service.list_payments(test_user.id, payment_method=PaymentMethod.CASH)
        assert total == 1 and cash[0].amount == Decimal("10.00")

        everything, total = await service.list_payments(test_user.id, invoice_id=sent_invoice.id)
        assert total == 2
