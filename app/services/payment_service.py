"""
Billforge - Payment Service

Applies payments and refunds to invoices and keeps paid_amount, balance_due
and status consistent with the recorded payments.

Accounting rules:
- Collected money is the sum of COMPLETED payments plus REFUNDED rows (refund
  rows carry negative amounts, a fully refunded original carries its own
  positive amount, so the pair nets out).
- A payment may never exceed total_amount minus collected money.
- Email notifications run after the commit and never undo a payment.
"""

import asyncio
import logging
import secrets
import string
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.invoice import HistoryAction, Invoice, InvoiceStatus
from app.models.payment import Payment, PaymentMethod, PaymentStatus
from app.services.invoice_totals import ZERO, balance_due, money
from app.services.invoice_workflow import (
    apply_status,
    fetch_invoice,
    record_history,
    reopen_for_collection,
    status_for_payment,
)
from app.services.notification_service import NotificationService
from app.services.payment_gateway import GatewayResult, PaymentGateway, get_payment_gateway
from app.utils.error_handling import (
    InvalidStatusTransitionException,
    InvoiceNotFoundException,
    OverpaymentException,
    PaymentDeclinedException,
    PaymentNotFoundException,
    PaymentNotRefundableException,
    RefundExceedsPaymentException,
    ValidationException,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


# Statuses whose amounts count towards collected money
LEDGER_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)

# Card processors report float amounts
EXTERNAL_AMOUNT_TOLERANCE = Decimal("0.0001")


def generate_payment_number(now: Optional[datetime] = None) -> str:
    """PMT-YYYYMMDD-XXXXXX"""
    now = now or utcnow()
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"PMT-{now.strftime('%Y%m%d')}-{suffix}"


def refund_reference(payment: Payment) -> str:
    return f"REFUND-{payment.transaction_id or payment.payment_number}"


class PaymentService:
    """Service for payment operations."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: Optional[NotificationService] = None,
        gateway: Optional[PaymentGateway] = None,
        gateway_timeout: Optional[float] = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.gateway = gateway
        self.gateway_timeout = (
            settings.gateway_timeout_seconds if gateway_timeout is None else gateway_timeout
        )

    # ===========================================
    # LEDGER HELPERS
    # ===========================================

    async def _collected(self, invoice_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.invoice_id == invoice_id)
            .where(Payment.status.in_(LEDGER_STATUSES))
        )
        return money(result.scalar() or 0)

    async def _load_payable(
        self,
        invoice_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        for_update: bool = True,
    ) -> Invoice:
        invoice = await fetch_invoice(self.db, invoice_id, user_id=user_id, for_update=for_update)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT):
            raise InvalidStatusTransitionException(
                invoice.status.value,
                InvoiceStatus.PARTIALLY_PAID.value,
                f"Cannot record a payment on a {invoice.status.value} invoice",
            )
        return invoice

    async def _guard_amount(self, invoice: Invoice, amount: Decimal) -> Decimal:
        """Return the collected total, raising when amount exceeds what is still owed."""
        if amount <= 0:
            raise ValidationException("Payment amount must be positive", field="amount")
        collected = await self._collected(invoice.id)
        remaining = money(invoice.total_amount - collected)
        if amount > remaining:
            raise OverpaymentException(amount, max(ZERO, remaining))
        return collected

    def _apply_to_invoice(self, invoice: Invoice, collected: Decimal, amount: Decimal, performed_by) -> None:
        invoice.paid_amount = money(collected + amount)
        invoice.balance_due = balance_due(invoice.total_amount, invoice.paid_amount)
        apply_status(invoice, status_for_payment(invoice.total_amount, invoice.paid_amount))
        record_history(
            self.db,
            invoice.id,
            HistoryAction.PAYMENT_RECEIVED,
            f"Payment of {invoice.currency} {amount} received",
            performed_by=performed_by,
            amount=amount,
        )

    async def _notify(self, payment: Payment) -> None:
        await self.notifications.notify_payment_received(payment.invoice_id, payment.amount)
        # A failed dispatch rolls the session back, which expires loaded rows
        if inspect(payment).expired_attributes:
            await self.db.refresh(payment)

    # ===========================================
    # MANUAL PAYMENTS
    # ===========================================

    async def record_payment(
        self,
        user_id: Optional[uuid.UUID],
        invoice_id: uuid.UUID,
        amount: Decimal,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        transaction_id: Optional[str] = None,
        payment_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        """
        Record a COMPLETED payment and update the invoice in one commit.

        user_id None means the payer came through the public share link.
        """
        amount = money(amount)
        try:
            invoice = await self._load_payable(invoice_id, user_id)
            collected = await self._guard_amount(invoice, amount)

            payment = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=generate_payment_number(),
                amount=amount,
                net_amount=amount,
                currency=invoice.currency,
                status=PaymentStatus.COMPLETED,
                payment_method=payment_method,
                transaction_id=transaction_id,
                payment_date=payment_date or utcnow(),
                notes=notes,
            )
            self.db.add(payment)
            self._apply_to_invoice(invoice, collected, amount, user_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Recorded payment {payment.payment_number} of {amount} on invoice {invoice.invoice_number}")
        await self._notify(payment)
        return payment

    # ===========================================
    # GATEWAY PAYMENTS
    # ===========================================

    async def _authorize(self, invoice: Invoice, amount: Decimal, method: PaymentMethod) -> GatewayResult:
        gateway = self.gateway or get_payment_gateway()
        try:
            return await asyncio.wait_for(
                gateway.authorize(amount, invoice.currency, method, invoice.invoice_number),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Gateway timed out after {self.gateway_timeout}s for {invoice.invoice_number}")
            return GatewayResult(success=False, message="Payment gateway timed out")
        except Exception as e:
            logger.error(f"Gateway error for {invoice.invoice_number}: {e}")
            return GatewayResult(success=False, message=f"Payment gateway error: {e}")

    async def process_payment(
        self,
        user_id: Optional[uuid.UUID],
        invoice_id: uuid.UUID,
        amount: Decimal,
        payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD,
        notes: Optional[str] = None,
    ) -> Payment:
        """
        Authorize through the gateway, then account exactly like record_payment.

        A decline persists a FAILED payment with net_amount 0, leaves the
        invoice untouched and raises PaymentDeclinedException.
        """
        amount = money(amount)
        invoice = await self._load_payable(invoice_id, user_id, for_update=False)
        await self._guard_amount(invoice, amount)
        # No transaction stays open across the gateway call
        await self.db.commit()

        result = await self._authorize(invoice, amount, payment_method)

        if not result.success:
            payment = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=generate_payment_number(),
                amount=amount,
                net_amount=ZERO,
                currency=invoice.currency,
                status=PaymentStatus.FAILED,
                payment_method=payment_method,
                transaction_id=result.transaction_id,
                notes=notes,
                failure_reason=result.message,
            )
            self.db.add(payment)
            record_history(
                self.db,
                invoice.id,
                HistoryAction.PAYMENT_FAILED,
                f"Payment of {invoice.currency} {amount} failed: {result.message}",
                performed_by=user_id,
                amount=amount,
            )
            await self.db.commit()
            logger.warning(f"Payment declined on invoice {invoice.invoice_number}: {result.message}")
            raise PaymentDeclinedException(result.message, payment_id=payment.id)

        try:
            # Re-check against payments committed while the gateway call was in flight
            invoice = await self._load_payable(invoice_id, user_id)
            collected = await self._guard_amount(invoice, amount)
            payment = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=generate_payment_number(),
                amount=amount,
                net_amount=money(amount - result.fee),
                currency=invoice.currency,
                status=PaymentStatus.COMPLETED,
                payment_method=payment_method,
                transaction_id=result.transaction_id,
                notes=notes,
            )
            self.db.add(payment)
            self._apply_to_invoice(invoice, collected, amount, user_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Gateway payment {result.transaction_id} applied to invoice {invoice.invoice_number}")
        await self._notify(payment)
        return payment

    # ===========================================
    # CARD PROCESSOR CHECKOUT
    # ===========================================

    async def record_external_payment(
        self,
        invoice_id: uuid.UUID,
        amount: Decimal,
        transaction_id: str,
    ) -> Optional[Payment]:
        """
        Ledger update for a completed card-processor checkout.

        Replays of the same transaction_id return the existing payment.
        Amounts within the tolerance of the outstanding balance are clamped
        to it. Returns None when nothing is owed any more.
        """
        existing = (
            await self.db.execute(select(Payment).where(Payment.transaction_id == transaction_id))
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(f"Checkout {transaction_id} already recorded as {existing.payment_number}")
            return existing

        try:
            invoice = await fetch_invoice(self.db, invoice_id, for_update=True)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)

            collected = await self._collected(invoice.id)
            remaining = money(invoice.total_amount - collected)
            amount = Decimal(str(amount))
            if remaining <= 0:
                logger.warning(f"Checkout {transaction_id} for settled invoice {invoice.invoice_number} ignored")
                await self.db.rollback()
                return None
            if amount > remaining:
                if amount - remaining > EXTERNAL_AMOUNT_TOLERANCE:
                    raise OverpaymentException(money(amount), remaining)
                amount = remaining
            amount = money(amount)

            payment = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=generate_payment_number(),
                amount=amount,
                net_amount=amount,
                currency=invoice.currency,
                status=PaymentStatus.COMPLETED,
                payment_method=PaymentMethod.STRIPE,
                transaction_id=transaction_id,
                notes="Card checkout",
            )
            self.db.add(payment)
            self._apply_to_invoice(invoice, collected, amount, None)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._notify(payment)
        return payment

    # ===========================================
    # REFUNDS
    # ===========================================

    async def _refunded_so_far(self, payment: Payment) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.invoice_id == payment.invoice_id)
            .where(Payment.transaction_id == refund_reference(payment))
            .where(Payment.status == PaymentStatus.REFUNDED)
        )
        return money(-(result.scalar() or 0))

    async def refund_payment(
        self,
        user_id: uuid.UUID,
        payment_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Refund all or part of a COMPLETED payment.

        The refund is a new REFUNDED row with a negative amount. The invoice
        is reopened: paid_amount drops, balance_due grows and status returns
        to SENT.
        """
        payment = await self.get_payment(user_id, payment_id)
        if payment.status != PaymentStatus.COMPLETED or payment.amount <= 0:
            raise PaymentNotRefundableException(payment.status.value)

        already_refunded = await self._refunded_so_far(payment)
        refundable = money(payment.amount - already_refunded)
        amount = money(amount) if amount is not None else refundable
        if amount <= 0:
            raise ValidationException("Refund amount must be positive", field="amount")
        if amount > refundable:
            raise RefundExceedsPaymentException(amount, refundable)

        try:
            invoice = await fetch_invoice(self.db, payment.invoice_id, for_update=True)
            refund = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=generate_payment_number(),
                amount=-amount,
                net_amount=-amount,
                currency=payment.currency,
                status=PaymentStatus.REFUNDED,
                payment_method=payment.payment_method,
                transaction_id=refund_reference(payment),
                notes=reason,
            )
            self.db.add(refund)
            if amount == refundable:
                payment.status = PaymentStatus.REFUNDED

            invoice.paid_amount = max(ZERO, money(invoice.paid_amount - amount))
            invoice.balance_due = balance_due(invoice.total_amount, invoice.paid_amount)
            previous = invoice.status
            reopened = reopen_for_collection(invoice)
            record_history(
                self.db,
                invoice.id,
                HistoryAction.STATUS_CHANGED,
                f"Payment refunded: {invoice.currency} {amount}"
                + (f" (status {previous.value.upper()} -> SENT)" if reopened else ""),
                performed_by=user_id,
                amount=-amount,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Refunded {amount} of payment {payment.payment_number}")
        return refund

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_payment(self, user_id: uuid.UUID, payment_id: uuid.UUID) -> Payment:
        result = await self.db.execute(
            select(Payment).where(Payment.id == payment_id, Payment.user_id == user_id)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def list_payments(
        self,
        user_id: uuid.UUID,
        invoice_id: Optional[uuid.UUID] = None,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> Tuple[List[Payment], int]:
        conditions = [Payment.user_id == user_id]
        if invoice_id:
            conditions.append(Payment.invoice_id == invoice_id)
        if status:
            conditions.append(Payment.status == status)
        if payment_method:
            conditions.append(Payment.payment_method == payment_method)
        if date_from:
            conditions.append(Payment.payment_date >= datetime.combine(date_from, datetime.min.time()))
        if date_to:
            conditions.append(Payment.payment_date <= datetime.combine(date_to, datetime.max.time()))

        total = (
            await self.db.execute(select(func.count(Payment.id)).where(and_(*conditions)))
        ).scalar() or 0

        per_page = max(1, min(per_page, 100))
        page = max(1, page)
        result = await self.db.execute(
            select(Payment)
            .where(and_(*conditions))
            .order_by(Payment.payment_date.desc(), Payment.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total

    async def get_statistics(self, user_id: uuid.UUID, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals over the user's payments; monthly figures cover the current calendar month."""
        now = now or utcnow()
        month_start = now.date().replace(day=1)
        month_start_dt = datetime.combine(month_start, datetime.min.time())

        in_ledger = Payment.status.in_(LEDGER_STATUSES)
        result = await self.db.execute(
            select(
                func.count(Payment.id),
                func.coalesce(func.sum(case((in_ledger, Payment.amount), else_=0)), 0),
                func.coalesce(
                    func.sum(case((and_(in_ledger, Payment.payment_date >= month_start_dt), Payment.amount), else_=0)),
                    0,
                ),
                func.coalesce(func.sum(case((Payment.status == PaymentStatus.COMPLETED, 1), else_=0)), 0),
                func.coalesce(
                    func.sum(case((Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)), 1), else_=0)),
                    0,
                ),
                func.coalesce(func.sum(case((Payment.status == PaymentStatus.FAILED, 1), else_=0)), 0),
                func.coalesce(
                    func.sum(case((and_(Payment.status == PaymentStatus.REFUNDED, Payment.amount < 0), -Payment.amount), else_=0)),
                    0,
                ),
            ).where(Payment.user_id == user_id)
        )
        total_count, total_received, monthly, completed, pending, failed, refunded = result.one()
        return {
            "total_received": money(total_received),
            "monthly_received": money(monthly),
            "total_count": int(total_count or 0),
            "completed_count": int(completed or 0),
            "pending_count": int(pending or 0),
            "failed_count": int(failed or 0),
            "refunded_total": money(refunded),
            "month_start": month_start,
        }


