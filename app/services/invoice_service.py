"""
Billforge - Invoice Service

Business logic for the invoice ledger: creation with numbering and quota,
edits with total recomputation, status changes, sending, sharing,
duplication, cancellation and the public view.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.client import Client
from app.models.invoice import (
    DiscountType,
    HistoryAction,
    Invoice,
    InvoiceHistory,
    InvoiceItem,
    InvoiceStatus,
)
from app.models.payment import Payment
from app.models.user import User
from app.services.invoice_numbering import allocate_invoice_number
from app.services.invoice_totals import balance_due, line_amount, validated_totals
from app.services.invoice_workflow import (
    apply_status,
    ensure_transition,
    fetch_invoice,
    invoice_load_options,
    record_history,
    status_for_payment,
)
from app.services.notification_service import DeliveryOutcome, NotificationService
from app.services.quota_service import InvoiceQuotaService
from app.utils.error_handling import (
    AppException,
    BusinessRuleException,
    CannotModifyException,
    ClientNotFoundException,
    DuplicateInvoiceNumberException,
    ErrorCode,
    InvalidStatusTransitionException,
    InvoiceNotFoundException,
    NotFoundException,
    ValidationException,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


SORTABLE_FIELDS = {
    "invoice_date": Invoice.invoice_date,
    "due_date": Invoice.due_date,
    "created_at": Invoice.created_at,
    "invoice_number": Invoice.invoice_number,
    "total_amount": Invoice.total_amount,
    "balance_due": Invoice.balance_due,
    "status": Invoice.status,
}

MAX_PER_PAGE = 100


def new_share_id() -> str:
    return uuid.uuid4().hex


def bulk_summary(results: List[Dict[str, Any]], requested: int) -> Dict[str, int]:
    summary: Dict[str, int] = {"total_requested": requested}
    for result in results:
        summary[result["outcome"]] = summary.get(result["outcome"], 0) + 1
    return summary


class InvoiceService:
    """Service for invoice operations."""

    def __init__(self, db: AsyncSession, notifications: Optional[NotificationService] = None):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundException("User", user_id, code=ErrorCode.USER_NOT_FOUND)
        return user

    async def _get_client(self, user_id: uuid.UUID, client_id: uuid.UUID) -> Client:
        result = await self.db.execute(
            select(Client).where(Client.id == client_id, Client.user_id == user_id)
        )
        client = result.scalar_one_or_none()
        if client is None:
            raise ClientNotFoundException(client_id)
        return client

    async def get_invoice(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        invoice = await fetch_invoice(self.db, invoice_id, user_id=user_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return invoice

    async def get_shared_invoice(self, share_id: str) -> Invoice:
        """Invoice behind an enabled share link."""
        result = await self.db.execute(
            select(Invoice.id).where(Invoice.share_id == share_id, Invoice.share_enabled.is_(True))
        )
        invoice_id = result.scalar_one_or_none()
        invoice = await fetch_invoice(self.db, invoice_id) if invoice_id else None
        if invoice is None:
            raise InvoiceNotFoundException(message="Shared invoice not found or link disabled")
        return invoice

    async def list_invoices(
        self,
        user_id: uuid.UUID,
        status: Optional[InvoiceStatus] = None,
        client_id: Optional[uuid.UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        per_page: int = 10,
    ) -> Tuple[List[Invoice], int]:
        """Filtered, sorted, paginated invoices of a user."""
        conditions = [Invoice.user_id == user_id]
        if status:
            conditions.append(Invoice.status == status)
        if client_id:
            conditions.append(Invoice.client_id == client_id)
        if date_from:
            conditions.append(Invoice.invoice_date >= date_from)
        if date_to:
            conditions.append(Invoice.invoice_date <= date_to)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(
                    Invoice.invoice_number.ilike(pattern),
                    Invoice.notes.ilike(pattern),
                    Invoice.po_number.ilike(pattern),
                    Invoice.client_id.in_(
                        select(Client.id).where(
                            Client.user_id == user_id,
                            or_(Client.name.ilike(pattern), Client.email.ilike(pattern), Client.company.ilike(pattern)),
                        )
                    ),
                )
            )

        total = (
            await self.db.execute(select(func.count(Invoice.id)).where(and_(*conditions)))
        ).scalar() or 0

        column = SORTABLE_FIELDS.get(sort_by, Invoice.created_at)
        order = column.asc() if sort_order.lower() == "asc" else column.desc()
        per_page = max(1, min(per_page, MAX_PER_PAGE))
        page = max(1, page)

        result = await self.db.execute(
            select(Invoice)
            .options(*invoice_load_options())
            .where(and_(*conditions))
            .order_by(order, Invoice.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total

    async def get_history(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> List[InvoiceHistory]:
        await self.get_invoice(user_id, invoice_id)
        result = await self.db.execute(
            select(InvoiceHistory)
            .where(InvoiceHistory.invoice_id == invoice_id)
            .order_by(InvoiceHistory.id)
        )
        return list(result.scalars().all())

    # ===========================================
    # CREATION
    # ===========================================

    def _build_items(self, items: Sequence[Dict[str, Any]]) -> List[InvoiceItem]:
        built = []
        for position, item in enumerate(items):
            quantity = Decimal(str(item["quantity"]))
            rate = Decimal(str(item["rate"]))
            if quantity < 0 or rate < 0:
                raise ValidationException("Item quantity and rate must not be negative", field="items")
            built.append(InvoiceItem(
                position=position,
                description=item["description"],
                quantity=quantity,
                rate=rate,
                amount=line_amount(quantity, rate),
            ))
        return built

    def _apply_totals(self, invoice: Invoice) -> None:
        totals = validated_totals(
            [(item.quantity, item.rate) for item in invoice.items],
            tax_rate=invoice.tax_rate,
            discount=invoice.discount,
            discount_type=invoice.discount_type,
        )
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.tax_amount
        invoice.discount_amount = totals.discount_amount
        invoice.total_amount = totals.total_amount
        invoice.balance_due = balance_due(totals.total_amount, invoice.paid_amount or Decimal("0"))

    async def _ensure_number_free(self, user_id: uuid.UUID, invoice_number: str) -> None:
        result = await self.db.execute(
            select(Invoice.id).where(Invoice.user_id == user_id, Invoice.invoice_number == invoice_number)
        )
        if result.first() is not None:
            raise DuplicateInvoiceNumberException(invoice_number)

    async def build_invoice(
        self,
        user: User,
        client_id: uuid.UUID,
        due_date: date,
        items: Sequence[Dict[str, Any]],
        invoice_date: Optional[date] = None,
        tax_rate: Decimal = Decimal("0"),
        discount: Decimal = Decimal("0"),
        discount_type: DiscountType = DiscountType.FIXED,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
        terms: Optional[str] = None,
        po_number: Optional[str] = None,
        invoice_number: Optional[str] = None,
        performed_by: Optional[uuid.UUID] = None,
        history_description: Optional[str] = None,
        recurring_template_id: Optional[uuid.UUID] = None,
    ) -> Invoice:
        """
        Add a new DRAFT invoice, its items and the CREATED history row to the
        session without committing. The caller owns the transaction.
        """
        invoice_date = invoice_date or utcnow().date()
        if due_date < invoice_date:
            raise ValidationException("Due date must be on or after invoice date", field="due_date")
        if not items:
            raise ValidationException("An invoice needs at least one item", field="items")
        line_items = self._build_items(items)
        validated_totals([(i.quantity, i.rate) for i in line_items], tax_rate, discount, discount_type)

        await self._get_client(user.id, client_id)
        await InvoiceQuotaService(self.db).check_and_reserve(user)

        if invoice_number:
            await self._ensure_number_free(user.id, invoice_number)
        else:
            invoice_number = await allocate_invoice_number(self.db, user.id)

        invoice = Invoice(
            id=uuid.uuid4(),
            user_id=user.id,
            client_id=client_id,
            invoice_number=invoice_number,
            status=InvoiceStatus.DRAFT,
            invoice_date=invoice_date,
            due_date=due_date,
            tax_rate=Decimal(str(tax_rate or 0)),
            discount=Decimal(str(discount or 0)),
            discount_type=discount_type,
            paid_amount=Decimal("0"),
            currency=(currency or user.default_currency).upper(),
            notes=notes,
            terms=terms,
            po_number=po_number,
            share_enabled=False,
            generated_from_recurring=recurring_template_id is not None,
            recurring_template_id=recurring_template_id,
            items=line_items,
        )
        self._apply_totals(invoice)
        self.db.add(invoice)

        record_history(
            self.db,
            invoice.id,
            HistoryAction.CREATED,
            history_description or f"Invoice {invoice_number} created",
            performed_by=performed_by,
        )
        return invoice

    async def create_invoice(
        self,
        user_id: uuid.UUID,
        client_id: uuid.UUID,
        due_date: date,
        items: Sequence[Dict[str, Any]],
        status: InvoiceStatus = InvoiceStatus.DRAFT,
        **fields: Any,
    ) -> Invoice:
        """
        Create an invoice atomically: number, quota, items and CREATED history
        commit together. A non-DRAFT starting status must be reachable from DRAFT.
        """
        user = await self._get_user(user_id)
        if status != InvoiceStatus.DRAFT:
            ensure_transition(InvoiceStatus.DRAFT, status)
        try:
            invoice = await self.build_invoice(user, client_id, due_date, items, performed_by=user_id, **fields)
            if status != InvoiceStatus.DRAFT:
                apply_status(invoice, status)
                if status == InvoiceStatus.SENT:
                    invoice.share_id = new_share_id()
                    invoice.share_enabled = True
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Created invoice {invoice.invoice_number} for user {user_id}")
        return await fetch_invoice(self.db, invoice.id)

    # ===========================================
    # EDITS
    # ===========================================

    async def update_invoice(
        self,
        user_id: uuid.UUID,
        invoice_id: uuid.UUID,
        items: Optional[Sequence[Dict[str, Any]]] = None,
        **fields: Any,
    ) -> Invoice:
        """
        Partial update. New items replace the old ones; totals and balance are
        recomputed keeping payments already applied.
        """
        invoice = await self.get_invoice(user_id, invoice_id)
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            raise CannotModifyException(f"Cannot edit an invoice with status {invoice.status.value}")

        fields = {k: v for k, v in fields.items() if v is not None}
        if "client_id" in fields:
            await self._get_client(user_id, fields["client_id"])
        if "currency" in fields:
            fields["currency"] = fields["currency"].upper()

        if fields.get("due_date", invoice.due_date) < fields.get("invoice_date", invoice.invoice_date):
            raise ValidationException("Due date must be on or after invoice date", field="due_date")
        if items is not None and not items:
            raise ValidationException("An invoice needs at least one item", field="items")

        # Pricing is checked on the merged values before anything is touched
        new_items = self._build_items(items) if items is not None else None
        totals = validated_totals(
            [(i.quantity, i.rate) for i in (new_items if new_items is not None else invoice.items)],
            tax_rate=fields.get("tax_rate", invoice.tax_rate),
            discount=fields.get("discount", invoice.discount),
            discount_type=fields.get("discount_type", invoice.discount_type),
        )
        paid = invoice.paid_amount or Decimal("0")
        if totals.total_amount < paid:
            raise BusinessRuleException(
                f"Invoice total {totals.total_amount} would fall below the {paid} already paid",
                rule="total_covers_payments",
                details={"total_amount": str(totals.total_amount), "paid_amount": str(paid)},
            )

        try:
            for key, value in fields.items():
                setattr(invoice, key, value)
            if new_items is not None:
                invoice.items.clear()
                await self.db.flush()
                invoice.items.extend(new_items)

            self._apply_totals(invoice)
            if invoice.paid_amount > 0:
                apply_status(invoice, status_for_payment(invoice.total_amount, invoice.paid_amount))

            record_history(self.db, invoice.id, HistoryAction.UPDATED, "Invoice updated", performed_by=user_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return await fetch_invoice(self.db, invoice_id)

    async def delete_invoice(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> None:
        invoice = await self.get_invoice(user_id, invoice_id)
        payment_count = (
            await self.db.execute(select(func.count(Payment.id)).where(Payment.invoice_id == invoice.id))
        ).scalar() or 0
        if payment_count:
            raise CannotModifyException(
                "Cannot delete an invoice with recorded payments",
                code=ErrorCode.CANNOT_DELETE,
            )
        await self.db.delete(invoice)
        await self.db.commit()
        logger.info(f"Deleted invoice {invoice.invoice_number} for user {user_id}")

    async def change_status(
        self,
        user_id: uuid.UUID,
        invoice_id: uuid.UUID,
        target: InvoiceStatus,
        description: Optional[str] = None,
    ) -> Invoice:
        """
        Manual status change along the permitted edges. PAID and
        PARTIALLY_PAID must agree with the recorded payments.
        """
        invoice = await self.get_invoice(user_id, invoice_id)
        if target == InvoiceStatus.PAID and invoice.paid_amount < invoice.total_amount:
            raise InvalidStatusTransitionException(
                invoice.status.value, target.value,
                "Invoice cannot be PAID before payments cover the total; record a payment instead",
            )
        if target == InvoiceStatus.PARTIALLY_PAID and not (0 < invoice.paid_amount < invoice.total_amount):
            raise InvalidStatusTransitionException(
                invoice.status.value, target.value,
                "PARTIALLY_PAID requires a partial payment on the invoice",
            )

        previous = invoice.status
        if not apply_status(invoice, target):
            return invoice

        action = HistoryAction.CANCELLED if target == InvoiceStatus.CANCELLED else HistoryAction.STATUS_CHANGED
        record_history(
            self.db,
            invoice.id,
            action,
            description or f"Status changed from {previous.value.upper()} to {target.value.upper()}",
            performed_by=user_id,
        )
        await self.db.commit()
        return await fetch_invoice(self.db, invoice.id)

    async def cancel_invoice(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.get_invoice(user_id, invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            return invoice
        return await self.change_status(user_id, invoice_id, InvoiceStatus.CANCELLED, "Invoice cancelled")

    # ===========================================
    # SHARING AND SENDING
    # ===========================================

    async def update_share(
        self,
        user_id: uuid.UUID,
        invoice_id: uuid.UUID,
        enabled: bool = True,
        regenerate: bool = False,
    ) -> Invoice:
        """Enable/disable the public link; regenerate invalidates the old one."""
        invoice = await self.get_invoice(user_id, invoice_id)
        if regenerate or (enabled and not invoice.share_id):
            invoice.share_id = new_share_id()
        invoice.share_enabled = enabled
        await self.db.commit()
        return invoice

    async def send_invoice(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> Tuple[Invoice, bool]:
        """
        Email the invoice and mark it SENT.

        Delivery is best effort: the invoice is marked SENT even when the
        client has no email address or the email fails, and the history row
        says which. Returns (invoice, email_sent).
        """
        invoice = await self.get_invoice(user_id, invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidStatusTransitionException(
                invoice.status.value, InvoiceStatus.SENT.value, "Cancelled invoices cannot be sent"
            )

        if not invoice.share_id or not invoice.share_enabled:
            invoice.share_id = invoice.share_id or new_share_id()
            invoice.share_enabled = True
            await self.db.commit()

        outcome = await self.notifications.send_invoice(invoice)

        if outcome == DeliveryOutcome.SENT:
            description = f"Invoice sent to {invoice.client.email}"
        elif outcome == DeliveryOutcome.NO_RECIPIENT:
            description = "Invoice marked as SENT (client email missing)"
        else:
            description = "Invoice marked as SENT (email sending failed)"

        if invoice.status == InvoiceStatus.DRAFT:
            apply_status(invoice, InvoiceStatus.SENT)
        elif outcome == DeliveryOutcome.SENT:
            description = f"Invoice re-sent to {invoice.client.email}"

        record_history(self.db, invoice.id, HistoryAction.SENT, description, performed_by=user_id)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number}: {description}")
        return await fetch_invoice(self.db, invoice.id), outcome == DeliveryOutcome.SENT

    async def mark_viewed(self, share_id: str) -> Invoice:
        """
        Public view through a share link. DRAFT/SENT move to VIEWED once; any
        other status is left alone and no history is written.
        """
        invoice = await self.get_shared_invoice(share_id)
        if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.SENT):
            apply_status(invoice, InvoiceStatus.VIEWED)
            record_history(self.db, invoice.id, HistoryAction.VIEWED, "Invoice viewed by client")
            await self.db.commit()
        return invoice

    # ===========================================
    # DUPLICATION
    # ===========================================

    async def duplicate_invoice(self, user_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        """Copy pricing and items into a new DRAFT dated today, keeping the due-date offset."""
        source = await self.get_invoice(user_id, invoice_id)
        user = await self._get_user(user_id)
        today = utcnow().date()
        offset = max(0, (source.due_date - source.invoice_date).days)

        try:
            invoice = await self.build_invoice(
                user,
                source.client_id,
                due_date=date.fromordinal(today.toordinal() + offset),
                items=[
                    {"description": i.description, "quantity": i.quantity, "rate": i.rate}
                    for i in source.items
                ],
                invoice_date=today,
                tax_rate=source.tax_rate,
                discount=source.discount,
                discount_type=source.discount_type,
                currency=source.currency,
                notes=source.notes,
                terms=source.terms,
                po_number=source.po_number,
                performed_by=user_id,
                history_description=f"Invoice duplicated from {source.invoice_number}",
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return await fetch_invoice(self.db, invoice.id)

    # ===========================================
    # BULK OPERATIONS
    # ===========================================

    async def _bulk(self, user_id: uuid.UUID, invoice_ids: Sequence[uuid.UUID], handler) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        for invoice_id in invoice_ids:
            try:
                outcome, message = await handler(invoice_id)
            except InvoiceNotFoundException:
                outcome, message = "not_found", "Invoice not found or not owned by user"
            except AppException as e:
                await self.db.rollback()
                outcome, message = "skipped", e.message
            except Exception as e:
                await self.db.rollback()
                logger.exception(f"Bulk operation failed for invoice {invoice_id}")
                outcome, message = "failed", str(e)
            results.append({"invoice_id": invoice_id, "outcome": outcome, "message": message})
        return {"results": results, "summary": bulk_summary(results, len(invoice_ids))}

    async def bulk_send(self, user_id: uuid.UUID, invoice_ids: Sequence[uuid.UUID]) -> Dict[str, Any]:
        async def handler(invoice_id):
            _, email_sent = await self.send_invoice(user_id, invoice_id)
            if email_sent:
                return "sent", None
            return "failed", "Invoice marked as SENT but the email was not delivered"
        return await self._bulk(user_id, invoice_ids, handler)

    async def bulk_update_status(
        self,
        user_id: uuid.UUID,
        invoice_ids: Sequence[uuid.UUID],
        status: InvoiceStatus,
    ) -> Dict[str, Any]:
        async def handler(invoice_id):
            await self.change_status(
                user_id, invoice_id, status, f"Status changed to {status.value.upper()} (bulk)"
            )
            return "updated", None
        return await self._bulk(user_id, invoice_ids, handler)

    async def bulk_mark_paid(self, user_id: uuid.UUID, invoice_ids: Sequence[uuid.UUID]) -> Dict[str, Any]:
        """Record a payment for the outstanding balance of each invoice."""
        from app.models.payment import PaymentMethod
        from app.services.payment_service import PaymentService

        payments = PaymentService(self.db, notifications=self.notifications)

        async def handler(invoice_id):
            invoice = await self.get_invoice(user_id, invoice_id)
            if invoice.balance_due <= 0:
                return "skipped", "Invoice has no outstanding balance"
            await payments.record_payment(
                user_id,
                invoice_id,
                invoice.balance_due,
                PaymentMethod.OTHER,
                notes="Marked as paid (bulk)",
            )
            return "paid", None
        return await self._bulk(user_id, invoice_ids, handler)

    async def bulk_delete(self, user_id: uuid.UUID, invoice_ids: Sequence[uuid.UUID]) -> Dict[str, Any]:
        async def handler(invoice_id):
            await self.delete_invoice(user_id, invoice_id)
            return "deleted", None
        return await self._bulk(user_id, invoice_ids, handler)
