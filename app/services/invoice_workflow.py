"""
Billforge - Invoice Workflow

The invoice state machine and the audit-trail writer. Every status change
goes through apply_status so the transition table is enforced in one place.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.invoice import HistoryAction, Invoice, InvoiceHistory, InvoiceStatus
from app.utils.error_handling import InvalidStatusTransitionException
from app.utils.time import utcnow

S = InvoiceStatus

ALLOWED_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    S.DRAFT: frozenset({S.SENT, S.VIEWED, S.CANCELLED}),
    S.SENT: frozenset({S.VIEWED, S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED}),
    S.VIEWED: frozenset({S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED}),
    S.PARTIALLY_PAID: frozenset({S.PAID, S.OVERDUE, S.CANCELLED, S.SENT}),
    S.OVERDUE: frozenset({S.PARTIALLY_PAID, S.PAID, S.CANCELLED}),
    # Leaving PAID only happens through a refund
    S.PAID: frozenset({S.PARTIALLY_PAID, S.SENT}),
    S.CANCELLED: frozenset(),
}

# Statuses that still expect money
OPEN_STATUSES = frozenset({S.SENT, S.VIEWED, S.PARTIALLY_PAID, S.OVERDUE})


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if current == S.CANCELLED:
        raise InvalidStatusTransitionException(
            current.value, target.value, "Cancelled invoices cannot change status"
        )
    if target == S.CANCELLED and current == S.PAID:
        raise InvalidStatusTransitionException(
            current.value, target.value, "Paid invoices cannot be cancelled"
        )
    if not can_transition(current, target):
        raise InvalidStatusTransitionException(current.value, target.value)


def apply_status(invoice: Invoice, target: InvoiceStatus, now: Optional[datetime] = None) -> bool:
    """
    Move an invoice to target, setting the timestamp the transition produces.

    Returns False when the invoice is already in the target state.
    """
    if invoice.status == target:
        return False
    ensure_transition(invoice.status, target)

    now = now or utcnow()
    was_paid = invoice.status == S.PAID
    invoice.status = target
    if target == S.PAID:
        invoice.paid_at = now
    elif target == S.CANCELLED:
        invoice.cancelled_at = now
    elif target == S.SENT and invoice.sent_at is None:
        invoice.sent_at = now
    elif target == S.VIEWED and invoice.viewed_at is None:
        invoice.viewed_at = now

    # Refund out of PAID reverts paid_at
    if was_paid:
        invoice.paid_at = None
    return True


def reopen_for_collection(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """
    Refunds put any non-cancelled invoice back to SENT, whatever its current
    status, and revert paid_at.
    """
    if invoice.status == S.CANCELLED:
        raise InvalidStatusTransitionException(
            invoice.status.value, S.SENT.value, "Cancelled invoices cannot be reopened"
        )
    invoice.paid_at = None
    if invoice.status == S.SENT:
        return False
    invoice.status = S.SENT
    if invoice.sent_at is None:
        invoice.sent_at = now or utcnow()
    return True


def status_for_payment(total_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    """PAID iff the paid amount covers the total."""
    if paid_amount >= total_amount:
        return S.PAID
    return S.PARTIALLY_PAID


def record_history(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    action: HistoryAction,
    description: str,
    performed_by: Optional[uuid.UUID] = None,
    amount: Optional[Decimal] = None,
) -> InvoiceHistory:
    """Append an audit trail row to the current unit of work."""
    entry = InvoiceHistory(
        invoice_id=invoice_id,
        action=action,
        description=description,
        performed_by=performed_by,
        amount=amount,
    )
    db.add(entry)
    return entry


def invoice_load_options():
    """Eager loads needed to serialize, render or email an invoice."""
    return (
        selectinload(Invoice.items),
        selectinload(Invoice.client),
        selectinload(Invoice.user),
    )


async def fetch_invoice(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    user_id: Optional[uuid.UUID] = None,
    with_payments: bool = False,
    for_update: bool = False,
) -> Optional[Invoice]:
    """Load an invoice (scoped to user_id when given) with fresh relationships."""
    query = (
        select(Invoice)
        .options(*invoice_load_options())
        .where(Invoice.id == invoice_id)
        .execution_options(populate_existing=True)
    )
    if with_payments:
        query = query.options(selectinload(Invoice.payments))
    if user_id is not None:
        query = query.where(Invoice.user_id == user_id)
    if for_update:
        query = query.with_for_update(of=Invoice)
    result = await db.execute(query)
    return result.scalar_one_or_none()
