"""
Tests for the invoice status machine.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from app.models.invoice import Invoice, InvoiceStatus
from app.services.invoice_workflow import (
    ALLOWED_TRANSITIONS,
    apply_status,
    can_transition,
    ensure_transition,
    reopen_for_collection,
    status_for_payment,
)
from app.utils.error_handling import ErrorCode, InvalidStatusTransitionException

S = InvoiceStatus


def make_invoice(status: InvoiceStatus, **fields) -> Invoice:
    return Invoice(status=status, **fields)


class TestTransitionTable:

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.DRAFT, S.SENT),
            (S.DRAFT, S.VIEWED),
            (S.DRAFT, S.CANCELLED),
            (S.SENT, S.OVERDUE),
            (S.VIEWED, S.PARTIALLY_PAID),
            (S.PARTIALLY_PAID, S.PAID),
            (S.OVERDUE, S.PAID),
            (S.PAID, S.PARTIALLY_PAID),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.DRAFT, S.PAID),
            (S.DRAFT, S.OVERDUE),
            (S.OVERDUE, S.SENT),
            (S.PAID, S.OVERDUE),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidStatusTransitionException) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION

    def test_cancelled_is_terminal(self):
        assert ALLOWED_TRANSITIONS[S.CANCELLED] == frozenset()
        for target in S:
            if target == S.CANCELLED:
                continue
            with pytest.raises(InvalidStatusTransitionException):
                ensure_transition(S.CANCELLED, target)

    def test_paid_cannot_be_cancelled(self):
        with pytest.raises(InvalidStatusTransitionException) as exc_info:
            ensure_transition(S.PAID, S.CANCELLED)
        assert "cannot be cancelled" in exc_info.value.message


class TestApplyStatus:

    def test_sets_transition_timestamps(self):
        now = datetime(2024, 3, 1, 12, 0)
        invoice = make_invoice(S.DRAFT)

        assert apply_status(invoice, S.SENT, now=now) is True
        assert invoice.sent_at == now

        apply_status(invoice, S.PAID, now=now)
        assert invoice.paid_at == now

    def test_same_status_is_a_no_op(self):
        invoice = make_invoice(S.SENT, sent_at=None)
        assert apply_status(invoice, S.SENT) is False
        assert invoice.sent_at is None

    def test_leaving_paid_clears_paid_at(self):
        invoice = make_invoice(S.PAID, paid_at=datetime(2024, 1, 1))
        apply_status(invoice, S.PARTIALLY_PAID)
        assert invoice.paid_at is None

    def test_cancel_sets_cancelled_at(self):
        invoice = make_invoice(S.OVERDUE)
        apply_status(invoice, S.CANCELLED)
        assert invoice.cancelled_at is not None


class TestReopenForCollection:

    @pytest.mark.parametrize("status", [S.PAID, S.PARTIALLY_PAID, S.OVERDUE, S.VIEWED])
    def test_reopens_to_sent(self, status):
        invoice = make_invoice(status, paid_at=datetime(2024, 1, 1), sent_at=datetime(2023, 12, 1))
        assert reopen_for_collection(invoice) is True
        assert invoice.status == S.SENT
        assert invoice.paid_at is None
        assert invoice.sent_at == datetime(2023, 12, 1)

    def test_already_sent(self):
        invoice = make_invoice(S.SENT)
        assert reopen_for_collection(invoice) is False

    def test_cancelled_is_refused(self):
        with pytest.raises(InvalidStatusTransitionException):
            reopen_for_collection(make_invoice(S.CANCELLED))


class TestStatusForPayment:

    def test_partial(self):
        assert status_for_payment(Decimal("100"), Decimal("40")) == S.PARTIALLY_PAID

    def test_full(self):
        assert status_for_payment(Decimal("100"), Decimal("100")) == S.PAID
