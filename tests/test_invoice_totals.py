"""
Tests for invoice total and balance derivation.
"""

from decimal import Decimal

import pytest

from app.models.invoice import DiscountType
from app.services.invoice_totals import balance_due, calculate_totals, line_amount, money, validated_totals
from app.utils.error_handling import ValidationException


class TestCalculateTotals:
    """subtotal + tax - discount"""

    def test_fixed_discount_with_tax(self):
        totals = calculate_totals(
            [(Decimal("2"), Decimal("50.00"))],
            tax_rate=Decimal("10"),
            discount=Decimal("5"),
            discount_type=DiscountType.FIXED,
        )
        assert totals.subtotal == Decimal("100.00")
        assert totals.tax_amount == Decimal("10.00")
        assert totals.discount_amount == Decimal("5.00")
        assert totals.total_amount == Decimal("105.00")

    def test_percentage_discount_is_taken_from_subtotal(self):
        totals = calculate_totals(
            [(Decimal("1"), Decimal("200.00")), (Decimal("3"), Decimal("10.00"))],
            tax_rate=Decimal("0"),
            discount=Decimal("10"),
            discount_type=DiscountType.PERCENTAGE,
        )
        assert totals.subtotal == Decimal("230.00")
        assert totals.discount_amount == Decimal("23.00")
        assert totals.total_amount == Decimal("207.00")

    def test_no_items(self):
        totals = calculate_totals([])
        assert totals.subtotal == Decimal("0.00")
        assert totals.total_amount == Decimal("0.00")

    def test_rounding_to_cents(self):
        totals = calculate_totals([(Decimal("3"), Decimal("3.33"))], tax_rate=Decimal("7.5"))
        assert totals.subtotal == Decimal("9.99")
        # 0.74925 rounds half up
        assert totals.tax_amount == Decimal("0.75")
        assert totals.total_amount == Decimal("10.74")

    def test_line_amount(self):
        assert line_amount(Decimal("1.5"), Decimal("19.99")) == Decimal("29.99")


class TestValidatedTotals:

    def test_full_percentage_discount_is_allowed(self):
        totals = validated_totals(
            [(Decimal("1"), Decimal("80.00"))], discount=Decimal("100"), discount_type=DiscountType.PERCENTAGE
        )
        assert totals.total_amount == Decimal("0.00")

    def test_percentage_over_100(self):
        with pytest.raises(ValidationException) as exc_info:
            validated_totals(
                [(Decimal("1"), Decimal("80.00"))],
                discount=Decimal("150"),
                discount_type=DiscountType.PERCENTAGE,
            )
        assert exc_info.value.field == "discount"

    def test_fixed_discount_may_absorb_tax(self):
        totals = validated_totals(
            [(Decimal("1"), Decimal("100.00"))], tax_rate=Decimal("10"), discount=Decimal("110")
        )
        assert totals.total_amount == Decimal("0.00")

    def test_fixed_discount_beyond_total(self):
        with pytest.raises(ValidationException):
            validated_totals(
                [(Decimal("1"), Decimal("100.00"))], tax_rate=Decimal("10"), discount=Decimal("110.01")
            )

    def test_negative_discount(self):
        with pytest.raises(ValidationException):
            validated_totals([(Decimal("1"), Decimal("100.00"))], discount=Decimal("-1"))


class TestBalanceDue:

    @pytest.mark.parametrize(
        "total,paid,expected",
        [
            ("100.00", "0", "100.00"),
            ("100.00", "40.00", "60.00"),
            ("100.00", "100.00", "0.00"),
            ("100.00", "120.00", "0"),
        ],
    )
    def test_balance_never_negative(self, total, paid, expected):
        assert balance_due(Decimal(total), Decimal(paid)) == Decimal(expected)

    def test_money_quantizes(self):
        assert money("12.345") == Decimal("12.35")
        assert str(money(7)) == "7.00"
