"""
Billforge - Invoice Totals

Derived financial fields of an invoice:

    subtotal = sum(quantity * rate)
    tax      = subtotal * tax_rate / 100
    discount = subtotal * discount / 100 (PERCENTAGE) or discount (FIXED)
    total    = subtotal + tax - discount
    balance  = max(0, total - paid)

validated_totals refuses a discount that would take the total below zero.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Tuple

from app.models.invoice import DiscountType
from app.utils.error_handling import ValidationException

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    """Round to cents."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_amount(quantity: Decimal, rate: Decimal) -> Decimal:
    return money(Decimal(quantity) * Decimal(rate))


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def calculate_totals(
    items: Iterable[Tuple[Decimal, Decimal]],
    tax_rate: Decimal = ZERO,
    discount: Decimal = ZERO,
    discount_type: DiscountType = DiscountType.FIXED,
) -> InvoiceTotals:
    """Compute totals from (quantity, rate) pairs."""
    subtotal = money(sum((line_amount(q, r) for q, r in items), ZERO))
    tax_amount = money(subtotal * Decimal(tax_rate or 0) / HUNDRED)

    discount = Decimal(discount or 0)
    if discount_type == DiscountType.PERCENTAGE:
        discount_amount = money(subtotal * discount / HUNDRED)
    else:
        discount_amount = money(discount)

    total = money(subtotal + tax_amount - discount_amount)
    return InvoiceTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=total,
    )


def validated_totals(
    items: Iterable[Tuple[Decimal, Decimal]],
    tax_rate: Decimal = ZERO,
    discount: Decimal = ZERO,
    discount_type: DiscountType = DiscountType.FIXED,
) -> InvoiceTotals:
    """calculate_totals that refuses a discount the invoice cannot carry."""
    discount = Decimal(discount or 0)
    if discount < 0:
        raise ValidationException("Discount must not be negative", field="discount")
    if discount_type == DiscountType.PERCENTAGE and discount > HUNDRED:
        raise ValidationException("Percentage discount cannot exceed 100", field="discount")

    totals = calculate_totals(items, tax_rate, discount, discount_type)
    if totals.total_amount < 0:
        raise ValidationException(
            f"Discount of {totals.discount_amount} exceeds the invoice amount",
            field="discount",
            details={"subtotal": str(totals.subtotal), "tax_amount": str(totals.tax_amount)},
        )
    return totals


def balance_due(total_amount: Decimal, paid_amount: Decimal) -> Decimal:
    return max(ZERO, money(Decimal(total_amount) - Decimal(paid_amount)))
