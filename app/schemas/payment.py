"""
Billforge - Payment Schemas
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.payment import PaymentMethod, PaymentStatus


class PaymentCreateRequest(BaseModel):
    """Manual payment against an invoice."""
    invoice_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    transaction_id: Optional[str] = Field(None, max_length=255)
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentProcessRequest(BaseModel):
    """Gateway payment against an invoice."""
    invoice_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    notes: Optional[str] = Field(None, max_length=1000)


class PublicPaymentRequest(BaseModel):
    """Payment submitted through a share link (invoice implied by the link)."""
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    notes: Optional[str] = Field(None, max_length=1000)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2, description="Defaults to the full payment")
    reason: Optional[str] = Field(None, max_length=1000)


class ExternalPaymentRequest(BaseModel):
    """Checkout completion reported by the card processor."""
    invoice_id: UUID
    amount: Decimal = Field(..., gt=0)
    transaction_id: str = Field(..., min_length=1, max_length=255)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class PaymentResponse(BaseModel):
    id: UUID
    invoice_id: UUID
    payment_number: str
    amount: Decimal
    net_amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    payment_date: datetime
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    per_page: int
    pages: int


class PaymentStatisticsResponse(BaseModel):
    total_received: Decimal
    monthly_received: Decimal
    total_count: int
    completed_count: int
    pending_count: int
    failed_count: int
    refunded_total: Decimal
    month_start: date
