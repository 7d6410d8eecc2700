"""
Billforge - Invoice Schemas

Pydantic schemas for invoice management.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.invoice import DiscountType, HistoryAction, InvoiceStatus


# ===========================================
# LINE ITEM SCHEMAS
# ===========================================

class InvoiceItemCreate(BaseModel):
    """Schema for an invoice line item."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    rate: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)


class InvoiceItemResponse(BaseModel):
    id: UUID
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    position: int

    class Config:
        from_attributes = True


# ===========================================
# INVOICE REQUEST SCHEMAS
# ===========================================

class _PricingFields(BaseModel):
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=100, description="Tax rate percentage")
    discount: Decimal = Field(Decimal("0"), ge=0, description="Fixed amount or percentage")
    discount_type: DiscountType = DiscountType.FIXED

    @model_validator(mode="after")
    def percentage_discount_at_most_100(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class InvoiceCreateRequest(_PricingFields):
    """Schema for creating an invoice."""
    client_id: UUID
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=50, description="Allocated when omitted")
    invoice_date: Optional[date] = Field(None, description="Defaults to today")
    due_date: date
    status: InvoiceStatus = InvoiceStatus.DRAFT
    currency: str = Field("USD", min_length=3, max_length=3)
    items: List[InvoiceItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)
    terms: Optional[str] = Field(None, max_length=2000)
    po_number: Optional[str] = Field(None, max_length=100)

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def due_date_not_before_invoice_date(self):
        if self.invoice_date and self.due_date < self.invoice_date:
            raise ValueError("Due date must be on or after invoice date")
        return self


class InvoiceUpdateRequest(BaseModel):
    """Partial update. Items, when present, replace all existing items."""
    client_id: Optional[UUID] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    items: Optional[List[InvoiceItemCreate]] = Field(None, min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)
    terms: Optional[str] = Field(None, max_length=2000)
    po_number: Optional[str] = Field(None, max_length=100)


class InvoiceStatusUpdateRequest(BaseModel):
    status: InvoiceStatus


class InvoiceShareUpdateRequest(BaseModel):
    enabled: bool = True
    regenerate: bool = False


# ===========================================
# BULK OPERATIONS
# ===========================================

class BulkInvoiceIdsRequest(BaseModel):
    invoice_ids: List[UUID] = Field(..., min_length=1, max_length=100)


class BulkStatusUpdateRequest(BulkInvoiceIdsRequest):
    status: InvoiceStatus


class BulkItemResult(BaseModel):
    invoice_id: UUID
    outcome: str  # sent | skipped | failed | not_found | updated | paid | deleted
    message: Optional[str] = None


class BulkOperationResponse(BaseModel):
    results: List[BulkItemResult]
    summary: Dict[str, int]


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class InvoiceClientSummary(BaseModel):
    id: UUID
    name: str
    email: Optional[str] = None
    company: Optional[str] = None

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: UUID
    invoice_number: str
    status: InvoiceStatus
    client_id: UUID
    client: Optional[InvoiceClientSummary] = None
    invoice_date: date
    due_date: date
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount: Decimal
    discount_type: DiscountType
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    currency: str
    notes: Optional[str] = None
    terms: Optional[str] = None
    po_number: Optional[str] = None
    share_id: Optional[str] = None
    share_enabled: bool
    generated_from_recurring: bool
    recurring_template_id: Optional[UUID] = None
    items: List[InvoiceItemResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    total: int
    page: int
    per_page: int
    pages: int


class InvoiceSendResponse(BaseModel):
    invoice: InvoiceResponse
    email_sent: bool
    message: str


class InvoiceHistoryResponse(BaseModel):
    id: int
    action: HistoryAction
    description: str
    amount: Optional[Decimal] = None
    performed_by: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PublicInvoiceResponse(BaseModel):
    """Invoice as seen through a share link."""
    invoice_number: str
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    sender_name: str
    client_name: str
    items: List[InvoiceItemResponse]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    currency: str
    notes: Optional[str] = None
    terms: Optional[str] = None
