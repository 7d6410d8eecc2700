"""
Billforge - Recurring Invoice Schemas
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.models.invoice import DiscountType
from app.models.recurring_invoice import RecurringFrequency, RecurringStatus


class RecurringItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    rate: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)


class RecurringItemResponse(RecurringItemCreate):
    id: UUID
    position: int

    class Config:
        from_attributes = True


class RecurringInvoiceCreateRequest(BaseModel):
    client_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    frequency: RecurringFrequency
    interval: int = Field(1, ge=1, le=365)
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    due_in_days: Optional[int] = Field(None, ge=1, le=365)
    auto_send: bool = False
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=100)
    discount: Decimal = Field(Decimal("0"), ge=0)
    discount_type: DiscountType = DiscountType.FIXED
    currency: str = Field("USD", min_length=3, max_length=3)
    notes: Optional[str] = Field(None, max_length=2000)
    terms: Optional[str] = Field(None, max_length=2000)
    items: List[RecurringItemCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_dates_and_discount(self):
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be on or after start date")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class RecurringInvoiceUpdateRequest(BaseModel):
    client_id: Optional[UUID] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    frequency: Optional[RecurringFrequency] = None
    interval: Optional[int] = Field(None, ge=1, le=365)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    due_in_days: Optional[int] = Field(None, ge=1, le=365)
    auto_send: Optional[bool] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    notes: Optional[str] = Field(None, max_length=2000)
    terms: Optional[str] = Field(None, max_length=2000)
    items: Optional[List[RecurringItemCreate]] = Field(None, min_length=1)


class RecurringInvoiceResponse(BaseModel):
    id: UUID
    client_id: UUID
    name: str
    frequency: RecurringFrequency
    interval: int
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    occurrences_count: int
    next_run_at: datetime
    last_run_at: Optional[datetime] = None
    status: RecurringStatus
    auto_send: bool
    due_in_days: Optional[int] = None
    tax_rate: Decimal
    discount: Decimal
    discount_type: DiscountType
    currency: str
    notes: Optional[str] = None
    terms: Optional[str] = None
    items: List[RecurringItemResponse] = []
    created_at: datetime

    class Config:
        from_attributes = True


class RecurringInvoiceListResponse(BaseModel):
    recurring_invoices: List[RecurringInvoiceResponse]
    total: int


class ProcessDueResponse(BaseModel):
    processed: int
    failed: int
