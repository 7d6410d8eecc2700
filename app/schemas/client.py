"""
Billforge - Client and User Settings Schemas
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from app.models.user import SubscriptionPlan


class ClientCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    company: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=1000)


class ClientResponse(BaseModel):
    id: UUID
    name: str
    email: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ClientListResponse(BaseModel):
    clients: List[ClientResponse]
    total: int


class UserSettingsResponse(BaseModel):
    email: str
    full_name: str
    company_name: Optional[str] = None
    subscription_plan: SubscriptionPlan
    invoice_limit: int
    invoice_prefix: str
    next_invoice_number: str
    payment_terms: int
    default_currency: str
    email_notifications_enabled: bool
    email_notify_new_invoice: bool
    email_notify_payment_received: bool
    email_notify_invoice_overdue: bool
    invoices_used: int
    invoices_remaining: Optional[int] = None


class UserSettingsUpdateRequest(BaseModel):
    company_name: Optional[str] = Field(None, max_length=255)
    invoice_prefix: Optional[str] = Field(None, min_length=1, max_length=20, pattern=r"^[A-Za-z0-9_]+$")
    invoice_start_number: Optional[int] = Field(None, ge=1)
    payment_terms: Optional[int] = Field(None, ge=0, le=365)
    default_currency: Optional[str] = Field(None, min_length=3, max_length=3)
    email_notifications_enabled: Optional[bool] = None
    email_notify_new_invoice: Optional[bool] = None
    email_notify_payment_received: Optional[bool] = None
    email_notify_invoice_overdue: Optional[bool] = None
