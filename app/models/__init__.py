"""
Billforge - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin
from app.models.user import User, SubscriptionPlan
from app.models.client import Client
from app.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceHistory,
    InvoiceStatus,
    DiscountType,
    HistoryAction,
)
from app.models.payment import Payment, PaymentStatus, PaymentMethod
from app.models.recurring_invoice import (
    RecurringInvoice,
    RecurringInvoiceItem,
    RecurringFrequency,
    RecurringStatus,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "User",
    "SubscriptionPlan",
    "Client",
    "Invoice",
    "InvoiceItem",
    "InvoiceHistory",
    "InvoiceStatus",
    "DiscountType",
    "HistoryAction",
    "Payment",
    "PaymentStatus",
    "PaymentMethod",
    "RecurringInvoice",
    "RecurringInvoiceItem",
    "RecurringFrequency",
    "RecurringStatus",
]
