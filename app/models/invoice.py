"""
Billforge - Invoice Model

Invoice, line items and the append-only invoice history.

Lifecycle:
- DRAFT -> SENT -> VIEWED -> PARTIALLY_PAID <-> PAID
- SENT / VIEWED / PARTIALLY_PAID -> OVERDUE once the due date passes
- any state except PAID -> CANCELLED (terminal)
- refunds reopen PAID / PARTIALLY_PAID invoices back to SENT
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import BaseModel
from app.utils.time import utcnow

if TYPE_CHECKING:
    from app.models.client import Client
    from app.models.payment import Payment
    from app.models.user import User


class InvoiceStatus(str, Enum):
    """Invoice status workflow."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class HistoryAction(str, Enum):
    """Actions recorded in the invoice audit trail."""
    CREATED = "created"
    UPDATED = "updated"
    SENT = "sent"
    VIEWED = "viewed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    REMINDER_SENT = "reminder_sent"
    STATUS_CHANGED = "status_changed"
    CANCELLED = "cancelled"
    DELETED = "deleted"
    EXPORTED = "exported"
    NOTIFICATION = "notification"


class Invoice(BaseModel):
    """
    Invoice issued by a user to one of their clients.

    Financial fields are derived: see app.services.invoice_totals.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("user_id", "invoice_number", name="uq_invoices_user_id_invoice_number"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clients.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus),
        default=InvoiceStatus.DRAFT,
        nullable=False,
        index=True,
    )

    # Dates
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        SQLEnum(DiscountType),
        default=DiscountType.FIXED,
        nullable=False,
    )
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    balance_due: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Content
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    po_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Public share link
    share_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)
    share_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Recurring origin
    generated_from_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_template_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("recurring_invoices.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="invoices")
    client: Mapped["Client"] = relationship("Client", back_populates="invoices")
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
    )
    history: Mapped[List["InvoiceHistory"]] = relationship(
        "InvoiceHistory",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceHistory.id",
    )

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount >= self.total_amount

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"


class InvoiceItem(BaseModel):
    """Invoice line item. Replaced wholesale when an invoice's items change."""

    __tablename__ = "invoice_items"

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem(id={self.id}, description={self.description[:30]})>"


class InvoiceHistory(Base):
    """
    Append-only audit trail entry.

    The integer key gives insertion order, which is the chronological order of
    the recorded actions. performed_by is None for system-triggered actions.
    """

    __tablename__ = "invoice_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[HistoryAction] = mapped_column(SQLEnum(HistoryAction), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="history")

    def __repr__(self) -> str:
        return f"<InvoiceHistory(id={self.id}, action={self.action})>"
