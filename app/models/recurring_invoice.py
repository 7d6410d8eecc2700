"""
Billforge - Recurring Invoice Model

Invoice blueprint plus a schedule. Each run copies the template items into a
new, independent DRAFT invoice.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel
from app.models.invoice import DiscountType


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RecurringStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class RecurringInvoice(BaseModel):
    """Recurring invoice template."""

    __tablename__ = "recurring_invoices"

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
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Schedule
    frequency: Mapped[RecurringFrequency] = mapped_column(SQLEnum(RecurringFrequency), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    max_occurrences: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    occurrences_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[RecurringStatus] = mapped_column(
        SQLEnum(RecurringStatus),
        default=RecurringStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    auto_send: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    due_in_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Pricing template
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        SQLEnum(DiscountType),
        default=DiscountType.FIXED,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    items: Mapped[List["RecurringInvoiceItem"]] = relationship(
        "RecurringInvoiceItem",
        back_populates="recurring_invoice",
        cascade="all, delete-orphan",
        order_by="RecurringInvoiceItem.position",
    )

    @property
    def anchor_day(self) -> int:
        """Day of month monthly/yearly runs return to after clamping."""
        return self.start_date.day

    def __repr__(self) -> str:
        return f"<RecurringInvoice(id={self.id}, frequency={self.frequency}, status={self.status})>"


class RecurringInvoiceItem(BaseModel):
    __tablename__ = "recurring_invoice_items"

    recurring_invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    recurring_invoice: Mapped["RecurringInvoice"] = relationship("RecurringInvoice", back_populates="items")
