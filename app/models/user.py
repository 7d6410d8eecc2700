"""
Billforge - User Model

Account owner of clients, invoices and recurring templates. Carries the
subscription plan that drives the invoice quota and the per-user invoice
number counter.
"""

from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, Integer, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.client import Client
    from app.models.invoice import Invoice


class SubscriptionPlan(str, Enum):
    """Subscription plans."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class User(BaseModel):
    """Invoice owner."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Plan
    subscription_plan: Mapped[SubscriptionPlan] = mapped_column(
        SQLEnum(SubscriptionPlan),
        default=SubscriptionPlan.FREE,
        nullable=False,
    )
    # 0 = use the plan default
    invoice_limit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Numbering: invoice_start_number is the next sequence value to allocate
    invoice_prefix: Mapped[str] = mapped_column(String(20), default="INV", nullable=False)
    invoice_start_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Defaults
    payment_terms: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Notification preferences
    email_notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_notify_new_invoice: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_notify_payment_received: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_notify_invoice_overdue: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    clients: Mapped[List["Client"]] = relationship(
        "Client",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    invoices: Mapped[List["Invoice"]] = relationship(
        "Invoice",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def wants_email(self, preference: str) -> bool:
        """Master switch AND the specific notification flag."""
        return bool(self.email_notifications_enabled and getattr(self, preference, False))

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
