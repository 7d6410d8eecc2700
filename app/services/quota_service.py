"""
Billforge - Invoice Quota Service

Caps the number of non-cancelled invoices per user by subscription plan.

The check is a plain count inside the creating transaction; two concurrent
creations at exactly the limit can both pass (soft limit).
"""

import logging
import uuid
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.invoice import Invoice, InvoiceStatus
from app.models.user import SubscriptionPlan, User
from app.utils.error_handling import QuotaExceededException

logger = logging.getLogger(__name__)


# 0 = unlimited
PLAN_INVOICE_LIMITS: Dict[SubscriptionPlan, int] = {
    SubscriptionPlan.FREE: 5,
    SubscriptionPlan.BASIC: 50,
    SubscriptionPlan.PREMIUM: 0,
    SubscriptionPlan.ENTERPRISE: 0,
}


def effective_invoice_limit(user: User) -> Optional[int]:
    """Limit for the user, or None when unlimited."""
    if user.subscription_plan == SubscriptionPlan.ENTERPRISE:
        return None
    limit = user.invoice_limit if user.invoice_limit and user.invoice_limit > 0 else 0
    if not limit:
        limit = PLAN_INVOICE_LIMITS.get(user.subscription_plan, 0)
    return limit or None


class InvoiceQuotaService:
    """
    Plan quota guard.

    Usage:
        quota = InvoiceQuotaService(db)
        await quota.check_and_reserve(user)   # raises QuotaExceededException
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def count_active_invoices(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(Invoice.id))
            .where(Invoice.user_id == user_id)
            .where(Invoice.status != InvoiceStatus.CANCELLED)
        )
        return result.scalar() or 0

    async def usage(self, user: User) -> Dict[str, Optional[int]]:
        limit = effective_invoice_limit(user)
        used = await self.count_active_invoices(user.id)
        return {
            "plan": user.subscription_plan.value,
            "limit": limit,
            "used": used,
            "remaining": None if limit is None else max(0, limit - used),
        }

    async def check_and_reserve(self, user: User) -> None:
        """Raise when the user has already reached their plan's invoice limit."""
        limit = effective_invoice_limit(user)
        if limit is None:
            return

        current = await self.count_active_invoices(user.id)
        if current >= limit:
            logger.info(
                f"Invoice quota reached for user {user.id}: {current}/{limit} "
                f"({user.subscription_plan.value})"
            )
            raise QuotaExceededException(user.subscription_plan.value, limit, current)
