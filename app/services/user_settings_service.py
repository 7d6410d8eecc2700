"""
Billforge - User Settings Service

Invoice defaults, numbering and notification preferences of the current user.
"""

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.services.invoice_numbering import peek_next_invoice_number
from app.services.quota_service import InvoiceQuotaService

logger = logging.getLogger(__name__)


class UserSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(self, user: User) -> Dict[str, Any]:
        # Counter is bumped by UPDATE ... RETURNING, so reload before reading it
        await self.db.refresh(user)
        usage = await InvoiceQuotaService(self.db).usage(user)
        return {
            "email": user.email,
            "full_name": user.full_name,
            "company_name": user.company_name,
            "subscription_plan": user.subscription_plan,
            "invoice_limit": user.invoice_limit,
            "invoice_prefix": user.invoice_prefix,
            "next_invoice_number": await peek_next_invoice_number(self.db, user.id),
            "payment_terms": user.payment_terms,
            "default_currency": user.default_currency,
            "email_notifications_enabled": user.email_notifications_enabled,
            "email_notify_new_invoice": user.email_notify_new_invoice,
            "email_notify_payment_received": user.email_notify_payment_received,
            "email_notify_invoice_overdue": user.email_notify_invoice_overdue,
            "invoices_used": usage["used"],
            "invoices_remaining": usage["remaining"],
        }

    async def update_settings(self, user: User, **fields: Any) -> Dict[str, Any]:
        fields = {k: v for k, v in fields.items() if v is not None}
        if "default_currency" in fields:
            fields["default_currency"] = fields["default_currency"].upper()
        for key, value in fields.items():
            setattr(user, key, value)
        await self.db.commit()
        logger.info(f"Updated settings for user {user.id}: {sorted(fields)}")
        return await self.get_settings(user)
