"""
Billforge - Scheduled Tasks

Task bodies for the two periodic sweeps. They take a session so they can run
under Celery (see celery_tasks) or directly from tests and scripts.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.overdue_service import OverdueService
from app.services.recurring_invoice_service import RecurringInvoiceService
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


# ===========================================
# SCHEDULED TASK: INVOICE OVERDUE CHECK
# ===========================================

async def check_overdue_invoices(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    Move past-due SENT/VIEWED invoices to OVERDUE and send reminders.
    Should run hourly.
    """
    now = now or utcnow()
    result = await OverdueService(db).sweep(now)
    logger.info(f"Overdue check at {now.isoformat()}: {result}")
    return result


# ===========================================
# SCHEDULED TASK: RECURRING INVOICES
# ===========================================

async def process_recurring_invoices(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    Generate invoices for every due recurring template.
    Should run hourly.
    """
    now = now or utcnow()
    result = await RecurringInvoiceService(db).process_due(now)
    logger.info(f"Recurring invoice run at {now.isoformat()}: {result}")
    return result
