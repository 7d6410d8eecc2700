"""
Billforge - Celery Tasks

Background tasks for scheduled operations.
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from app.database import async_session_factory, engine
from app.tasks.scheduled_tasks import check_overdue_invoices, process_recurring_invoices

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_session(task) -> Dict[str, Any]:
    try:
        async with async_session_factory() as db:
            return await task(db)
    finally:
        # Pooled connections belong to this task's event loop
        await engine.dispose()


# ===========================================
# INVOICE TASKS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.mark_overdue_invoices_task')
def mark_overdue_invoices_task() -> Dict[str, Any]:
    """Mark past-due invoices OVERDUE and send reminders."""
    return run_async(_with_session(check_overdue_invoices))


@shared_task(name='app.tasks.celery_tasks.process_due_recurring_invoices_task')
def process_due_recurring_invoices_task() -> Dict[str, Any]:
    """Generate invoices from due recurring templates."""
    return run_async(_with_session(process_recurring_invoices))
