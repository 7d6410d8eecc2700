"""
Billforge - Background Tasks Package

Celery background tasks.
"""

from app.tasks.scheduled_tasks import (
    check_overdue_invoices,
    process_recurring_invoices,
)

__all__ = [
    "check_overdue_invoices",
    "process_recurring_invoices",
]
