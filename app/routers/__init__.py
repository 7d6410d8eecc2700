"""
Billforge - Routers Package

FastAPI route handlers.

Routers:
- clients: Client records
- invoices: Invoice ledger, sending, sharing and bulk operations
- payments: Payments, refunds and statistics
- recurring_invoices: Recurring templates and manual runs
- users: Current user settings
- public: Share-link access (unauthenticated)
"""

from app.routers import (
    clients,
    invoices,
    payments,
    public,
    recurring_invoices,
    users,
)

__all__ = [
    "clients",
    "invoices",
    "payments",
    "public",
    "recurring_invoices",
    "users",
]
