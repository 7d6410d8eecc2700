"""
Billforge - Services Package

Business logic services.
"""

from app.services.client_service import ClientService
from app.services.email_service import EmailService
from app.services.invoice_pdf_service import InvoicePDFService
from app.services.invoice_service import InvoiceService
from app.services.notification_service import NotificationService
from app.services.overdue_service import OverdueService
from app.services.payment_gateway import PaymentGateway, SimulatedGateway
from app.services.payment_service import PaymentService
from app.services.quota_service import InvoiceQuotaService
from app.services.recurring_invoice_service import RecurringInvoiceService
from app.services.user_settings_service import UserSettingsService

__all__ = [
    "ClientService",
    "EmailService",
    "InvoicePDFService",
    "InvoiceService",
    "NotificationService",
    "OverdueService",
    "PaymentGateway",
    "SimulatedGateway",
    "PaymentService",
    "InvoiceQuotaService",
    "RecurringInvoiceService",
    "UserSettingsService",
]
