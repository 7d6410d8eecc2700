"""
Billforge - Public Invoice Router

Unauthenticated access through share links. Every route resolves the invoice
by share_id and refuses disabled links.
"""

import asyncio

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.models.invoice import Invoice
from app.schemas.invoice import InvoiceItemResponse, PublicInvoiceResponse
from app.schemas.payment import PaymentResponse, PublicPaymentRequest
from app.services.invoice_pdf_service import InvoicePDFService
from app.services.invoice_service import InvoiceService
from app.services.payment_service import PaymentService


router = APIRouter()


def public_invoice_response(invoice: Invoice) -> PublicInvoiceResponse:
    """Client-facing view; internal ids and audit fields are left out."""
    return PublicInvoiceResponse(
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        invoice_date=invoice.invoice_date,
        due_date=invoice.due_date,
        sender_name=invoice.user.company_name or invoice.user.full_name,
        client_name=invoice.client.name,
        items=[InvoiceItemResponse.model_validate(item) for item in invoice.items],
        subtotal=invoice.subtotal,
        tax_rate=invoice.tax_rate,
        tax_amount=invoice.tax_amount,
        discount_amount=invoice.discount_amount,
        total_amount=invoice.total_amount,
        paid_amount=invoice.paid_amount,
        balance_due=invoice.balance_due,
        currency=invoice.currency,
        notes=invoice.notes,
        terms=invoice.terms,
    )


@router.get("/invoices/{share_id}", response_model=PublicInvoiceResponse, summary="View shared invoice")
async def view_shared_invoice(share_id: str, db: AsyncSession = Depends(get_async_session)):
    """Opening the link marks a DRAFT or SENT invoice as VIEWED."""
    invoice = await InvoiceService(db).mark_viewed(share_id)
    return public_invoice_response(invoice)


@router.get("/invoices/{share_id}/pdf", summary="Download shared invoice PDF")
async def download_shared_invoice_pdf(share_id: str, db: AsyncSession = Depends(get_async_session)):
    invoice = await InvoiceService(db).get_shared_invoice(share_id)
    pdf_bytes = await asyncio.to_thread(InvoicePDFService().render_invoice, invoice)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{invoice.invoice_number}.pdf"'},
    )


@router.post(
    "/invoices/{share_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record payment on shared invoice",
)
async def record_shared_payment(
    share_id: str,
    request: PublicPaymentRequest,
    db: AsyncSession = Depends(get_async_session),
):
    invoice = await InvoiceService(db).get_shared_invoice(share_id)
    return await PaymentService(db).record_payment(
        None,
        invoice.id,
        request.amount,
        payment_method=request.payment_method,
        notes=request.notes,
    )


@router.post(
    "/invoices/{share_id}/payments/process",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay shared invoice through the gateway",
)
async def process_shared_payment(
    share_id: str,
    request: PublicPaymentRequest,
    db: AsyncSession = Depends(get_async_session),
):
    invoice = await InvoiceService(db).get_shared_invoice(share_id)
    return await PaymentService(db).process_payment(
        None,
        invoice.id,
        request.amount,
        payment_method=request.payment_method,
        notes=request.notes,
    )
