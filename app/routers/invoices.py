"""
Billforge - Invoices Router

API endpoints for the invoice ledger: CRUD, status changes, sending,
sharing, duplication, history, PDF download and bulk operations.
"""

import asyncio
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user
from app.models.invoice import InvoiceStatus
from app.models.user import User
from app.schemas.invoice import (
    BulkInvoiceIdsRequest,
    BulkOperationResponse,
    BulkStatusUpdateRequest,
    InvoiceCreateRequest,
    InvoiceHistoryResponse,
    InvoiceListResponse,
    InvoiceResponse,
    InvoiceSendResponse,
    InvoiceShareUpdateRequest,
    InvoiceStatusUpdateRequest,
    InvoiceUpdateRequest,
)
from app.services.invoice_pdf_service import InvoicePDFService
from app.services.invoice_service import InvoiceService


router = APIRouter()


# ===========================================
# LIST / CREATE
# ===========================================

@router.get(
    "/invoices",
    response_model=InvoiceListResponse,
    summary="List invoices",
)
async def list_invoices(
    status_filter: Optional[InvoiceStatus] = Query(None, alias="status", description="Filter by status"),
    client_id: Optional[UUID] = Query(None, description="Filter by client"),
    date_from: Optional[date] = Query(None, description="Invoice date from"),
    date_to: Optional[date] = Query(None, description="Invoice date to"),
    search: Optional[str] = Query(None, description="Search number, notes, PO or client"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """List the caller's invoices with filtering, sorting and pagination."""
    invoices, total = await InvoiceService(db).list_invoices(
        current_user.id,
        status=status_filter,
        client_id=client_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        per_page=per_page,
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
        total=total,
        page=page,
        per_page=per_page,
        pages=(total + per_page - 1) // per_page,
    )


@router.post(
    "/invoices",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice",
)
async def create_invoice(
    request: InvoiceCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Create an invoice.

    The number is allocated from the user's counter unless one is given.
    Rejected with 409 when the plan's invoice limit is reached.
    """
    data = request.model_dump(exclude={"client_id", "due_date", "items", "status"})
    invoice = await InvoiceService(db).create_invoice(
        current_user.id,
        request.client_id,
        request.due_date,
        [item.model_dump() for item in request.items],
        status=request.status,
        **data,
    )
    return invoice


# ===========================================
# BULK OPERATIONS
# ===========================================

@router.post("/invoices/bulk/send", response_model=BulkOperationResponse, summary="Send invoices")
async def bulk_send_invoices(
    request: BulkInvoiceIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).bulk_send(current_user.id, request.invoice_ids)


@router.post("/invoices/bulk/status", response_model=BulkOperationResponse, summary="Change invoice statuses")
async def bulk_update_status(
    request: BulkStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).bulk_update_status(current_user.id, request.invoice_ids, request.status)


@router.post("/invoices/bulk/mark-paid", response_model=BulkOperationResponse, summary="Mark invoices paid")
async def bulk_mark_paid(
    request: BulkInvoiceIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Records a payment for the outstanding balance of each invoice."""
    return await InvoiceService(db).bulk_mark_paid(current_user.id, request.invoice_ids)


@router.post("/invoices/bulk/delete", response_model=BulkOperationResponse, summary="Delete invoices")
async def bulk_delete_invoices(
    request: BulkInvoiceIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).bulk_delete(current_user.id, request.invoice_ids)


# ===========================================
# SINGLE INVOICE
# ===========================================

@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse, summary="Get invoice")
async def get_invoice(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).get_invoice(current_user.id, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceResponse, summary="Update invoice")
async def update_invoice(
    invoice_id: UUID,
    request: InvoiceUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Update an invoice. Items, when given, replace the existing ones and the
    totals are recomputed. PAID and CANCELLED invoices cannot be edited.
    """
    data = request.model_dump(exclude_unset=True, exclude={"items"})
    items = [item.model_dump() for item in request.items] if request.items is not None else None
    return await InvoiceService(db).update_invoice(current_user.id, invoice_id, items=items, **data)


@router.delete(
    "/invoices/{invoice_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete invoice",
)
async def delete_invoice(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Rejected when the invoice has payments."""
    await InvoiceService(db).delete_invoice(current_user.id, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/invoices/{invoice_id}/status", response_model=InvoiceResponse, summary="Change status")
async def change_invoice_status(
    invoice_id: UUID,
    request: InvoiceStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).change_status(current_user.id, invoice_id, request.status)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceSendResponse, summary="Send invoice")
async def send_invoice(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Email the invoice PDF to the client and mark it SENT.

    The status changes even when the email could not be delivered;
    email_sent reports the delivery result.
    """
    invoice, email_sent = await InvoiceService(db).send_invoice(current_user.id, invoice_id)
    return InvoiceSendResponse(
        invoice=InvoiceResponse.model_validate(invoice),
        email_sent=email_sent,
        message="Invoice sent" if email_sent else "Invoice marked as sent; email was not delivered",
    )


@router.post(
    "/invoices/{invoice_id}/duplicate",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Duplicate invoice",
)
async def duplicate_invoice(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).duplicate_invoice(current_user.id, invoice_id)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceResponse, summary="Cancel invoice")
async def cancel_invoice(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).cancel_invoice(current_user.id, invoice_id)


@router.patch("/invoices/{invoice_id}/share", response_model=InvoiceResponse, summary="Update share link")
async def update_share(
    invoice_id: UUID,
    request: InvoiceShareUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).update_share(
        current_user.id, invoice_id, enabled=request.enabled, regenerate=request.regenerate
    )


@router.get(
    "/invoices/{invoice_id}/history",
    response_model=List[InvoiceHistoryResponse],
    summary="Invoice history",
)
async def get_invoice_history(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await InvoiceService(db).get_history(current_user.id, invoice_id)


@router.get("/invoices/{invoice_id}/pdf", summary="Download invoice PDF")
async def download_invoice_pdf(
    invoice_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    invoice = await InvoiceService(db).get_invoice(current_user.id, invoice_id)
    pdf_bytes = await asyncio.to_thread(InvoicePDFService().render_invoice, invoice)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.pdf"'},
    )
