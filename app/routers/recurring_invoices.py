"""
Billforge - Recurring Invoices Router

Recurring templates, their lifecycle and manual runs.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user
from app.models.recurring_invoice import RecurringStatus
from app.models.user import User
from app.schemas.invoice import InvoiceResponse
from app.schemas.recurring_invoice import (
    RecurringInvoiceCreateRequest,
    RecurringInvoiceListResponse,
    RecurringInvoiceResponse,
    RecurringInvoiceUpdateRequest,
)
from app.services.recurring_invoice_service import RecurringInvoiceService


router = APIRouter()


@router.get("/recurring-invoices", response_model=RecurringInvoiceListResponse, summary="List recurring invoices")
async def list_recurring_invoices(
    status_filter: Optional[RecurringStatus] = Query(None, alias="status"),
    client_id: Optional[UUID] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    templates, total = await RecurringInvoiceService(db).list_templates(
        current_user.id, status=status_filter, client_id=client_id
    )
    return RecurringInvoiceListResponse(
        recurring_invoices=[RecurringInvoiceResponse.model_validate(t) for t in templates],
        total=total,
    )


@router.post(
    "/recurring-invoices",
    response_model=RecurringInvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create recurring invoice",
)
async def create_recurring_invoice(
    request: RecurringInvoiceCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """The first run is due at midnight of start_date."""
    data = request.model_dump(exclude={"client_id", "name", "frequency", "start_date", "items", "interval"})
    return await RecurringInvoiceService(db).create_template(
        current_user.id,
        request.client_id,
        request.name,
        request.frequency,
        request.start_date,
        [item.model_dump() for item in request.items],
        interval=request.interval,
        **data,
    )


@router.get(
    "/recurring-invoices/{template_id}",
    response_model=RecurringInvoiceResponse,
    summary="Get recurring invoice",
)
async def get_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await RecurringInvoiceService(db).get_template(current_user.id, template_id)


@router.patch(
    "/recurring-invoices/{template_id}",
    response_model=RecurringInvoiceResponse,
    summary="Update recurring invoice",
)
async def update_recurring_invoice(
    template_id: UUID,
    request: RecurringInvoiceUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    data = request.model_dump(exclude_unset=True, exclude={"items"})
    items = [item.model_dump() for item in request.items] if request.items is not None else None
    return await RecurringInvoiceService(db).update_template(current_user.id, template_id, items=items, **data)


@router.delete(
    "/recurring-invoices/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete recurring invoice",
)
async def delete_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Invoices already generated are kept."""
    await RecurringInvoiceService(db).delete_template(current_user.id, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/recurring-invoices/{template_id}/pause", response_model=RecurringInvoiceResponse)
async def pause_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await RecurringInvoiceService(db).pause(current_user.id, template_id)


@router.post("/recurring-invoices/{template_id}/resume", response_model=RecurringInvoiceResponse)
async def resume_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await RecurringInvoiceService(db).resume(current_user.id, template_id)


@router.post("/recurring-invoices/{template_id}/cancel", response_model=RecurringInvoiceResponse)
async def cancel_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await RecurringInvoiceService(db).cancel(current_user.id, template_id)


@router.post(
    "/recurring-invoices/{template_id}/run",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate now",
)
async def run_recurring_invoice(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Generate the next invoice immediately, ignoring the due time only."""
    return await RecurringInvoiceService(db).run_now(current_user.id, template_id)


@router.get(
    "/recurring-invoices/{template_id}/invoices",
    response_model=List[InvoiceResponse],
    summary="Generated invoices",
)
async def list_generated_invoices(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await RecurringInvoiceService(db).generated_invoices(current_user.id, template_id)
