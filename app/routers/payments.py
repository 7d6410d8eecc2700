"""
Billforge - Payments Router

Manual and gateway payments, refunds, listing and statistics.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user
from app.models.payment import PaymentMethod, PaymentStatus
from app.models.user import User
from app.schemas.payment import (
    ExternalPaymentRequest,
    PaymentCreateRequest,
    PaymentListResponse,
    PaymentProcessRequest,
    PaymentResponse,
    PaymentStatisticsResponse,
    RefundRequest,
)
from app.services.invoice_workflow import fetch_invoice
from app.services.payment_service import PaymentService
from app.utils.error_handling import InvoiceNotFoundException


router = APIRouter()


@router.get("/payments", response_model=PaymentListResponse, summary="List payments")
async def list_payments(
    invoice_id: Optional[UUID] = Query(None),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    payment_method: Optional[PaymentMethod] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    payments, total = await PaymentService(db).list_payments(
        current_user.id,
        invoice_id=invoice_id,
        status=status_filter,
        payment_method=payment_method,
        date_from=date_from,
        date_to=date_to,
        page=page,
        per_page=per_page,
    )
    return PaymentListResponse(
        payments=[PaymentResponse.model_validate(p) for p in payments],
        total=total,
        page=page,
        per_page=per_page,
        pages=(total + per_page - 1) // per_page,
    )


@router.get("/payments/statistics", response_model=PaymentStatisticsResponse, summary="Payment statistics")
async def payment_statistics(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await PaymentService(db).get_statistics(current_user.id)


@router.post(
    "/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record payment",
)
async def record_payment(
    request: PaymentCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Record a manual payment. Rejected when it exceeds the outstanding balance."""
    return await PaymentService(db).record_payment(
        current_user.id,
        request.invoice_id,
        request.amount,
        payment_method=request.payment_method,
        transaction_id=request.transaction_id,
        payment_date=request.payment_date,
        notes=request.notes,
    )


@router.post(
    "/payments/process",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Process gateway payment",
)
async def process_payment(
    request: PaymentProcessRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Charge through the payment gateway.

    A decline returns 402 and leaves a FAILED payment on record.
    """
    return await PaymentService(db).process_payment(
        current_user.id,
        request.invoice_id,
        request.amount,
        payment_method=request.payment_method,
        notes=request.notes,
    )


@router.post(
    "/payments/external",
    response_model=Optional[PaymentResponse],
    summary="Apply card checkout",
)
async def apply_external_payment(
    request: ExternalPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Ledger update for a completed card checkout; replays are no-ops."""
    service = PaymentService(db)
    if await fetch_invoice(db, request.invoice_id, user_id=current_user.id) is None:
        raise InvoiceNotFoundException(request.invoice_id)
    return await service.record_external_payment(request.invoice_id, request.amount, request.transaction_id)


@router.get("/payments/{payment_id}", response_model=PaymentResponse, summary="Get payment")
async def get_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await PaymentService(db).get_payment(current_user.id, payment_id)


@router.post(
    "/payments/{payment_id}/refund",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund payment",
)
async def refund_payment(
    payment_id: UUID,
    request: RefundRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Refund a completed payment in full or in part. The invoice reopens as SENT."""
    return await PaymentService(db).refund_payment(
        current_user.id, payment_id, amount=request.amount, reason=request.reason
    )
