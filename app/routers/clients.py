"""
Billforge - Clients Router
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user
from app.models.user import User
from app.schemas.client import ClientCreateRequest, ClientListResponse, ClientResponse
from app.services.client_service import ClientService


router = APIRouter()


@router.get("/clients", response_model=ClientListResponse, summary="List clients")
async def list_clients(
    search: Optional[str] = Query(None, description="Search by name, email or company"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    clients, total = await ClientService(db).list_clients(current_user.id, search=search)
    return ClientListResponse(
        clients=[ClientResponse.model_validate(c) for c in clients],
        total=total,
    )


@router.post(
    "/clients",
    response_model=ClientResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create client",
)
async def create_client(
    request: ClientCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    data = request.model_dump(exclude={"name"})
    return await ClientService(db).create_client(current_user.id, request.name, **data)


@router.get("/clients/{client_id}", response_model=ClientResponse, summary="Get client")
async def get_client(
    client_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await ClientService(db).get_client(current_user.id, client_id)
