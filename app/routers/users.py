"""
Billforge - Users Router

Settings of the current user: numbering, payment terms, notification
preferences and plan usage.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user
from app.models.user import User
from app.schemas.client import UserSettingsResponse, UserSettingsUpdateRequest
from app.services.user_settings_service import UserSettingsService


router = APIRouter()


@router.get("/users/me/settings", response_model=UserSettingsResponse, summary="Get settings")
async def get_settings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await UserSettingsService(db).get_settings(current_user)


@router.patch("/users/me/settings", response_model=UserSettingsResponse, summary="Update settings")
async def update_settings(
    request: UserSettingsUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Changing invoice_start_number moves the next allocated invoice number."""
    return await UserSettingsService(db).update_settings(
        current_user, **request.model_dump(exclude_unset=True)
    )
