"""
Billforge - FastAPI Dependencies

Shared dependencies for the current user.

Authentication is handled upstream: the gateway in front of the API
forwards the authenticated account id in the X-User-ID header.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.models.user import User
from app.utils.error_handling import AuthenticationException


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    db: AsyncSession = Depends(get_async_session),
) -> User:
    """
    Resolve the caller from the X-User-ID header.

    Raises:
        AuthenticationException: header missing, malformed, or unknown/inactive user
    """
    if not x_user_id:
        raise AuthenticationException("Not authenticated")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise AuthenticationException("Invalid user id")

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationException("User not found or inactive")
    return user
