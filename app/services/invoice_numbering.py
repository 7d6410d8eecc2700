"""
Billforge - Invoice Number Allocation

Per-user, gapless invoice numbers of the form {prefix}-{00001}.

The counter on users.invoice_start_number holds the next value to hand out.
Allocation is one UPDATE ... RETURNING statement, so two concurrent creations
for the same user can never observe the same value.
"""

import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.user import User
from app.utils.error_handling import NotFoundException, ErrorCode

SEQUENCE_WIDTH = 5


def format_invoice_number(prefix: str, sequence: int) -> str:
    return f"{prefix or settings.default_invoice_prefix}-{sequence:0{SEQUENCE_WIDTH}d}"


async def allocate_invoice_number(db: AsyncSession, user_id: uuid.UUID) -> str:
    """
    Increment the user's counter and return the number for the claimed value.

    Runs inside the caller's transaction: a rollback returns the value.
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(invoice_start_number=User.invoice_start_number + 1)
        .returning(User.invoice_prefix, User.invoice_start_number)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        raise NotFoundException("User", user_id, code=ErrorCode.USER_NOT_FOUND)
    prefix, next_value = row
    return format_invoice_number(prefix, next_value - 1)


async def peek_next_invoice_number(db: AsyncSession, user_id: uuid.UUID) -> str:
    """Preview the next number without claiming it."""
    result = await db.execute(
        select(User.invoice_prefix, User.invoice_start_number).where(User.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        raise NotFoundException("User", user_id, code=ErrorCode.USER_NOT_FOUND)
    return format_invoice_number(row[0], row[1])
