"""
Billforge - Client Service
"""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.client import Client
from app.utils.error_handling import ClientNotFoundException

logger = logging.getLogger(__name__)


class ClientService:
    """Service for client records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_client(self, user_id: uuid.UUID, name: str, **fields) -> Client:
        client = Client(user_id=user_id, name=name, **fields)
        self.db.add(client)
        await self.db.commit()
        logger.info(f"Created client {client.id} for user {user_id}")
        return client

    async def get_client(self, user_id: uuid.UUID, client_id: uuid.UUID) -> Client:
        result = await self.db.execute(
            select(Client).where(Client.id == client_id, Client.user_id == user_id)
        )
        client = result.scalar_one_or_none()
        if client is None:
            raise ClientNotFoundException(client_id)
        return client

    async def list_clients(
        self,
        user_id: uuid.UUID,
        search: Optional[str] = None,
    ) -> Tuple[List[Client], int]:
        query = select(Client).where(Client.user_id == user_id)
        count_query = select(func.count(Client.id)).where(Client.user_id == user_id)
        if search:
            pattern = f"%{search.strip()}%"
            condition = or_(Client.name.ilike(pattern), Client.email.ilike(pattern), Client.company.ilike(pattern))
            query = query.where(condition)
            count_query = count_query.where(condition)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(query.order_by(Client.name))
        return list(result.scalars().all()), total
