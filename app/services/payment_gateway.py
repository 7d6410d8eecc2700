"""
Billforge - Payment Gateway

Authorization step used by gateway payments. The simulated gateway approves
a configurable share of charges and generates TXN- references; a real
processor plugs in by implementing PaymentGateway.authorize.
"""

import abc
import asyncio
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.models.payment import PaymentMethod
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class GatewayResult(BaseModel):
    """Outcome of an authorization attempt."""
    success: bool
    transaction_id: Optional[str] = None
    message: str = ""
    fee: Decimal = Decimal("0")


class PaymentGateway(abc.ABC):
    name: str = "gateway"

    @abc.abstractmethod
    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        reference: str,
    ) -> GatewayResult:
        """Authorize and capture a charge."""


class SimulatedGateway(PaymentGateway):
    """
    Sandbox gateway.

    success_rate=1.0 always approves, 0.0 always declines.
    """

    name = "simulated"

    def __init__(
        self,
        success_rate: Optional[float] = None,
        latency_seconds: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        self.success_rate = settings.gateway_success_rate if success_rate is None else success_rate
        self.latency_seconds = latency_seconds
        self.rng = rng or random.Random()

    def _transaction_id(self) -> str:
        timestamp = utcnow().strftime("%Y%m%d%H%M%S")
        return f"TXN-{timestamp}-{uuid.uuid4().hex[:8].upper()}"

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        reference: str,
    ) -> GatewayResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if self.rng.random() < self.success_rate:
            txn = self._transaction_id()
            logger.info(f"[SIMULATED GATEWAY] Approved {currency} {amount} for {reference} ({txn})")
            return GatewayResult(
                success=True,
                transaction_id=txn,
                message="Payment approved (SANDBOX MODE)",
            )

        logger.info(f"[SIMULATED GATEWAY] Declined {currency} {amount} for {reference}")
        return GatewayResult(
            success=False,
            message="Payment declined by issuer (SANDBOX MODE)",
        )


def get_payment_gateway() -> PaymentGateway:
    """Gateway selected by settings.payment_gateway."""
    if settings.payment_gateway == SimulatedGateway.name:
        return SimulatedGateway()
    raise ValueError(f"Unsupported payment gateway: {settings.payment_gateway}")
