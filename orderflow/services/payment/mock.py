"""
Mock Payment Provider

Stands in for Stripe when ENV_MODE=development and throughout the tests.
Intents get ``pi_mock_`` ids and a client_secret Stripe.js would reject;
nothing is ever charged. Webhooks arrive unsigned, so a plain JSON
``payment_intent.succeeded`` posted to ``/webhook/stripe`` is enough to
confirm an order locally.
"""

import asyncio
import json
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional

from orderflow.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


def _mock_id(prefix: str) -> str:
    return f"{prefix}_mock_{uuid.uuid4().hex[:24]}"


class MockPaymentService(BasePaymentService):
    """
    In-process payment provider.

    Attributes:
        failure_rate: Chance that a new intent fails as if Stripe were down
        min_latency / max_latency: Simulated round trip, in seconds
        intents: Intents opened so far, keyed by id
        refunds: Refunds issued so far, as (payment_intent_id, amount)
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.intents: dict[str, PaymentResult] = {}
        self.refunds: list[tuple[str, Optional[Decimal]]] = []

        logger.info(
            f"Mock payments on (failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _round_trip(self) -> float:
        if self.max_latency <= 0:
            return 0.0
        delay = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(delay)
        return delay * 1000

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        elapsed_ms = await self._round_trip()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
                response_time_ms=elapsed_ms,
            )
        if random.random() < self.failure_rate:
            logger.warning("Mock: simulated provider outage")
            return PaymentResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        intent_id = _mock_id("pi")
        result = PaymentResult(
            success=True,
            payment_intent_id=intent_id,
            amount=amount,
            currency=currency,
            response_time_ms=elapsed_ms,
            metadata={
                **(metadata or {}),
                "client_secret": f"{intent_id}_secret_mock",
                "status": "requires_payment_method",
            },
        )
        self.intents[intent_id] = result

        order_id = (metadata or {}).get("order_id", "?")
        logger.debug(f"Mock: intent {intent_id} opened for order {order_id} ({amount})")
        return result

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        await self._round_trip()

        if not payment_intent_id.startswith("pi_"):
            logger.warning(f"Mock: refusing refund of {payment_intent_id}, not an intent id")
            return RefundResult(success=False, error_message="Invalid payment intent ID")

        if amount is None and payment_intent_id in self.intents:
            amount = self.intents[payment_intent_id].amount

        self.refunds.append((payment_intent_id, amount))
        refund_id = _mock_id("re")
        logger.info(f"Mock: refunded {amount} of {payment_intent_id} as {refund_id}")
        return RefundResult(success=True, refund_id=refund_id, amount=amount, status="succeeded")

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """Decode the body; there is no signature to check."""
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: webhook body is not JSON")
            return None

    async def health_check(self) -> bool:
        return True
