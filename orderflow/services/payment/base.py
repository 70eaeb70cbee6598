"""
Payment Service Abstract Base Class

Defines the interface contract for all payment service implementations.
Both MockPaymentService and StripePaymentService implement these methods,
so the order workflow behaves the same whichever one is active.

The workflow never charges cards itself. The frontend confirms a
PaymentIntent created here, and the provider reports the outcome through a
webhook that is turned into a PaymentEvent and fed to
``OrderWorkflowService.update_payment_status``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from orderflow.domain import PaymentStatus


@dataclass
class PaymentResult:
    """
    Standardized result from creating a payment intent.

    Attributes:
        success: Whether the provider accepted the request
        payment_intent_id: Unique identifier for the payment (Stripe format: pi_xxx)
        amount: Amount in currency units
        currency: Currency code (e.g., "usd")
        error_message: Error description if the request failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the provider
        metadata: Additional data from the provider (client_secret, status)
    """
    success: bool
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    @property
    def client_secret(self) -> Optional[str]:
        return (self.metadata or {}).get("client_secret")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "payment_intent_id": self.payment_intent_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "response_time_ms": self.response_time_ms,
            "metadata": self.metadata,
        }


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted
        refund_id: Unique identifier for the refund
        amount: Amount refunded
        status: Refund status (pending, succeeded, failed)
        error_message: Error description if the refund failed
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: str = "pending"
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PaymentEvent:
    """A provider callback reduced to what the order workflow needs."""
    order_id: str
    payment_status: PaymentStatus
    provider_ref: Optional[str]
    event_type: str


# Stripe event type -> resulting payment status
WEBHOOK_STATUS_MAP: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
}


def payment_event_from_webhook(event: dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Map a verified webhook event onto a PaymentEvent.

    Returns:
        None for event types the workflow ignores, or when the object
        carries no ``metadata.order_id``
    """
    event_type = event.get("type", "")
    status = WEBHOOK_STATUS_MAP.get(event_type)
    if status is None:
        return None

    obj = (event.get("data") or {}).get("object") or {}
    order_id = (obj.get("metadata") or {}).get("order_id")
    if not order_id:
        return None

    if event_type.startswith("charge."):
        provider_ref = obj.get("payment_intent")
    else:
        provider_ref = obj.get("id")

    return PaymentEvent(
        order_id=order_id,
        payment_status=status,
        provider_ref=provider_ref,
        event_type=event_type,
    )


class BasePaymentService(ABC):
    """
    What the order API needs from a payment provider.

    Example:
        >>> service = get_payment_service()  # Mock or Stripe, by ENV_MODE
        >>> result = await service.create_payment_intent(
        ...     amount=Decimal("12.00"),
        ...     metadata={"order_id": "ORD-1A2B3C4D"},
        ... )
        >>> result.client_secret
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short provider label reported by /health ("mock", "stripe")."""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Open a payment the frontend will confirm.

        ``metadata`` must carry ``order_id``; the provider echoes it back on
        every webhook for this intent.
        """

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refund an intent. ``amount=None`` refunds everything captured."""

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """Return the decoded event, or None when it cannot be trusted."""

    @abstractmethod
    async def health_check(self) -> bool:
        ...
