"""
Stripe Payment Provider

Card payments for orders through the official Stripe SDK. Selected when
ENV_MODE is staging (test keys) or production (live keys).

The workflow itself never charges anything: ``create_payment_intent`` hands
the frontend a client_secret, and Stripe reports the outcome to
``POST /webhook/stripe``. Refunds for cancelled orders are issued from the
Celery worker.

Amounts cross the SDK boundary as integer cents and come back as Decimal.
Intents are created with an idempotency key derived from the order id, so a
retried request cannot open a second intent for the same order and amount.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe

from orderflow.core.config import get_settings
from orderflow.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)

API_VERSION = "2023-10-16"


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class StripePaymentService(BasePaymentService):
    """
    Stripe-backed payment provider.

    Raises:
        ValueError: On construction, when STRIPE_SECRET_KEY is missing
    """

    def __init__(self):
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY must be configured outside development mode "
                "(environment variable or .env file)"
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = API_VERSION

        self._webhook_secret = settings.stripe_webhook_secret
        self._default_currency = settings.stripe_currency

        logger.info(f"Stripe provider ready (api_version={API_VERSION})")

    @property
    def provider_name(self) -> str:
        return "stripe"

    @staticmethod
    def _failure(error: stripe.StripeError, started: datetime) -> PaymentResult:
        elapsed_ms = (datetime.now() - started).total_seconds() * 1000

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(f"Stripe rejected our API key: {error}")
            message, code = "Payment provider is misconfigured", "authentication_error"
        elif isinstance(error, stripe.APIConnectionError):
            logger.error(f"Stripe unreachable: {error}")
            message, code = "Payment service temporarily unavailable", "connection_error"
        else:
            logger.error(f"Stripe error while creating intent: {error}")
            message, code = str(error), "stripe_error"

        return PaymentResult(
            success=False,
            error_message=message,
            error_code=code,
            response_time_ms=elapsed_ms,
        )

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """Open a PaymentIntent for the order named in ``metadata['order_id']``."""
        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        metadata = dict(metadata or {})
        cents = to_cents(amount)
        options = {}
        if metadata.get("order_id"):
            options["idempotency_key"] = f"order-{metadata['order_id']}-{cents}"

        started = datetime.now()
        try:
            intent = stripe.PaymentIntent.create(
                amount=cents,
                currency=currency or self._default_currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **options,
            )
        except stripe.StripeError as e:
            return self._failure(e, started)

        logger.info(
            f"Stripe intent {intent.id} for order {metadata.get('order_id', '?')} "
            f"({intent.status})"
        )
        return PaymentResult(
            success=True,
            payment_intent_id=intent.id,
            amount=from_cents(intent.amount),
            currency=intent.currency,
            response_time_ms=(datetime.now() - started).total_seconds() * 1000,
            metadata={
                "client_secret": intent.client_secret,
                "status": intent.status,
            },
        )

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refund ``amount`` of an intent; the whole charge when amount is None."""
        params = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_cents(amount)
        if reason:
            params["reason"] = reason

        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe refund of {payment_intent_id} failed: {e}")
            return RefundResult(success=False, error_message=str(e))

        logger.info(f"Stripe refund {refund.id} for {payment_intent_id} ({refund.status})")
        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=from_cents(refund.amount),
            status=refund.status,
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Check the Stripe-Signature header and decode the event.

        Returns:
            The event as a plain dict, or None when the signature or body
            does not check out
        """
        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")

            if self._webhook_secret:
                stripe.WebhookSignature.verify_header(
                    payload,
                    signature,
                    self._webhook_secret,
                    stripe.Webhook.DEFAULT_TOLERANCE,
                )
            else:
                logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")

            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Rejected Stripe webhook with bad signature: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Rejected malformed Stripe webhook: {e}")
            return None

        logger.debug(f"Stripe webhook accepted: {event.get('type')}")
        return event

    async def health_check(self) -> bool:
        """Cheap authenticated call to prove the key and network work."""
        try:
            stripe.Account.retrieve()
        except stripe.StripeError as e:
            logger.error(f"Stripe health check failed: {e}")
            return False
        return True
