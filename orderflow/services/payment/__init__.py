"""
Payment provider selection.

``get_payment_service()`` hands the API and the Celery refund job one shared
provider: the in-process mock while ENV_MODE=development, Stripe in staging
(test keys) and production (live keys).
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.payment.base import (
    BasePaymentService,
    PaymentEvent,
    PaymentResult,
    RefundResult,
    payment_event_from_webhook,
)
from orderflow.services.payment.mock import MockPaymentService
from orderflow.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Raises:
        ValueError: Outside development when STRIPE_SECRET_KEY is missing
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payments: mock provider (development)")
        return MockPaymentService(min_latency=0.05, max_latency=0.2)

    logger.info(f"Payments: Stripe ({settings.env_mode.value})")
    return StripePaymentService()


def reset_payment_service() -> None:
    get_payment_service.cache_clear()


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "payment_event_from_webhook",
    "BasePaymentService",
    "PaymentEvent",
    "PaymentResult",
    "RefundResult",
    "MockPaymentService",
    "StripePaymentService",
]
