"""
                        Services Module

Business logic of the order workflow. Collaborators that talk to the
outside world have interchangeable implementations picked by configuration:

    - store: SQL (PostgreSQL) or in-memory order persistence
    - catalog: menu lookups and cart clearing
    - notifications: WebSocket, Redis Pub/Sub or mock fan-out transport
    - payment: Mock (development) or Stripe (staging/production)
    - inbox: persisted staff notifications, SQL or in-memory

``get_workflow_service()`` wires the configured collaborators into one
cached OrderWorkflowService for the API.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.catalog import get_cart_service, get_menu_catalog
from orderflow.services.notifications import get_notifier
from orderflow.services.store import get_order_store
from orderflow.services.workflow import OrderWorkflowService

logger = logging.getLogger(__name__)


def schedule_refund(order_id: str, payment_ref: str, amount: Decimal) -> None:
    """Queue a refund on the Celery worker."""
    from orderflow.tasks import issue_refund

    issue_refund.delay(order_id, payment_ref, str(amount))


@lru_cache()
def get_workflow_service() -> OrderWorkflowService:
    """Get the application-wide workflow service."""
    settings = get_settings()
    return OrderWorkflowService(
        store=get_order_store(),
        catalog=get_menu_catalog(),
        cart=get_cart_service(),
        notifier=get_notifier(),
        refund_scheduler=schedule_refund,
        idempotent_status_updates=settings.idempotent_status_updates,
    )


def reset_workflow_service() -> None:
    get_workflow_service.cache_clear()


__all__ = [
    "OrderWorkflowService",
    "get_workflow_service",
    "reset_workflow_service",
    "schedule_refund",
]
