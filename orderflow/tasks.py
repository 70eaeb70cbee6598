"""
Celery Tasks
Background jobs for refunds and claim reconciliation.

Each task runs its coroutine in a fresh event loop with an unpooled engine,
since pooled connections cannot outlive the loop that opened them.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal

from orderflow.celery_worker import celery_app
from orderflow.core.config import StoreBackend, get_settings
from orderflow.database import build_engine, build_session_factory
from orderflow.services.catalog import get_cart_service, get_menu_catalog
from orderflow.services.notifications import get_notifier
from orderflow.services.payment import get_payment_service
from orderflow.services.store import SqlOrderStore, get_order_store
from orderflow.services.workflow import OrderWorkflowService

logger = logging.getLogger(__name__)


class RefundFailed(Exception):
    """The provider rejected a refund; raised so Celery retries it."""


async def _refund(payment_ref: str, amount: Decimal) -> dict:
    result = await get_payment_service().refund_payment(
        payment_ref,
        amount=amount,
        reason="requested_by_customer",
    )
    if not result.success:
        raise RefundFailed(result.error_message or "refund failed")
    return {
        'refund_id': result.refund_id,
        'status': result.status,
        'amount': str(result.amount) if result.amount is not None else None,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(RefundFailed,),
    retry_backoff=True
)
def issue_refund(self, order_id: str, payment_ref: str, amount: str) -> dict:
    """
    Refund a cancelled order through the payment provider.

    Args:
        order_id: Cancelled order
        payment_ref: Provider payment intent id
        amount: Amount to refund, as a decimal string
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: refunding {amount} for order {order_id}")
    start_time = time.time()

    result = asyncio.run(_refund(payment_ref, Decimal(amount)))

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: order {order_id} refunded in {elapsed}s ({result['refund_id']})")
    return {
        'success': True,
        'order_id': order_id,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
        **result,
    }


async def _release_stale_claims() -> list[str]:
    settings = get_settings()
    engine = None

    if settings.order_store_backend == StoreBackend.SQL:
        engine = build_engine(settings.database_url, pooled=False)
        store = SqlOrderStore(build_session_factory(engine), max_retries=settings.store_max_retries)
    else:
        logger.warning("In-memory store is per process; the sweep only sees this worker's orders")
        store = get_order_store()

    workflow = OrderWorkflowService(
        store=store,
        catalog=get_menu_catalog(),
        cart=get_cart_service(),
        notifier=get_notifier(),
        idempotent_status_updates=settings.idempotent_status_updates,
    )
    try:
        released = await workflow.release_stale_claims(
            timedelta(minutes=settings.claim_timeout_minutes)
        )
    finally:
        if engine is not None:
            await engine.dispose()
    return [order.id for order in released]


@celery_app.task
def release_stale_claims() -> dict:
    """
    Release chef/waiter claims held longer than CLAIM_TIMEOUT_MINUTES.
    Scheduled by celery beat.
    """
    order_ids = asyncio.run(_release_stale_claims())
    if order_ids:
        logger.info(f"Released stale claims on {len(order_ids)} order(s): {', '.join(order_ids)}")
    return {
        'released': order_ids,
        'timestamp': datetime.now().isoformat()
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
