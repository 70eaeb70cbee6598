"""
Shared fixtures for the order workflow tests.

Everything runs against the in-memory store, the demo menu and a recording
MockTransport, so no database, Redis or Stripe account is needed.
"""

import os

# Must be set before anything imports orderflow.core.config
os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("ORDER_STORE_BACKEND", "memory")
os.environ.setdefault("NOTIFICATION_TRANSPORT", "mock")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timedelta, timezone

import pytest

from orderflow.domain import LineRequest, StaffRole
from orderflow.services.catalog import DEMO_MENU, InMemoryCartService, InMemoryMenuCatalog
from orderflow.services.inbox import InMemoryNotificationInbox
from orderflow.services.notifications import MockTransport, OrderNotifier
from orderflow.services.store import InMemoryOrderStore
from orderflow.services.workflow import OrderWorkflowService


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryOrderStore(max_retries=5)


@pytest.fixture
def catalog():
    return InMemoryMenuCatalog(DEMO_MENU)


@pytest.fixture
def cart():
    return InMemoryCartService()


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def inbox():
    return InMemoryNotificationInbox()


@pytest.fixture
def notifier(transport, inbox):
    return OrderNotifier(transport, timeout=0.5, inbox=inbox)


@pytest.fixture
def refunds():
    """Refunds handed to the scheduler, as (order_id, payment_ref, amount)."""
    return []


@pytest.fixture
def workflow(store, catalog, cart, notifier, refunds, clock):
    return OrderWorkflowService(
        store=store,
        catalog=catalog,
        cart=cart,
        notifier=notifier,
        refund_scheduler=lambda *args: refunds.append(args),
        clock=clock,
    )


@pytest.fixture
def strict_workflow(store, catalog, cart, notifier, clock):
    """Workflow that rejects requests for the status an order already has."""
    return OrderWorkflowService(
        store=store,
        catalog=catalog,
        cart=cart,
        notifier=notifier,
        idempotent_status_updates=False,
        clock=clock,
    )


@pytest.fixture
def make_order(workflow):
    """Place an order: one espresso with an extra shot and a croissant."""

    async def _make(customer_ref="C-1", table_ref="T4", items=None):
        lines = items or [
            LineRequest(menu_item_id="espresso", quantity=2, modifier_ids=("extra-shot",)),
            LineRequest(menu_item_id="croissant"),
        ]
        return await workflow.create_order(customer_ref, lines, table_ref=table_ref)

    return _make


@pytest.fixture
def ready_order(workflow, make_order):
    """An order cooked by chef-1 and waiting for a waiter."""

    async def _make(**kwargs):
        order = await make_order(**kwargs)
        await workflow.claim(order.id, StaffRole.CHEF, "chef-1")
        return await workflow.mark_ready(order.id, "chef-1")

    return _make
