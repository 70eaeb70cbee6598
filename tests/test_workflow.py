"""Order workflow service: creation, status changes, payment, cancel and claims."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import pytest

from orderflow.core.exceptions import (
    AlreadyClaimed,
    ItemUnavailable,
    OrderNotFound,
    OrderValidationError,
    StorageUnavailable,
    TerminalState,
)
from orderflow.domain import (
    SYSTEM_ACTOR,
    LineRequest,
    Order,
    OrderStatus,
    PaymentStatus,
    StaffRole,
)
from orderflow.services.catalog import BaseCartService
from orderflow.services.notifications import MockTransport, OrderNotifier
from orderflow.services.store import InMemoryOrderStore
from orderflow.services.workflow import OrderWorkflowService


def assert_history_in_step(order: Order) -> None:
    assert order.status_history[-1].status == order.status


class BrokenCart(BaseCartService):
    async def clear_cart(self, customer_ref: str, table_ref: Optional[str] = None) -> int:
        raise ConnectionError("cart service down")


class LosingStore(InMemoryOrderStore):
    """Every swap loses, as if another writer always got there first."""

    async def compare_and_swap(self, expected: Order, updated: Order) -> bool:
        return False


# =============================================================================
# CREATION
# =============================================================================

async def test_create_order_totals_lines(workflow, transport):
    order = await workflow.create_order(
        "C-1",
        [
            LineRequest(menu_item_id="espresso", quantity=3),
            LineRequest(menu_item_id="croissant", quantity=1),
        ],
    )

    assert order.total_amount == Decimal("12.00")
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert len(order.status_history) == 1
    assert order.status_history[0].note == "Order created"
    assert order.status_history[0].actor_id == "C-1"
    assert (await workflow.get_order(order.id)) == order

    event = transport.messages_for("customer.C-1")[0]
    assert event["event_type"] == "order.created"
    assert event["order_id"] == order.id


async def test_create_order_prices_modifiers(workflow):
    order = await workflow.create_order(
        "C-1",
        [LineRequest(menu_item_id="cappuccino", quantity=2, modifier_ids=("extra-shot", "oat-milk"))],
    )

    line = order.items[0]
    assert line.unit_price == Decimal("3.80")
    assert [m.modifier_id for m in line.modifiers] == ["extra-shot", "oat-milk"]
    assert line.line_total == Decimal("10.10")
    assert order.total_amount == Decimal("10.10")


@pytest.mark.parametrize("lines, error", [
    ([], OrderValidationError),
    ([LineRequest(menu_item_id="espresso", quantity=0)], OrderValidationError),
    ([LineRequest(menu_item_id="lobster")], OrderNotFound),
    ([LineRequest(menu_item_id="espresso", modifier_ids=("whipped-cream",))], OrderNotFound),
    ([LineRequest(menu_item_id="croissant"), LineRequest(menu_item_id="seasonal-tart")], ItemUnavailable),
])
async def test_create_order_rejects_bad_lines(workflow, store, transport, lines, error):
    with pytest.raises(error):
        await workflow.create_order("C-1", lines)

    assert await store.list_all() == []
    assert transport.sent == []


async def test_create_order_clears_cart(workflow, cart):
    cart.add_line("C-1", "espresso", table_ref="T4")
    cart.add_line("C-1", "cheesecake", table_ref="T9")

    await workflow.create_order("C-1", [LineRequest(menu_item_id="espresso")], table_ref="T4")

    assert cart.lines_for("C-1") == [("T9", "cheesecake", 1)]


async def test_cart_failure_does_not_fail_creation(store, catalog, notifier, clock, caplog):
    workflow = OrderWorkflowService(store, catalog, BrokenCart(), notifier, clock=clock)

    with caplog.at_level(logging.WARNING):
        order = await workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")])

    assert (await store.get(order.id)).id == order.id
    assert "Could not clear cart" in caplog.text


# =============================================================================
# STATUS CHANGES
# =============================================================================

async def test_customer_cannot_start_preparing(workflow, make_order):
    order = await make_order()

    with pytest.raises(OrderValidationError, match="Customers can only cancel"):
        await workflow.change_status(order.id, "preparing", "C-1", StaffRole.CUSTOMER)

    assert (await workflow.get_order(order.id)).version == order.version


async def test_chef_status_change_takes_free_slot(workflow, make_order):
    order = await make_order()

    updated = await workflow.change_status(order.id, "preparing", "chef-1", "chef")

    assert updated.status == OrderStatus.PREPARING
    assert updated.chef_claim.held_by("chef-1")
    assert updated.assigned_chef == "chef-1"
    assert_history_in_step(updated)

    with pytest.raises(AlreadyClaimed) as exc_info:
        await workflow.change_status(order.id, "ready", "chef-2", "chef")
    assert exc_info.value.holder == "chef-1"


async def test_status_change_appends_history_and_notifies(workflow, make_order, transport):
    order = await make_order()
    transport.clear()

    updated = await workflow.change_status(order.id, "confirmed", "boss", "admin", note="Called ahead")

    assert updated.version == order.version + 1
    assert len(updated.status_history) == 2
    assert updated.status_history[-1].note == "Called ahead"
    assert updated.status_history[-1].actor_id == "boss"
    assert {m["event_type"] for _, m in transport.sent} == {"order.status_changed"}


async def test_same_status_is_noop_by_default(workflow, make_order, transport):
    order = await make_order()
    transport.clear()

    same = await workflow.change_status(order.id, "pending", "boss", "admin")

    assert same.version == order.version
    assert same.status_history == order.status_history
    assert transport.sent == []


async def test_same_status_rejected_when_strict(strict_workflow):
    order = await strict_workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")])

    with pytest.raises(OrderValidationError, match="already pending"):
        await strict_workflow.change_status(order.id, "pending", "boss", "admin")


async def test_terminal_order_rejects_every_change(workflow, make_order):
    order = await make_order()
    cancelled = await workflow.cancel_order(order.id, "C-1")

    for status, role in [("pending", "admin"), ("confirmed", "chef"), ("cancelled", "admin")]:
        with pytest.raises(TerminalState):
            await workflow.change_status(order.id, status, "someone", role)

    assert (await workflow.get_order(order.id)) == cancelled


async def test_unknown_order(workflow):
    with pytest.raises(OrderNotFound):
        await workflow.change_status("ORD-MISSING", "confirmed", "boss", "admin")


async def test_exhausted_retries_surface_storage_unavailable(catalog, cart, notifier, clock):
    store = LosingStore(max_retries=3)
    workflow = OrderWorkflowService(store, catalog, cart, notifier, clock=clock)
    order = await workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")])

    with pytest.raises(StorageUnavailable):
        await workflow.change_status(order.id, "confirmed", "boss", "admin")

    assert (await store.get(order.id)).status == OrderStatus.PENDING


async def test_list_orders_filters(workflow, make_order):
    first = await make_order(customer_ref="C-1")
    second = await make_order(customer_ref="C-2")
    await workflow.claim(second.id, "chef", "chef-1")

    assert [o.id for o in await workflow.list_orders(customer_ref="C-1")] == [first.id]
    assert [o.id for o in await workflow.list_orders(staff_id="chef-1")] == [second.id]
    assert [o.id for o in await workflow.list_orders(statuses=["preparing"])] == [second.id]
    assert await workflow.list_orders(customer_ref="C-1", statuses=["preparing"]) == []
    assert len(await workflow.list_orders()) == 2


# =============================================================================
# PAYMENT
# =============================================================================

async def test_payment_confirms_pending_order(workflow, make_order):
    order = await make_order()

    paid = await workflow.update_payment_status(order.id, PaymentStatus.PAID, "pi_123")

    assert paid.status == OrderStatus.CONFIRMED
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.payment_ref == "pi_123"
    assert paid.version == order.version + 1
    confirmations = [c for c in paid.status_history if c.status == OrderStatus.CONFIRMED]
    assert len(confirmations) == 1
    assert confirmations[0].actor_id == SYSTEM_ACTOR


async def test_payment_redelivery_is_noop(workflow, make_order):
    order = await make_order()
    paid = await workflow.update_payment_status(order.id, "paid", "pi_123")

    again = await workflow.update_payment_status(order.id, "paid", "pi_123")

    assert again.version == paid.version
    assert len(again.status_history) == len(paid.status_history)


async def test_payment_does_not_move_order_past_pending(workflow, make_order):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-1")

    paid = await workflow.update_payment_status(order.id, "paid", "pi_123")

    assert paid.status == OrderStatus.PREPARING
    assert paid.payment_status == PaymentStatus.PAID


async def test_failed_payment_keeps_order_pending(workflow, make_order):
    order = await make_order()

    failed = await workflow.update_payment_status(order.id, "failed", "pi_123")

    assert failed.status == OrderStatus.PENDING
    assert failed.payment_status == PaymentStatus.FAILED
    assert len(failed.status_history) == 1


async def test_unknown_payment_status(workflow, make_order):
    order = await make_order()
    with pytest.raises(OrderValidationError):
        await workflow.update_payment_status(order.id, "maybe")


async def test_late_capture_on_cancelled_order_is_refunded(workflow, make_order, refunds):
    order = await make_order()
    await workflow.update_payment_status(order.id, "pending", "pi_late")
    cancelled = await workflow.cancel_order(order.id, "C-1")
    assert cancelled.payment_ref is None

    late = await workflow.update_payment_status(order.id, "paid", "pi_late")

    assert late.status == OrderStatus.CANCELLED
    assert late.payment_status == PaymentStatus.REFUNDED
    assert late.payment_ref == "pi_late"
    assert refunds == [(order.id, "pi_late", order.total_amount)]

    again = await workflow.update_payment_status(order.id, "paid", "pi_late")
    assert again.version == late.version
    assert len(refunds) == 1


async def test_capture_redelivered_after_paid_cancel_is_ignored(workflow, make_order, refunds):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")
    cancelled = await workflow.cancel_order(order.id, "C-1")

    again = await workflow.update_payment_status(order.id, "paid", "pi_123")

    assert again.version == cancelled.version
    assert again.payment_status == PaymentStatus.REFUNDED
    assert refunds == [(order.id, "pi_123", order.total_amount)]


async def test_failure_after_payment_is_ignored(workflow, make_order, caplog):
    order = await make_order()
    paid = await workflow.update_payment_status(order.id, "paid", "pi_123")

    with caplog.at_level(logging.WARNING, logger="orderflow.services.workflow"):
        late = await workflow.update_payment_status(order.id, "failed", "pi_123")

    assert late.version == paid.version
    assert late.status == OrderStatus.CONFIRMED
    assert late.payment_status == PaymentStatus.PAID
    assert "failed update ignored" in caplog.text


async def test_paid_order_can_be_refunded(workflow, make_order):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")

    refunded = await workflow.update_payment_status(order.id, "refunded")

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.payment_ref == "pi_123"
    assert (await workflow.update_payment_status(order.id, "paid")).payment_status == PaymentStatus.REFUNDED


async def test_payment_update_with_stale_expectation(workflow, make_order):
    order = await make_order()
    paid = await workflow.update_payment_status(order.id, "paid", "pi_123")

    recorded = await workflow.update_payment_status(
        order.id, "pending", "pi_456", expected=PaymentStatus.PENDING
    )

    assert recorded.version == paid.version
    assert recorded.payment_ref == "pi_123"
    assert recorded.payment_status == PaymentStatus.PAID


# =============================================================================
# CANCELLATION
# =============================================================================

async def test_cancel_unpaid_order(workflow, make_order, refunds, transport):
    order = await make_order()
    transport.clear()

    cancelled = await workflow.cancel_order(order.id, "C-1", reason="Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert cancelled.status_history[-1].note == "Cancelled: Changed my mind"
    assert refunds == []
    assert "kitchen.orders" in transport.channels()


async def test_cancel_paid_order_schedules_refund(workflow, make_order, refunds):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")

    await workflow.cancel_order(order.id, "C-1")

    assert refunds == [(order.id, "pi_123", order.total_amount)]


async def test_refund_scheduler_failure_is_logged(store, catalog, cart, notifier, clock, caplog):
    def broken_scheduler(*args):
        raise RuntimeError("broker down")

    workflow = OrderWorkflowService(
        store, catalog, cart, notifier, refund_scheduler=broken_scheduler, clock=clock
    )
    order = await workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")])
    await workflow.update_payment_status(order.id, "paid", "pi_123")

    cancelled = await workflow.cancel_order(order.id, "C-1")

    assert cancelled.status == OrderStatus.CANCELLED
    assert "failed to schedule refund" in caplog.text


async def test_cancel_only_while_pending_or_confirmed(workflow, make_order):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-1")

    with pytest.raises(OrderValidationError, match="can no longer be cancelled"):
        await workflow.cancel_order(order.id, "C-1")


async def test_cancel_someone_elses_order(workflow, make_order):
    order = await make_order(customer_ref="C-1")
    with pytest.raises(OrderValidationError):
        await workflow.cancel_order(order.id, "C-2")


async def test_cancel_twice_hits_terminal_state(workflow, make_order):
    order = await make_order()
    await workflow.cancel_order(order.id, "C-1")
    with pytest.raises(TerminalState):
        await workflow.cancel_order(order.id, "C-1")


async def test_admin_cancel_releases_claims(workflow, make_order):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")

    cancelled = await workflow.cancel_order(order.id, "boss", actor_role="admin")
    assert cancelled.status == OrderStatus.CANCELLED
    assert not cancelled.chef_claim.active


async def test_cancel_through_status_change_refunds(workflow, make_order, refunds):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")

    cancelled = await workflow.change_status(order.id, "cancelled", "C-1", "customer")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert refunds == [(order.id, "pi_123", order.total_amount)]


async def test_admin_cancel_through_status_change_frees_slots(workflow, make_order, refunds):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_123")
    await workflow.claim(order.id, "chef", "chef-1")

    cancelled = await workflow.change_status(order.id, "cancelled", "boss", "admin")

    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert not cancelled.chef_claim.active
    assert refunds == [(order.id, "pi_123", order.total_amount)]


async def test_unpaid_cancel_through_status_change_schedules_nothing(workflow, make_order, refunds):
    order = await make_order()

    cancelled = await workflow.change_status(order.id, "cancelled", "C-1", "customer")

    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert refunds == []


# =============================================================================
# CLAIM LIFECYCLE
# =============================================================================

async def test_chef_claim_race_and_ready(workflow, make_order):
    order = await make_order()

    claimed = await workflow.claim(order.id, "chef", "chef-A")
    assert claimed.status == OrderStatus.PREPARING
    assert claimed.assigned_chef == "chef-A"

    with pytest.raises(AlreadyClaimed) as exc_info:
        await workflow.claim(order.id, "chef", "chef-B")
    assert exc_info.value.holder == "chef-A"

    ready = await workflow.mark_ready(order.id, "chef-A")
    assert ready.status == OrderStatus.READY
    assert not ready.chef_claim.active
    assert ready.assigned_chef == "chef-A"
    assert_history_in_step(ready)


async def test_reclaim_by_holder_adds_no_history(workflow, make_order, transport):
    order = await make_order()
    first = await workflow.claim(order.id, "chef", "chef-A")
    transport.clear()

    second = await workflow.claim(order.id, "chef", "chef-A")

    assert second.version == first.version
    assert second.status_history == first.status_history
    assert transport.sent == []


async def test_only_holder_marks_ready(workflow, make_order):
    order = await make_order()
    with pytest.raises(OrderValidationError):
        await workflow.mark_ready(order.id, "chef-A")

    await workflow.claim(order.id, "chef", "chef-A")
    with pytest.raises(AlreadyClaimed):
        await workflow.mark_ready(order.id, "chef-B")


async def test_full_service_flow(workflow, ready_order, transport):
    order = await ready_order()

    served = await workflow.claim(order.id, "waiter", "waiter-1")
    assert served.status == OrderStatus.SERVED
    assert served.waiter_claim.held_by("waiter-1")

    completed = await workflow.mark_completed(order.id, "waiter-1")

    assert completed.status == OrderStatus.COMPLETED
    assert not completed.chef_claim.active
    assert not completed.waiter_claim.active
    assert completed.assigned_chef == "chef-1"
    assert completed.assigned_waiter == "waiter-1"
    assert [c.status for c in completed.status_history] == [
        OrderStatus.PENDING,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.SERVED,
        OrderStatus.COMPLETED,
    ]

    floor_events = [m["event_type"] for m in transport.messages_for("front-of-house.orders")]
    assert floor_events == ["order.ready", "order.claimed", "order.completed"]


async def test_release_reverts_status(workflow, make_order):
    order = await make_order()
    await workflow.update_payment_status(order.id, "paid", "pi_1")
    await workflow.claim(order.id, "chef", "chef-A")

    released = await workflow.release(order.id, "chef", "chef-A", "chef")

    assert released.status == OrderStatus.CONFIRMED
    assert not released.chef_claim.active
    assert released.assigned_chef == "chef-A"

    reclaimed = await workflow.claim(order.id, "chef", "chef-B")
    assert reclaimed.assigned_chef == "chef-B"


async def test_waiter_release_goes_back_to_ready(workflow, ready_order):
    order = await ready_order()
    await workflow.claim(order.id, "waiter", "waiter-1")

    released = await workflow.release(order.id, "waiter", "waiter-1", "waiter")
    assert released.status == OrderStatus.READY


async def test_force_claim_reassigns_and_logs(workflow, make_order, transport, caplog):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-A")
    transport.clear()

    with caplog.at_level(logging.WARNING, logger="orderflow.services.claims"):
        forced = await workflow.force_claim(order.id, "chef", "chef-B", "boss")

    assert forced.chef_claim.held_by("chef-B")
    assert forced.assigned_chef == "chef-B"
    assert "EMERGENCY OVERRIDE" in forced.status_history[-1].note
    assert any("EMERGENCY OVERRIDE" in r.getMessage() for r in caplog.records)
    assert transport.messages_for("staff.orders")[0]["event_type"] == "order.reassigned"

    with pytest.raises(AlreadyClaimed):
        await workflow.mark_ready(order.id, "chef-A")
    assert (await workflow.mark_ready(order.id, "chef-B")).status == OrderStatus.READY


async def test_force_claim_by_non_admin(workflow, make_order):
    order = await make_order()
    with pytest.raises(OrderValidationError):
        await workflow.force_claim(order.id, "chef", "chef-B", "chef-A", admin_role="chef")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

async def test_failing_audience_does_not_block_others(store, catalog, cart, clock):
    transport = MockTransport(failing_channels={"staff.orders"})
    workflow = OrderWorkflowService(store, catalog, cart, OrderNotifier(transport), clock=clock)

    order = await workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")], table_ref="T2")

    assert order.status == OrderStatus.PENDING
    assert set(transport.channels()) == {"customer.C-1", "kitchen.orders", "table.T2"}


# =============================================================================
# STALE CLAIMS
# =============================================================================

async def test_release_stale_claims(workflow, make_order, clock):
    stale = await make_order(customer_ref="C-1")
    fresh = await make_order(customer_ref="C-2")
    await workflow.claim(stale.id, "chef", "chef-A")
    clock.advance(minutes=50)
    await workflow.claim(fresh.id, "chef", "chef-B")
    clock.advance(minutes=5)

    released = await workflow.release_stale_claims(timedelta(minutes=45))

    assert [o.id for o in released] == [stale.id]
    stale_now = await workflow.get_order(stale.id)
    assert stale_now.status == OrderStatus.PENDING
    assert not stale_now.chef_claim.active
    assert stale_now.assigned_chef == "chef-A"
    assert stale_now.status_history[-1].actor_id == SYSTEM_ACTOR
    assert (await workflow.get_order(fresh.id)).chef_claim.held_by("chef-B")


class SnapshotListingStore(InMemoryOrderStore):
    """Answers status listings from a saved snapshot instead of live data."""

    def __init__(self):
        super().__init__()
        self.snapshot: list[Order] = []

    async def list_by_status(self, statuses):
        return list(self.snapshot)


async def test_stale_sweep_leaves_fresh_claim_alone(catalog, cart, notifier, clock):
    store = SnapshotListingStore()
    workflow = OrderWorkflowService(store, catalog, cart, notifier, clock=clock)
    order = await workflow.create_order("C-1", [LineRequest(menu_item_id="croissant")])
    store.snapshot = [await workflow.claim(order.id, "chef", "chef-old")]
    clock.advance(minutes=50)
    await workflow.release(order.id, "chef", "chef-old", "chef")
    await workflow.claim(order.id, "chef", "chef-new")

    released = await workflow.release_stale_claims(timedelta(minutes=45))

    assert released == []
    current = await workflow.get_order(order.id)
    assert current.status == OrderStatus.PREPARING
    assert current.chef_claim.held_by("chef-new")


async def test_stale_sweep_announces_release(workflow, make_order, clock, transport):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-A")
    clock.advance(hours=1)
    transport.clear()

    await workflow.release_stale_claims(timedelta(minutes=45))

    events = [m["event_type"] for m in transport.messages_for("kitchen.orders")]
    assert events == ["order.released"]
