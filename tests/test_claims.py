"""Chef/waiter claim slots and their compare-and-swap guarantees."""

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from orderflow.core.exceptions import AlreadyClaimed, OrderValidationError, TerminalState
from orderflow.domain import (
    ClaimSlot,
    Order,
    OrderLine,
    OrderStatus,
    StaffRole,
    StatusChange,
)
from orderflow.services.claims import (
    SLOT_RULES,
    ClaimManager,
    claim_order,
    force_claim_order,
    is_available,
    release_order,
    settle_claims,
    slot_rule,
)
from orderflow.services.store import InMemoryOrderStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
CHEF = SLOT_RULES[StaffRole.CHEF]
WAITER = SLOT_RULES[StaffRole.WAITER]


def bare_order(status=OrderStatus.PENDING, **changes) -> Order:
    history = changes.pop("status_history", None) or (
        StatusChange(status=status, actor_id="C-1", note=None, timestamp=NOW),
    )
    return Order(
        id="ORD-TEST0001",
        customer_ref="C-1",
        items=(OrderLine(menu_item_id="croissant", name="Croissant", quantity=1, unit_price=4),),
        total_amount=4,
        status=status,
        status_history=history,
        **changes,
    )


class YieldingStore(InMemoryOrderStore):
    """Hands control back to the loop on every read so writers interleave."""

    async def get(self, order_id: str) -> Order:
        order = await super().get(order_id)
        await asyncio.sleep(0)
        return order


# =============================================================================
# PURE TRANSITIONS
# =============================================================================

def test_slot_rule_only_for_kitchen_and_floor_staff():
    assert slot_rule("chef") is CHEF
    assert slot_rule(StaffRole.WAITER) is WAITER
    with pytest.raises(OrderValidationError):
        slot_rule("customer")


def test_claim_takes_slot_and_starts_preparing():
    order = claim_order(bare_order(), CHEF, "chef-1", NOW)

    assert order.status == OrderStatus.PREPARING
    assert order.assigned_chef == "chef-1"
    assert order.chef_claim.held_by("chef-1")
    assert order.chef_claim.claimed_at == NOW
    assert order.status_history[-1].actor_id == "chef-1"


def test_claim_by_holder_returns_same_object():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)
    assert claim_order(claimed, CHEF, "chef-1", NOW) is claimed


def test_claim_by_someone_else_reports_holder():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    with pytest.raises(AlreadyClaimed) as exc_info:
        claim_order(claimed, CHEF, "chef-2", NOW)

    assert exc_info.value.holder == "chef-1"
    assert exc_info.value.to_dict()["holder"] == "chef-1"


def test_claim_outside_claimable_status():
    with pytest.raises(OrderValidationError):
        claim_order(bare_order(OrderStatus.READY), CHEF, "chef-1", NOW)
    with pytest.raises(OrderValidationError):
        claim_order(bare_order(OrderStatus.PREPARING), WAITER, "waiter-1", NOW)


def test_claim_terminal_order():
    with pytest.raises(TerminalState):
        claim_order(bare_order(OrderStatus.CANCELLED), CHEF, "chef-1", NOW)


def test_release_reverts_to_status_claimed_from():
    confirmed = bare_order(OrderStatus.CONFIRMED)
    claimed = claim_order(confirmed, CHEF, "chef-1", NOW)

    released = release_order(claimed, CHEF, "chef-1", StaffRole.CHEF, NOW)

    assert released.status == OrderStatus.CONFIRMED
    assert not released.chef_claim.active
    assert released.chef_claim.claimant_id == "chef-1"
    assert released.assigned_chef == "chef-1"
    assert is_available(released, CHEF)


def test_release_falls_back_without_history():
    history = (StatusChange(status=OrderStatus.PREPARING, actor_id="chef-1", note=None, timestamp=NOW),)
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)
    claimed = claimed.touched(NOW, status_history=history)

    released = release_order(claimed, CHEF, "chef-1", StaffRole.CHEF, NOW)
    assert released.status == CHEF.release_to


def test_release_by_other_staff_is_rejected_but_admin_may():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    with pytest.raises(OrderValidationError):
        release_order(claimed, CHEF, "chef-2", StaffRole.CHEF, NOW)

    released = release_order(claimed, CHEF, "boss", StaffRole.ADMIN, NOW)
    assert not released.chef_claim.active


def test_release_of_free_slot_is_noop():
    order = bare_order()
    assert release_order(order, CHEF, "chef-1", StaffRole.CHEF, NOW) is order


def test_force_claim_always_writes_history():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    forced = force_claim_order(claimed, CHEF, "chef-2", "boss", StaffRole.ADMIN, NOW)

    assert forced.status == OrderStatus.PREPARING
    assert forced.chef_claim.held_by("chef-2")
    assert forced.assigned_chef == "chef-2"
    assert len(forced.status_history) == len(claimed.status_history) + 1
    note = forced.status_history[-1].note
    assert note.startswith("EMERGENCY OVERRIDE")
    assert "(was chef-1)" in note


def test_force_claim_requires_admin():
    with pytest.raises(OrderValidationError):
        force_claim_order(bare_order(), CHEF, "chef-2", "chef-1", StaffRole.CHEF, NOW)


def test_force_claim_respects_status_window():
    with pytest.raises(OrderValidationError):
        force_claim_order(bare_order(OrderStatus.READY), CHEF, "chef-2", "boss", StaffRole.ADMIN, NOW)
    with pytest.raises(TerminalState):
        force_claim_order(bare_order(OrderStatus.COMPLETED), WAITER, "w-2", "boss", StaffRole.ADMIN, NOW)


def test_settle_claims_blocks_other_staff():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    with pytest.raises(AlreadyClaimed):
        settle_claims(claimed, OrderStatus.READY, "chef-2", StaffRole.CHEF, NOW)


def test_settle_claims_ready_frees_chef_slot():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    changes = settle_claims(claimed, OrderStatus.READY, "chef-1", StaffRole.CHEF, NOW)

    assert changes["chef_claim"].active is False
    assert changes["chef_claim"].claimant_id == "chef-1"


def test_settle_claims_preparing_takes_free_slot():
    changes = settle_claims(bare_order(), OrderStatus.PREPARING, "chef-3", StaffRole.CHEF, NOW)

    assert changes["chef_claim"].held_by("chef-3")
    assert changes["assigned_chef"] == "chef-3"


def test_settle_claims_terminal_frees_every_slot():
    claimed = claim_order(bare_order(), CHEF, "chef-1", NOW)

    changes = settle_claims(claimed, OrderStatus.CANCELLED, "boss", StaffRole.ADMIN, NOW)

    assert changes == {"chef_claim": ClaimSlot(claimant_id="chef-1", claimed_at=NOW, active=False)}


def test_settle_claims_moving_back_frees_holders_slot():
    claimed = claim_order(bare_order(OrderStatus.CONFIRMED), CHEF, "chef-1", NOW)

    changes = settle_claims(claimed, OrderStatus.CONFIRMED, "chef-1", StaffRole.CHEF, NOW)

    assert changes == {"chef_claim": ClaimSlot(claimant_id="chef-1", claimed_at=NOW, active=False)}


def test_claim_by_holder_with_stale_status_claims_again():
    slot = ClaimSlot(claimant_id="chef-1", claimed_at=NOW, active=True)
    stale = bare_order(OrderStatus.CONFIRMED, chef_claim=slot, assigned_chef="chef-1")

    order = claim_order(stale, CHEF, "chef-1", NOW)

    assert order.status == OrderStatus.PREPARING
    assert order.chef_claim.held_by("chef-1")


# =============================================================================
# CLAIM MANAGER
# =============================================================================

async def test_manager_claim_is_noop_for_holder(workflow, make_order):
    order = await make_order()

    first = await workflow.claims.claim(order.id, "chef", "chef-1")
    again = await workflow.claims.claim(order.id, "chef", "chef-1")

    assert first.changed
    assert not again.changed
    assert again.order.version == first.order.version


async def test_concurrent_claims_have_exactly_one_winner(clock):
    store = YieldingStore()
    manager = ClaimManager(store, clock=clock)
    order = bare_order()
    await store.add(order)

    results = await asyncio.gather(
        *(manager.claim(order.id, "chef", f"chef-{i}") for i in range(1, 6)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, AlreadyClaimed)]
    assert len(winners) == 1
    assert len(losers) == 4

    winner = winners[0].order.assigned_chef
    assert {loser.holder for loser in losers} == {winner}

    stored = await store.get(order.id)
    assert stored.chef_claim.held_by(winner)
    assert stored.version == 2
    assert [c.status for c in stored.status_history] == [OrderStatus.PENDING, OrderStatus.PREPARING]


async def test_manager_force_claim_logs_override(workflow, make_order, caplog):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-1")

    with caplog.at_level(logging.WARNING, logger="orderflow.services.claims"):
        outcome = await workflow.claims.force_claim(order.id, "chef", "chef-2", "boss")

    assert outcome.order.assigned_chef == "chef-2"
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("EMERGENCY OVERRIDE" in m and "chef-1" in m for m in warnings)


async def test_available_orders_per_role(workflow, make_order):
    waiting = await make_order(customer_ref="C-1")
    cooking = await make_order(customer_ref="C-2")
    await workflow.claim(cooking.id, "chef", "chef-1")

    chef_view = await workflow.available_orders("chef")
    assert [o.id for o in chef_view] == [waiting.id]

    await workflow.mark_ready(cooking.id, "chef-1")
    waiter_view = await workflow.available_orders("waiter")
    assert [o.id for o in waiter_view] == [cooking.id]

    await workflow.claim(cooking.id, "waiter", "waiter-1")
    assert await workflow.available_orders("waiter") == []


async def test_available_orders_rejects_roles_without_slot(workflow):
    with pytest.raises(OrderValidationError):
        await workflow.available_orders("customer")


async def test_chef_moving_order_back_lets_others_claim(workflow, make_order):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-1")

    moved = await workflow.change_status(order.id, "confirmed", "chef-1", "chef")

    assert moved.status == OrderStatus.CONFIRMED
    assert not moved.chef_claim.active
    assert [o.id for o in await workflow.available_orders("chef")] == [order.id]

    taken = await workflow.claim(order.id, "chef", "chef-2")
    assert taken.status == OrderStatus.PREPARING
    assert taken.chef_claim.held_by("chef-2")


async def test_holder_reclaims_after_moving_back(workflow, make_order):
    order = await make_order()
    await workflow.claim(order.id, "chef", "chef-1")
    await workflow.change_status(order.id, "confirmed", "chef-1", "chef")

    again = await workflow.claim(order.id, "chef", "chef-1")

    assert again.status == OrderStatus.PREPARING
    assert again.chef_claim.held_by("chef-1")
    assert not again.waiter_claim.active


async def test_waiter_moving_back_to_ready_frees_waiter_slot(workflow, ready_order):
    order = await ready_order()
    await workflow.claim(order.id, "waiter", "waiter-1")

    moved = await workflow.change_status(order.id, "ready", "waiter-1", "waiter")

    assert moved.status == OrderStatus.READY
    assert not moved.waiter_claim.active
    assert [o.id for o in await workflow.available_orders("waiter")] == [order.id]
