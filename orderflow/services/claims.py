"""
Claim/Lock Manager

Each order has two claim slots, one for the kitchen (chef) and one for the
front of house (waiter). At most one staff member actively holds a slot.

The rules live in SLOT_RULES. The functions below are pure: they take the
current Order and return the next one (or raise). ClaimManager runs them
through ``BaseOrderStore.mutate`` so every claim is a compare-and-swap on the
order's version. The loser of a race re-reads, sees the winner's claim and
gets AlreadyClaimed.

Claim flow:
    chef:   pending/confirmed --claim--> preparing --mark_ready--> ready
    waiter: ready --claim--> served --mark_completed--> completed
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from orderflow.core.exceptions import (
    AlreadyClaimed,
    OrderValidationError,
    TerminalState,
)
from orderflow.domain import (
    ClaimSlot,
    Order,
    OrderStatus,
    StaffRole,
    parse_role,
    utcnow,
)
from orderflow.services.store.base import BaseOrderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotRule:
    """
    Workflow rules for one claim slot.

    Attributes:
        role: Staff role that owns the slot
        slot_field: Order attribute holding the ClaimSlot
        assignee_field: Order attribute holding the assigned staff id
        claimable_from: Statuses in which the slot can be claimed
        claim_to: Status a claim advances the order to
        finish_from: Status the holder finishes from
        finish_to: Status the holder finishes to
        force_from: Statuses in which an admin may force-claim
        release_to: Fallback status for a release when history has no source
    """
    role: StaffRole
    slot_field: str
    assignee_field: str
    claimable_from: frozenset[OrderStatus]
    claim_to: OrderStatus
    finish_from: OrderStatus
    finish_to: OrderStatus
    force_from: frozenset[OrderStatus]
    release_to: OrderStatus

    @property
    def label(self) -> str:
        return self.role.value


SLOT_RULES: dict[StaffRole, SlotRule] = {
    StaffRole.CHEF: SlotRule(
        role=StaffRole.CHEF,
        slot_field="chef_claim",
        assignee_field="assigned_chef",
        claimable_from=frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED}),
        claim_to=OrderStatus.PREPARING,
        finish_from=OrderStatus.PREPARING,
        finish_to=OrderStatus.READY,
        force_from=frozenset({
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
        }),
        release_to=OrderStatus.PENDING,
    ),
    StaffRole.WAITER: SlotRule(
        role=StaffRole.WAITER,
        slot_field="waiter_claim",
        assignee_field="assigned_waiter",
        claimable_from=frozenset({OrderStatus.READY}),
        claim_to=OrderStatus.SERVED,
        finish_from=OrderStatus.SERVED,
        finish_to=OrderStatus.COMPLETED,
        force_from=frozenset({OrderStatus.READY, OrderStatus.SERVED}),
        release_to=OrderStatus.READY,
    ),
}


def slot_rule(role) -> SlotRule:
    """Look up the slot owned by ``role``."""
    rule = SLOT_RULES.get(parse_role(role))
    if rule is None:
        raise OrderValidationError(f"Role {role} has no claim slot; use chef or waiter")
    return rule


def slot_of(order: Order, rule: SlotRule) -> ClaimSlot:
    return getattr(order, rule.slot_field)


def is_available(order: Order, rule: SlotRule) -> bool:
    """Order is in a claimable status and nobody holds the slot."""
    return order.status in rule.claimable_from and not slot_of(order, rule).active


def _already_claimed(order: Order, rule: SlotRule) -> AlreadyClaimed:
    holder = slot_of(order, rule).claimant_id
    return AlreadyClaimed(
        f"Order {order.id} is already claimed by {rule.label} {holder}",
        holder=holder,
    )


def _ensure_not_terminal(order: Order) -> None:
    if order.is_terminal:
        raise TerminalState(
            f"Order {order.id} is already {order.status.value} and cannot change"
        )


def _claimed_from(order: Order, rule: SlotRule) -> OrderStatus:
    """Status the order was in before its most recent advance into ``claim_to``."""
    seen_claim = False
    for change in reversed(order.status_history):
        if change.status == rule.claim_to:
            seen_claim = True
        elif seen_claim:
            if change.status in rule.claimable_from:
                return change.status
            break
    return rule.release_to


def released_slots(order: Order) -> dict:
    """Changes that deactivate every active slot."""
    changes = {}
    for rule in SLOT_RULES.values():
        slot = slot_of(order, rule)
        if slot.active:
            changes[rule.slot_field] = replace(slot, active=False)
    return changes


# =============================================================================
# PURE TRANSITIONS
# =============================================================================

def claim_order(order: Order, rule: SlotRule, actor_id: str, now: datetime) -> Order:
    """
    Take the slot and advance the status.

    Returns the order unchanged when ``actor_id`` already holds the slot and
    the order is still in the claim-advanced status.
    """
    _ensure_not_terminal(order)

    slot = slot_of(order, rule)
    if slot.held_by(actor_id):
        if order.status == rule.claim_to:
            return order
    elif slot.active:
        raise _already_claimed(order, rule)

    if order.status not in rule.claimable_from:
        allowed = ", ".join(sorted(s.value for s in rule.claimable_from))
        raise OrderValidationError(
            f"Order {order.id} is {order.status.value}; "
            f"{rule.label}s can only claim orders that are {allowed}"
        )

    return order.with_status(
        rule.claim_to,
        actor_id,
        f"Claimed by {rule.label} {actor_id}",
        now,
        **{
            rule.slot_field: ClaimSlot(claimant_id=actor_id, claimed_at=now, active=True),
            rule.assignee_field: actor_id,
        },
    )


def release_order(
    order: Order,
    rule: SlotRule,
    actor_id: str,
    actor_role: StaffRole,
    now: datetime,
    expected: Optional[ClaimSlot] = None,
) -> Order:
    """
    Give the slot up without finishing.

    The assignee is kept. If the order still sits in the claim-advanced
    status it goes back to the status it was claimed from, so someone else
    can pick it up. Releasing an inactive slot is a no-op, and so is
    releasing a slot that is no longer the ``expected`` claim.
    """
    slot = slot_of(order, rule)
    if not slot.active:
        return order
    if expected is not None and (
        slot.claimant_id != expected.claimant_id or slot.claimed_at != expected.claimed_at
    ):
        return order

    if not slot.held_by(actor_id) and actor_role != StaffRole.ADMIN:
        raise OrderValidationError(
            f"Only {slot.claimant_id} or an admin can release the "
            f"{rule.label} claim on order {order.id}"
        )

    changes = {rule.slot_field: replace(slot, active=False)}
    if order.status == rule.claim_to:
        return order.with_status(
            _claimed_from(order, rule),
            actor_id,
            f"{rule.label.capitalize()} claim released by {actor_id}",
            now,
            **changes,
        )
    return order.touched(now, **changes)


def finish_order(order: Order, rule: SlotRule, actor_id: str, now: datetime) -> Order:
    """Advance to the slot's finish status and release the slot in one step."""
    _ensure_not_terminal(order)

    slot = slot_of(order, rule)
    if not slot.held_by(actor_id):
        if slot.active:
            raise _already_claimed(order, rule)
        raise OrderValidationError(
            f"Order {order.id} is not claimed by {rule.label} {actor_id}"
        )

    if order.status != rule.finish_from:
        raise OrderValidationError(
            f"Order {order.id} is {order.status.value}; expected {rule.finish_from.value}"
        )

    changes = {rule.slot_field: replace(slot, active=False)}
    if rule.finish_to.is_terminal:
        changes = {**released_slots(order), **changes}

    return order.with_status(
        rule.finish_to,
        actor_id,
        f"Marked {rule.finish_to.value} by {rule.label} {actor_id}",
        now,
        **changes,
    )


def force_claim_order(
    order: Order,
    rule: SlotRule,
    staff_id: str,
    admin_id: str,
    admin_role: StaffRole,
    now: datetime,
) -> Order:
    """
    Hand the slot to ``staff_id`` regardless of who holds it.

    Always appends a history entry, even when the status does not move.
    """
    if admin_role != StaffRole.ADMIN:
        raise OrderValidationError("Only admins can force-claim orders")
    _ensure_not_terminal(order)

    if order.status not in rule.force_from:
        allowed = ", ".join(sorted(s.value for s in rule.force_from))
        raise OrderValidationError(
            f"Order {order.id} is {order.status.value}; "
            f"{rule.label} slot can only be overridden while {allowed}"
        )

    slot = slot_of(order, rule)
    note = f"EMERGENCY OVERRIDE: {rule.label} slot assigned to {staff_id} by admin {admin_id}"
    if slot.active:
        note += f" (was {slot.claimant_id})"

    return order.with_status(
        rule.claim_to,
        admin_id,
        note,
        now,
        **{
            rule.slot_field: ClaimSlot(claimant_id=staff_id, claimed_at=now, active=True),
            rule.assignee_field: staff_id,
        },
    )


def settle_claims(
    order: Order,
    target: OrderStatus,
    actor_id: str,
    actor_role: StaffRole,
    now: datetime,
) -> dict:
    """
    Slot changes that accompany a plain status change.

    Staff cannot move an order whose slot for their role belongs to
    someone else. A chef moving to preparing (or a waiter to served) with
    a free slot takes it. A slot is only ever active while the order sits
    in that slot's claim-advanced status, so any move away from it (forward
    to finish, backwards, or to a terminal status) frees the slot.
    """
    changes = {}
    rule = SLOT_RULES.get(actor_role)
    if rule is not None:
        slot = slot_of(order, rule)
        if slot.active and slot.claimant_id != actor_id:
            raise _already_claimed(order, rule)
        if target == rule.claim_to and not slot.active:
            changes[rule.slot_field] = ClaimSlot(claimant_id=actor_id, claimed_at=now, active=True)
            changes[rule.assignee_field] = actor_id

    for other in SLOT_RULES.values():
        slot = slot_of(order, other)
        if slot.active and target != other.claim_to:
            changes[other.slot_field] = replace(slot, active=False)

    return changes


# =============================================================================
# MANAGER
# =============================================================================

@dataclass(frozen=True)
class ClaimOutcome:
    """Result of a claim operation; ``changed`` is False for no-ops."""
    order: Order
    changed: bool


class ClaimManager:
    """Runs the slot transitions atomically against the order store."""

    def __init__(self, store: BaseOrderStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    async def _apply(self, order_id: str, transition) -> ClaimOutcome:
        before, after = await self.store.mutate(order_id, transition)
        return ClaimOutcome(order=after, changed=after is not before)

    async def claim(self, order_id: str, role, actor_id: str) -> ClaimOutcome:
        rule = slot_rule(role)
        outcome = await self._apply(
            order_id, lambda order: claim_order(order, rule, actor_id, self._clock())
        )
        if outcome.changed:
            logger.info(f"Order {order_id} claimed by {rule.label} {actor_id}")
        else:
            logger.debug(f"Order {order_id}: {rule.label} {actor_id} already holds the claim")
        return outcome

    async def release(
        self,
        order_id: str,
        role,
        actor_id: str,
        actor_role,
        expected: Optional[ClaimSlot] = None,
    ) -> ClaimOutcome:
        rule = slot_rule(role)
        actor_role = parse_role(actor_role)
        outcome = await self._apply(
            order_id,
            lambda order: release_order(
                order, rule, actor_id, actor_role, self._clock(), expected=expected
            ),
        )
        if outcome.changed:
            logger.info(
                f"Order {order_id}: {rule.label} claim released by {actor_id} "
                f"(status now {outcome.order.status.value})"
            )
        return outcome

    async def finish(self, order_id: str, role, actor_id: str) -> ClaimOutcome:
        rule = slot_rule(role)
        outcome = await self._apply(
            order_id, lambda order: finish_order(order, rule, actor_id, self._clock())
        )
        logger.info(
            f"Order {order_id} marked {rule.finish_to.value} by {rule.label} {actor_id}"
        )
        return outcome

    async def force_claim(
        self,
        order_id: str,
        role,
        staff_id: str,
        admin_id: str,
        admin_role=StaffRole.ADMIN,
    ) -> ClaimOutcome:
        rule = slot_rule(role)
        admin_role = parse_role(admin_role)
        previous: Optional[str] = None

        def transition(order: Order) -> Order:
            nonlocal previous
            slot = slot_of(order, rule)
            previous = slot.claimant_id if slot.active else None
            return force_claim_order(order, rule, staff_id, admin_id, admin_role, self._clock())

        outcome = await self._apply(order_id, transition)
        logger.warning(
            f"EMERGENCY OVERRIDE: admin {admin_id} assigned {rule.label} slot of "
            f"order {order_id} to {staff_id} (previous holder: {previous or 'none'})"
        )
        return outcome

    async def available_orders(self, role) -> list[Order]:
        """Orders the given role could claim right now, oldest first."""
        rule = slot_rule(role)
        candidates = await self.store.list_by_status(rule.claimable_from)
        return [order for order in candidates if is_available(order, rule)]
