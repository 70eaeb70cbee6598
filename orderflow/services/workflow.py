"""
Order Workflow Service

Orchestrates the order lifecycle:

    request -> transition validator -> claim rules / store CAS -> fan-out

Collaborators (store, menu catalog, cart, notifier, refund scheduler) are
passed in; nothing here reaches for module-level state. Every mutation is a
pure function handed to ``BaseOrderStore.mutate``, so concurrent requests
on one order are linearized by the store's compare-and-swap and a rejected
or lost write never leaves history behind.

Notification and cart clearing happen after the write and are best-effort:
their failures are logged and never reach the caller.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from orderflow.core.exceptions import (
    ItemUnavailable,
    OrderNotFound,
    OrderValidationError,
    OrderWorkflowError,
    TerminalState,
)
from orderflow.domain import (
    SYSTEM_ACTOR,
    ClaimSlot,
    LineModifier,
    LineRequest,
    Order,
    OrderLine,
    OrderStatus,
    OrderType,
    PaymentStatus,
    StaffRole,
    StatusChange,
    TERMINAL_STATUSES,
    new_order_id,
    parse_role,
    parse_status,
    to_money,
    utcnow,
)
from orderflow.services.catalog.base import BaseCartService, BaseMenuCatalog
from orderflow.services.claims import (
    SLOT_RULES,
    ClaimManager,
    ClaimOutcome,
    released_slots,
    settle_claims,
    slot_of,
)
from orderflow.services.notifications.fanout import OrderNotifier
from orderflow.services.store.base import BaseOrderStore
from orderflow.services.transitions import can_transition, ensure_transition

logger = logging.getLogger(__name__)

# (order_id, payment_ref, amount)
RefundScheduler = Callable[[str, str, Decimal], Any]

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
ACTIVE_STATUSES = frozenset(OrderStatus) - TERMINAL_STATUSES

# Once reached, these payment statuses only move along the listed edges
SETTLED_PAYMENT_MOVES: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def payment_can_move(current: PaymentStatus, requested: PaymentStatus) -> bool:
    allowed = SETTLED_PAYMENT_MOVES.get(current)
    return allowed is None or requested in allowed


def cancellation_changes(order: Order) -> dict:
    """Payment and slot changes that go with cancelling ``order``."""
    changes = {"payment_status": PaymentStatus.REFUNDED, **released_slots(order)}
    if order.payment_status != PaymentStatus.PAID:
        # A late capture of the abandoned intent must not match this ref
        changes["payment_ref"] = None
    return changes


def parse_payment_status(value) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    try:
        return PaymentStatus(str(value).strip().lower())
    except ValueError:
        valid = [s.value for s in PaymentStatus]
        raise OrderValidationError(f"Invalid payment status '{value}'. Options: {valid}") from None


class OrderWorkflowService:
    """
    Entry point for every order mutation.

    Args:
        store: Order persistence with compare-and-swap
        catalog: Menu lookups for pricing and availability
        cart: Cart clearing after checkout
        notifier: Fan-out to customer, staff, kitchen, front-of-house and table
        refund_scheduler: Called with (order_id, payment_ref, amount) when a
            paid order is cancelled; None disables refunds
        idempotent_status_updates: Same-status requests succeed as no-ops
            (True) or are rejected (False)
        clock: Source of "now", replaceable in tests
    """

    def __init__(
        self,
        store: BaseOrderStore,
        catalog: BaseMenuCatalog,
        cart: BaseCartService,
        notifier: OrderNotifier,
        refund_scheduler: Optional[RefundScheduler] = None,
        idempotent_status_updates: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.cart = cart
        self.notifier = notifier
        self.refund_scheduler = refund_scheduler
        self.idempotent_status_updates = idempotent_status_updates
        self._clock = clock
        self.claims = ClaimManager(store, clock=clock)

    # =========================================================================
    # CREATION
    # =========================================================================

    async def _resolve_line(self, request: LineRequest) -> OrderLine:
        if request.quantity < 1:
            raise OrderValidationError(
                f"Quantity for {request.menu_item_id} must be at least 1"
            )

        item = await self.catalog.get_item(request.menu_item_id)
        if item is None:
            raise OrderNotFound(f"Menu item not found: {request.menu_item_id}")
        if not item.available:
            raise ItemUnavailable(f"{item.name} is currently unavailable")

        modifiers = []
        for modifier_id in request.modifier_ids:
            modifier = item.modifiers.get(modifier_id)
            if modifier is None:
                raise OrderNotFound(f"Modifier {modifier_id} not found for {item.name}")
            if not modifier.available:
                raise ItemUnavailable(f"{modifier.name} is currently unavailable")
            modifiers.append(LineModifier(
                modifier_id=modifier.id,
                name=modifier.name,
                price_adjustment=to_money(modifier.price_adjustment),
            ))

        return OrderLine(
            menu_item_id=item.id,
            name=item.name,
            quantity=request.quantity,
            unit_price=to_money(item.price),
            modifiers=tuple(modifiers),
            note=request.note,
        )

    async def create_order(
        self,
        customer_ref: str,
        items: Sequence[LineRequest],
        payment_method: str = "card",
        table_ref: Optional[str] = None,
        order_type: OrderType = OrderType.DINE_IN,
        special_instructions: Optional[str] = None,
    ) -> Order:
        """
        Price the requested lines against the menu and persist a new order.

        Raises:
            OrderValidationError: No items, or a quantity below 1
            OrderNotFound: Unknown menu item or modifier
            ItemUnavailable: Item or modifier not purchasable right now
        """
        if not items:
            raise OrderValidationError("Order must contain at least one item")

        lines = tuple([await self._resolve_line(request) for request in items])
        total = to_money(sum((line.line_total for line in lines), Decimal("0")))

        now = self._clock()
        order = Order(
            id=new_order_id(),
            customer_ref=customer_ref,
            items=lines,
            total_amount=total,
            table_ref=table_ref,
            order_type=order_type,
            special_instructions=special_instructions,
            payment_method=payment_method,
            status_history=(
                StatusChange(
                    status=OrderStatus.PENDING,
                    actor_id=customer_ref,
                    note="Order created",
                    timestamp=now,
                ),
            ),
            created_at=now,
            updated_at=now,
        )
        await self.store.add(order)
        logger.info(f"Order {order.id} created for {customer_ref} - total {total}")

        await self._clear_cart(customer_ref, table_ref)
        await self.notifier.publish(order, "Order placed", "order.created", customer_ref)
        return order

    async def _clear_cart(self, customer_ref: str, table_ref: Optional[str]) -> None:
        try:
            await self.cart.clear_cart(customer_ref, table_ref)
        except Exception as e:
            logger.warning(f"Could not clear cart for {customer_ref}: {e}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get(order_id)

    async def list_orders(
        self,
        customer_ref: Optional[str] = None,
        staff_id: Optional[str] = None,
        statuses: Optional[Iterable] = None,
    ) -> list[Order]:
        wanted = {parse_status(s) for s in statuses} if statuses else None

        if customer_ref is not None:
            orders = await self.store.list_by_customer(customer_ref)
        elif staff_id is not None:
            orders = await self.store.list_by_staff(staff_id)
        elif wanted:
            return await self.store.list_by_status(wanted)
        else:
            orders = await self.store.list_all()

        if wanted:
            orders = [o for o in orders if o.status in wanted]
        return orders

    async def available_orders(self, role) -> list[Order]:
        """Orders with a free slot for ``role`` in a claimable status."""
        return await self.claims.available_orders(role)

    # =========================================================================
    # STATUS
    # =========================================================================

    async def change_status(
        self,
        order_id: str,
        requested,
        actor_id: str,
        actor_role,
        note: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``requested`` on behalf of an actor.

        Raises:
            InvalidStatus: ``requested`` is not a workflow status
            TerminalState: The order is completed or cancelled
            OrderValidationError: The role may not make this transition
            AlreadyClaimed: Another chef/waiter holds the actor's slot
        """
        target = parse_status(requested)
        role = parse_role(actor_role)

        def transition(order: Order) -> Order:
            decision = ensure_transition(
                order.status,
                target,
                role,
                allow_same_status=self.idempotent_status_updates,
            )
            if decision.is_noop:
                return order
            if role == StaffRole.CUSTOMER and order.customer_ref != actor_id:
                raise OrderValidationError("Customers can only change their own orders")

            now = self._clock()
            changes = settle_claims(order, target, actor_id, role, now)
            if target == OrderStatus.CANCELLED:
                changes.update(cancellation_changes(order))
            return order.with_status(
                target,
                actor_id,
                note or f"Status changed to {target.value}",
                now,
                **changes,
            )

        before, after = await self.store.mutate(order_id, transition)
        if after is before:
            logger.debug(f"Order {order_id} already {target.value}; nothing to do")
            return after

        logger.info(
            f"Order {order_id}: {before.status.value} -> {after.status.value} "
            f"by {role.value} {actor_id}"
        )
        if after.status == OrderStatus.CANCELLED:
            self._refund_if_paid(before, after)
        await self.notifier.publish(
            after,
            f"Order is now {after.status.value}",
            "order.status_changed",
            actor_id,
        )
        return after

    async def update_payment_status(
        self,
        order_id: str,
        payment_status,
        provider_ref: Optional[str] = None,
        expected: Optional[PaymentStatus] = None,
    ) -> Order:
        """
        Record a payment callback.

        A payment that arrives while the order is still pending also
        confirms it, in the same write. Re-delivery of the same update is
        a no-op, and so is any update when the order's payment status is no
        longer ``expected``.

        Paid only moves on to refunded and refunded never moves. Callbacks
        that arrive out of order are ignored. A capture that lands on a
        cancelled order is recorded as refunded and handed to the refund
        scheduler.
        """
        status = parse_payment_status(payment_status)
        if expected is not None:
            expected = parse_payment_status(expected)
        refund_ref: Optional[str] = None
        ignored: Optional[str] = None

        def transition(order: Order) -> Order:
            nonlocal refund_ref, ignored
            refund_ref = ignored = None
            ref = provider_ref or order.payment_ref
            if expected is not None and order.payment_status != expected:
                ignored = f"payment is {order.payment_status.value}, not {expected.value}"
                return order
            if order.payment_status == status and order.payment_ref == ref:
                return order

            now = self._clock()
            if order.status == OrderStatus.CANCELLED:
                if status != PaymentStatus.PAID or not ref or ref == order.payment_ref:
                    ignored = "order is cancelled"
                    return order
                refund_ref = ref
                return order.touched(now, payment_status=PaymentStatus.REFUNDED, payment_ref=ref)
            if not payment_can_move(order.payment_status, status):
                ignored = f"payment is already {order.payment_status.value}"
                return order

            changes = {"payment_status": status, "payment_ref": ref}
            if status == PaymentStatus.PAID and can_transition(
                order.status,
                OrderStatus.CONFIRMED,
                StaffRole.SYSTEM,
                allow_same_status=False,
            ).allowed:
                return order.with_status(
                    OrderStatus.CONFIRMED,
                    SYSTEM_ACTOR,
                    "Payment confirmed",
                    now,
                    **changes,
                )
            return order.touched(now, **changes)

        before, after = await self.store.mutate(order_id, transition)
        if after is before:
            if ignored:
                logger.warning(f"Order {order_id}: {status.value} update ignored, {ignored}")
            else:
                logger.debug(f"Order {order_id}: payment already {status.value}")
            return after

        logger.info(
            f"Order {order_id}: payment {before.payment_status.value} -> "
            f"{after.payment_status.value} (ref={after.payment_ref})"
        )
        if refund_ref:
            logger.warning(f"Order {order_id}: payment {refund_ref} captured after cancellation")
            self._schedule_refund(after, refund_ref)
        await self.notifier.publish(
            after,
            f"Payment {after.payment_status.value}",
            "order.payment_updated",
            SYSTEM_ACTOR,
        )
        return after

    async def cancel_order(
        self,
        order_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        actor_role=StaffRole.CUSTOMER,
    ) -> Order:
        """
        Cancel a pending or confirmed order and mark its payment refunded.

        A paid order with a provider reference is handed to the refund
        scheduler; a failure to schedule is logged, not raised.
        """
        role = parse_role(actor_role)

        def transition(order: Order) -> Order:
            if order.is_terminal:
                raise TerminalState(
                    f"Order {order.id} is already {order.status.value} and cannot change"
                )
            if order.status not in CANCELLABLE_STATUSES:
                raise OrderValidationError(
                    f"Order {order.id} can no longer be cancelled; it is {order.status.value}"
                )
            if role == StaffRole.CUSTOMER and order.customer_ref != actor_id:
                raise OrderValidationError("Customers can only cancel their own orders")
            ensure_transition(order.status, OrderStatus.CANCELLED, role)

            return order.with_status(
                OrderStatus.CANCELLED,
                actor_id,
                f"Cancelled: {reason}" if reason else "Order cancelled",
                self._clock(),
                **cancellation_changes(order),
            )

        before, after = await self.store.mutate(order_id, transition)
        logger.info(f"Order {order_id} cancelled by {role.value} {actor_id}")
        self._refund_if_paid(before, after)

        await self.notifier.publish(
            after,
            f"Order cancelled{': ' + reason if reason else ''}",
            "order.cancelled",
            actor_id,
        )
        return after

    def _refund_if_paid(self, before: Order, after: Order) -> None:
        if before.payment_status == PaymentStatus.PAID and before.payment_ref:
            self._schedule_refund(after, before.payment_ref)

    def _schedule_refund(self, order: Order, payment_ref: str) -> None:
        if self.refund_scheduler is None:
            logger.warning(f"Order {order.id}: no refund scheduler configured, refund skipped")
            return
        try:
            self.refund_scheduler(order.id, payment_ref, order.total_amount)
            logger.info(f"Order {order.id}: refund of {order.total_amount} scheduled")
        except Exception as e:
            logger.error(f"Order {order.id}: failed to schedule refund: {e}")

    # =========================================================================
    # CLAIMS
    # =========================================================================

    async def _announce(self, outcome: ClaimOutcome, message: str, event_type: str, actor_id: str) -> Order:
        if outcome.changed:
            await self.notifier.publish(outcome.order, message, event_type, actor_id)
        return outcome.order

    async def claim(self, order_id: str, role, actor_id: str) -> Order:
        """
        Take the chef or waiter slot and advance the order.

        Raises:
            AlreadyClaimed: Someone else holds the slot
        """
        outcome = await self.claims.claim(order_id, role, actor_id)
        return await self._announce(
            outcome,
            f"Order claimed by {parse_role(role).value} {actor_id}",
            "order.claimed",
            actor_id,
        )

    async def release(
        self,
        order_id: str,
        role,
        actor_id: str,
        actor_role,
        expected: Optional[ClaimSlot] = None,
    ) -> Order:
        outcome = await self.claims.release(order_id, role, actor_id, actor_role, expected=expected)
        return await self._announce(
            outcome,
            f"{parse_role(role).value.capitalize()} claim released",
            "order.released",
            actor_id,
        )

    async def mark_ready(self, order_id: str, chef_id: str) -> Order:
        outcome = await self.claims.finish(order_id, StaffRole.CHEF, chef_id)
        return await self._announce(outcome, "Order is ready", "order.ready", chef_id)

    async def mark_completed(self, order_id: str, waiter_id: str) -> Order:
        outcome = await self.claims.finish(order_id, StaffRole.WAITER, waiter_id)
        return await self._announce(outcome, "Order completed", "order.completed", waiter_id)

    async def force_claim(
        self,
        order_id: str,
        role,
        staff_id: str,
        admin_id: str,
        admin_role=StaffRole.ADMIN,
    ) -> Order:
        """Admin override: give the slot to ``staff_id`` whoever holds it."""
        outcome = await self.claims.force_claim(order_id, role, staff_id, admin_id, admin_role)
        return await self._announce(
            outcome,
            f"Order reassigned to {parse_role(role).value} {staff_id}",
            "order.reassigned",
            admin_id,
        )

    async def release_stale_claims(self, max_age: timedelta) -> list[Order]:
        """
        Release every active claim older than ``max_age``.

        Runs as the system actor with admin rights, through ``release``, so
        stale orders go back to the status they were claimed from. Each
        release only applies to the claim seen in the listing; a slot that
        was released or re-claimed since is left alone.
        """
        cutoff = self._clock() - max_age
        released = []

        for order in await self.store.list_by_status(ACTIVE_STATUSES):
            for rule in SLOT_RULES.values():
                slot = slot_of(order, rule)
                if not slot.active or slot.claimed_at is None or slot.claimed_at >= cutoff:
                    continue
                try:
                    outcome = await self.claims.release(
                        order.id, rule.role, SYSTEM_ACTOR, StaffRole.ADMIN, expected=slot
                    )
                except OrderWorkflowError as e:
                    logger.warning(f"Order {order.id}: stale {rule.label} claim not released: {e.message}")
                    continue
                if not outcome.changed:
                    logger.debug(f"Order {order.id}: {rule.label} claim changed since listing, skipped")
                    continue
                logger.info(
                    f"Order {order.id}: released stale {rule.label} claim of {slot.claimant_id}"
                )
                released.append(
                    await self._announce(
                        outcome, f"{rule.label.capitalize()} claim released", "order.released", SYSTEM_ACTOR
                    )
                )

        return released
