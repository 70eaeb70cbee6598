"""
Order Domain Model

Immutable value objects shared by the store, the claim manager, the
transition validator and the workflow service. Every mutation produces a
new Order with a bumped ``version``; the stores use that version as the
compare-and-swap token.
"""

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from orderflow.core.exceptions import InvalidStatus, OrderValidationError

CENTS = Decimal("0.01")
SYSTEM_ACTOR = "system"


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle, driven only by the payment provider."""
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class OrderType(str, enum.Enum):
    """Where the order is consumed."""
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"


class StaffRole(str, enum.Enum):
    """Actor roles supplied by the identity layer."""
    ADMIN = "admin"
    CHEF = "chef"
    WAITER = "waiter"
    CUSTOMER = "customer"
    SYSTEM = "system"


def parse_status(value) -> OrderStatus:
    """Coerce a raw value into an OrderStatus or raise InvalidStatus."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        valid = [s.value for s in OrderStatus]
        raise InvalidStatus(f"Invalid status '{value}'. Options: {valid}") from None


def parse_role(value) -> StaffRole:
    """Coerce a raw value into a StaffRole."""
    if isinstance(value, StaffRole):
        return value
    try:
        return StaffRole(str(value).strip().lower())
    except ValueError:
        raise OrderValidationError(f"Unknown role '{value}'") from None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value) -> Decimal:
    """Quantize to currency precision."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def new_order_id() -> str:
    return "ORD-" + uuid.uuid4().hex[:8].upper()


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class LineModifier:
    """A modifier chosen for one order line."""
    modifier_id: str
    name: str
    price_adjustment: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class OrderLine:
    """One line of an order, priced at creation time."""
    menu_item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    modifiers: tuple[LineModifier, ...] = ()
    note: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        adjustments = sum((m.price_adjustment for m in self.modifiers), Decimal("0"))
        return to_money((self.unit_price + adjustments) * self.quantity)


@dataclass(frozen=True)
class LineRequest:
    """A requested line before it is resolved against the menu."""
    menu_item_id: str
    quantity: int = 1
    modifier_ids: tuple[str, ...] = ()
    note: Optional[str] = None


@dataclass(frozen=True)
class ClaimSlot:
    """Exclusive per-order claim for one staff role."""
    claimant_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    active: bool = False

    def held_by(self, actor_id: str) -> bool:
        return self.active and self.claimant_id == actor_id


@dataclass(frozen=True)
class StatusChange:
    """Append-only status history entry."""
    status: OrderStatus
    actor_id: Optional[str]
    note: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class Order:
    """
    Order aggregate root.

    ``status_history`` always ends with an entry for ``status``; use
    ``with_status`` to move the order so both stay in step.
    """
    id: str
    customer_ref: str
    items: tuple[OrderLine, ...]
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    table_ref: Optional[str] = None
    order_type: OrderType = OrderType.DINE_IN
    special_instructions: Optional[str] = None
    payment_method: str = "card"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_ref: Optional[str] = None
    assigned_chef: Optional[str] = None
    assigned_waiter: Optional[str] = None
    chef_claim: ClaimSlot = field(default_factory=ClaimSlot)
    waiter_claim: ClaimSlot = field(default_factory=ClaimSlot)
    status_history: tuple[StatusChange, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_status(
        self,
        status: OrderStatus,
        actor_id: Optional[str],
        note: Optional[str],
        now: datetime,
        **changes,
    ) -> "Order":
        """Return a copy moved to ``status`` with one history entry appended."""
        entry = StatusChange(status=status, actor_id=actor_id, note=note, timestamp=now)
        return replace(
            self,
            status=status,
            status_history=self.status_history + (entry,),
            updated_at=now,
            **changes,
        )

    def touched(self, now: datetime, **changes) -> "Order":
        """Return a copy with ``changes`` applied and ``updated_at`` refreshed."""
        return replace(self, updated_at=now, **changes)


# =============================================================================
# STAFF INBOX
# =============================================================================

class NotificationKind(str, enum.Enum):
    """Why a staff inbox entry was written."""
    ORDER_READY = "order_ready"
    ORDER_ASSIGNED = "order_assigned"


def new_notification_id() -> str:
    return "NTF-" + uuid.uuid4().hex[:12].upper()


@dataclass(frozen=True)
class StaffNotification:
    """
    Persisted inbox entry for staff who may be offline when an event fires.

    An entry is addressed either to one staff member (``recipient_id``) or
    to everyone holding ``recipient_role``. Read state is tracked per reader
    so a role-wide entry stays unread for the colleagues who have not seen it.
    """
    id: str
    order_id: str
    kind: NotificationKind
    title: str
    message: str
    recipient_id: Optional[str] = None
    recipient_role: Optional[StaffRole] = None
    read_by: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)

    def addressed_to(self, user_id: str, role: StaffRole) -> bool:
        if self.recipient_id is not None:
            return self.recipient_id == user_id
        return self.recipient_role == role

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by
