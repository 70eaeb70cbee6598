"""
SQLAlchemy Database Models

Relational layout for the order workflow:
- Orders with inline chef/waiter claim slots and a CAS version column
- Immutable order lines and their modifiers
- Append-only status history
- Menu items, modifiers and cart lines for the catalog collaborators
- Staff inbox entries with per-reader read receipts
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from orderflow.database import Base
from orderflow.domain import NotificationKind, OrderStatus, OrderType, PaymentStatus, StaffRole

MONEY = Numeric(10, 2)


class OrderRow(Base):
    """
    Main Order table.

    ``version`` is bumped by every update; writers only update the row when
    the version they read is still current.
    """
    __tablename__ = "orders"

    id = Column(String(20), primary_key=True)

    # =========================================================================
    # OWNERSHIP & CONTEXT
    # =========================================================================
    customer_ref = Column(String(100), nullable=False, index=True)
    table_ref = Column(String(50), nullable=True, index=True)
    order_type = Column(Enum(OrderType), default=OrderType.DINE_IN, nullable=False)
    special_instructions = Column(Text, nullable=True)

    # =========================================================================
    # PRICING & PAYMENT
    # =========================================================================
    total_amount = Column(MONEY, nullable=False)
    payment_method = Column(String(30), nullable=False, default="card")
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_ref = Column(String(100), nullable=True, index=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # =========================================================================
    # STAFF ASSIGNMENT & CLAIMS
    # =========================================================================
    assigned_chef = Column(String(100), nullable=True, index=True)
    assigned_waiter = Column(String(100), nullable=True, index=True)
    chef_claimant_id = Column(String(100), nullable=True)
    chef_claimed_at = Column(DateTime(timezone=True), nullable=True)
    chef_claim_active = Column(Boolean, default=False, nullable=False)
    waiter_claimant_id = Column(String(100), nullable=True)
    waiter_claimed_at = Column(DateTime(timezone=True), nullable=True)
    waiter_claim_active = Column(Boolean, default=False, nullable=False)

    # =========================================================================
    # CONCURRENCY & TIMESTAMPS
    # =========================================================================
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship(
        "OrderItemRow",
        order_by="OrderItemRow.position",
        cascade="all, delete-orphan",
        lazy="raise",
    )
    history = relationship(
        "StatusHistoryRow",
        order_by="StatusHistoryRow.sequence",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    def __repr__(self):
        return f"<Order {self.id} - {self.customer_ref} - {self.status.value} v{self.version}>"


class OrderItemRow(Base):
    """One immutable order line."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(20), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    menu_item_id = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(MONEY, nullable=False)
    note = Column(Text, nullable=True)

    modifiers = relationship(
        "OrderItemModifierRow",
        order_by="OrderItemModifierRow.id",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class OrderItemModifierRow(Base):
    __tablename__ = "order_item_modifiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    modifier_id = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    price_adjustment = Column(MONEY, nullable=False, default=0)


class StatusHistoryRow(Base):
    """Append-only status history; rows are never updated."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(20), ForeignKey("orders.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    status = Column(Enum(OrderStatus), nullable=False)
    actor_id = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# CATALOG COLLABORATORS
# =============================================================================

class MenuItemRow(Base):
    __tablename__ = "menu_items"

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    price = Column(MONEY, nullable=False)
    available = Column(Boolean, default=True, nullable=False)

    modifiers = relationship("ModifierRow", cascade="all, delete-orphan", lazy="selectin")


class ModifierRow(Base):
    """Modifier ids are only unique within their menu item."""
    __tablename__ = "modifiers"

    menu_item_id = Column(String(50), ForeignKey("menu_items.id"), primary_key=True)
    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    price_adjustment = Column(MONEY, nullable=False, default=0)
    available = Column(Boolean, default=True, nullable=False)


class CartItemRow(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_ref = Column(String(100), nullable=False, index=True)
    table_ref = Column(String(50), nullable=True, index=True)
    menu_item_id = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# STAFF INBOX
# =============================================================================

class NotificationRow(Base):
    """Inbox entry addressed to one staff member or to a whole role."""
    __tablename__ = "staff_notifications"

    id = Column(String(20), primary_key=True)
    order_id = Column(String(20), nullable=False, index=True)
    kind = Column(Enum(NotificationKind), nullable=False)
    title = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    recipient_id = Column(String(100), nullable=True, index=True)
    recipient_role = Column(Enum(StaffRole), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    reads = relationship("NotificationReadRow", cascade="all, delete-orphan", lazy="selectin")


class NotificationReadRow(Base):
    """One reader having seen one entry."""
    __tablename__ = "staff_notification_reads"

    notification_id = Column(String(20), ForeignKey("staff_notifications.id"), primary_key=True)
    reader_id = Column(String(100), primary_key=True)
    read_at = Column(DateTime(timezone=True), server_default=func.now())
