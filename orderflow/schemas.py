"""
Pydantic Schemas for Request/Response Validation

Request bodies stay permissive about workflow values (statuses, roles) so
that invalid ones reach the workflow and come back as its own errors
(InvalidStatus -> 422, OrderValidationError -> 400) instead of generic
validation failures.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from orderflow.domain import (
    NotificationKind,
    Order,
    OrderStatus,
    OrderType,
    PaymentStatus,
    StaffNotification,
)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single requested line of an order."""
    menu_item_id: str = Field(..., min_length=1, max_length=50, examples=["espresso"])
    quantity: int = Field(default=1, ge=1, le=99, examples=[2])
    modifier_ids: List[str] = Field(default_factory=list, examples=[["oat-milk"]])
    note: Optional[str] = Field(None, max_length=200)


class OrderCreate(BaseModel):
    """Request schema for creating a new order. The customer is the caller."""
    items: List[OrderItemCreate]
    table_ref: Optional[str] = Field(None, max_length=50, examples=["T12"])
    order_type: OrderType = Field(default=OrderType.DINE_IN, examples=["dine_in"])
    special_instructions: Optional[str] = Field(None, max_length=500)
    payment_method: str = Field(default="card", examples=["card", "cash"])


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., examples=["preparing"])
    note: Optional[str] = Field(None, max_length=500)


class ReleaseRequest(BaseModel):
    """Slot to release; defaults to the caller's own role."""
    role: Optional[str] = Field(None, examples=["chef"])


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ForceClaimRequest(BaseModel):
    """Admin override of a chef or waiter slot."""
    role: str = Field(..., examples=["chef"])
    staff_id: str = Field(..., min_length=1, max_length=100)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LineModifierResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    modifier_id: str
    name: str
    price_adjustment: Decimal


class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    menu_item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    modifiers: List[LineModifierResponse]
    note: Optional[str]
    line_total: Decimal


class ClaimSlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    claimant_id: Optional[str]
    claimed_at: Optional[datetime]
    active: bool


class StatusChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    actor_id: Optional[str]
    note: Optional[str]
    timestamp: datetime


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: OrderStatus
    customer_ref: str
    table_ref: Optional[str]
    order_type: OrderType
    items: List[OrderLineResponse]
    total_amount: Decimal
    special_instructions: Optional[str]
    payment_method: str
    payment_status: PaymentStatus
    payment_ref: Optional[str]
    assigned_chef: Optional[str]
    assigned_waiter: Optional[str]
    chef_claim: ClaimSlotResponse
    waiter_claim: ClaimSlotResponse
    status_history: List[StatusChangeResponse]
    created_at: datetime
    updated_at: datetime
    version: int

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls.model_validate(order)


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class PaymentIntentResponse(BaseModel):
    """Client-side payment details for an order."""
    order_id: str
    payment_intent_id: str
    client_secret: Optional[str]
    amount: Decimal
    currency: str


class NotificationResponse(BaseModel):
    """Staff inbox entry as seen by the caller."""
    id: str
    order_id: str
    kind: NotificationKind
    title: str
    message: str
    read: bool
    created_at: datetime

    @classmethod
    def for_reader(cls, notification: StaffNotification, reader_id: str) -> "NotificationResponse":
        return cls(
            id=notification.id,
            order_id=notification.order_id,
            kind=notification.kind,
            title=notification.title,
            message=notification.message,
            read=notification.is_read_by(reader_id),
            created_at=notification.created_at,
        )


class NotificationListResponse(BaseModel):
    total: int
    unread: int
    notifications: List[NotificationResponse]


class MarkAllReadResponse(BaseModel):
    marked: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    holder: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    order_store: str
    redis: str
    payment_service: str
    notification_transport: str
    timestamp: datetime
