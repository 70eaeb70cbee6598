"""
Order Notification Fan-out

Every order mutation is announced to several independent audiences:

    customer.<customer_ref>    the customer who placed the order
    staff.orders               staff and admin dashboards
    kitchen.orders             chef-relevant statuses
    front-of-house.orders      waiter-relevant statuses
    table.<table_ref>          screens at the table, when the order has one

Sends run concurrently, each with its own timeout. A failing audience is
logged and skipped; ``publish`` never raises, so a notification problem can
never undo the order change that triggered it.

Events staff have to act on are also written to the staff inbox, so that
someone who was offline still finds them:

    order ready          every waiter
    order reassigned     the chef or waiter who was handed the slot
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from orderflow.domain import (
    NotificationKind,
    Order,
    OrderStatus,
    StaffNotification,
    StaffRole,
    new_notification_id,
    utcnow,
)
from orderflow.services.inbox.base import BaseNotificationInbox
from orderflow.services.notifications.base import BaseTransport, NotificationResult

logger = logging.getLogger(__name__)

STAFF_CHANNEL = "staff.orders"
KITCHEN_CHANNEL = "kitchen.orders"
FRONT_OF_HOUSE_CHANNEL = "front-of-house.orders"

KITCHEN_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.CANCELLED,
})
FRONT_OF_HOUSE_STATUSES = frozenset({
    OrderStatus.READY,
    OrderStatus.SERVED,
    OrderStatus.COMPLETED,
})


def customer_channel(customer_ref: str) -> str:
    return f"customer.{customer_ref}"


def table_channel(table_ref: str) -> str:
    return f"table.{table_ref}"


def resolve_channels(order: Order) -> list[str]:
    """Audiences for an event about ``order``."""
    channels = [customer_channel(order.customer_ref), STAFF_CHANNEL]
    if order.status in KITCHEN_STATUSES:
        channels.append(KITCHEN_CHANNEL)
    if order.status in FRONT_OF_HOUSE_STATUSES:
        channels.append(FRONT_OF_HOUSE_CHANNEL)
    if order.table_ref:
        channels.append(table_channel(order.table_ref))
    return channels


def inbox_entry_for(order: Order, event_type: str) -> Optional[StaffNotification]:
    """Inbox entry an event leaves behind, if staff need to act on it."""
    if order.status == OrderStatus.READY and event_type in ("order.ready", "order.status_changed"):
        where = f" for table {order.table_ref}" if order.table_ref else ""
        return StaffNotification(
            id=new_notification_id(),
            order_id=order.id,
            kind=NotificationKind.ORDER_READY,
            title="Order Ready to Serve",
            message=f"Order {order.id}{where} is ready to serve. Please pick it up.",
            recipient_role=StaffRole.WAITER,
        )

    if event_type == "order.reassigned":
        if order.chef_claim.active:
            staff_id, task = order.chef_claim.claimant_id, "start preparation"
        elif order.waiter_claim.active:
            staff_id, task = order.waiter_claim.claimant_id, "serve it"
        else:
            return None
        return StaffNotification(
            id=new_notification_id(),
            order_id=order.id,
            kind=NotificationKind.ORDER_ASSIGNED,
            title="Order Assigned to You",
            message=f"Order {order.id} has been assigned to you by an admin. Please {task}.",
            recipient_id=staff_id,
        )

    return None


@dataclass(frozen=True)
class OrderUpdateEvent:
    """Payload pushed to subscribers."""
    order_id: str
    status: OrderStatus
    payment_status: str
    message: str
    event_type: str
    actor_id: Optional[str] = None
    assigned_chef: Optional[str] = None
    assigned_waiter: Optional[str] = None
    table_ref: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_order(
        cls,
        order: Order,
        message: str,
        event_type: str,
        actor_id: Optional[str] = None,
    ) -> "OrderUpdateEvent":
        return cls(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status.value,
            message=message,
            event_type=event_type,
            actor_id=actor_id,
            assigned_chef=order.assigned_chef,
            assigned_waiter=order.assigned_waiter,
            table_ref=order.table_ref,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "payment_status": self.payment_status,
            "message": self.message,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "assigned_chef": self.assigned_chef,
            "assigned_waiter": self.assigned_waiter,
            "table_ref": self.table_ref,
            "timestamp": self.timestamp.isoformat(),
        }


class OrderNotifier:
    """
    Publishes order events to every audience through one transport.

    Args:
        transport: Real-time delivery backend
        timeout: Seconds each audience send may take
        inbox: Staff inbox for events that must outlive the connection;
            None keeps fan-out transient only
    """

    def __init__(
        self,
        transport: BaseTransport,
        timeout: float = 2.0,
        inbox: Optional[BaseNotificationInbox] = None,
    ):
        self.transport = transport
        self.timeout = timeout
        self.inbox = inbox

    async def _send_one(self, channel: str, payload: dict[str, Any]) -> NotificationResult:
        try:
            return await asyncio.wait_for(self.transport.send(channel, payload), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Notification to {channel} timed out after {self.timeout}s")
            return NotificationResult(
                success=False,
                channel=channel,
                error_message="timeout",
                provider=self.transport.provider_name,
            )
        except Exception as e:
            logger.error(f"Notification to {channel} failed: {e}")
            return NotificationResult(
                success=False,
                channel=channel,
                error_message=str(e),
                provider=self.transport.provider_name,
            )

    async def publish(
        self,
        order: Order,
        message: str,
        event_type: str,
        actor_id: Optional[str] = None,
    ) -> list[NotificationResult]:
        """
        Send an update about ``order`` to all of its audiences.

        Returns:
            One result per audience; failures are reported, never raised
        """
        event = OrderUpdateEvent.from_order(order, message, event_type, actor_id)
        payload = event.to_dict()
        channels = resolve_channels(order)

        results = await asyncio.gather(
            *(self._send_one(channel, payload) for channel in channels)
        )

        failed = [r.channel for r in results if not r.success]
        if failed:
            logger.warning(
                f"Order {order.id} {event_type}: {len(failed)}/{len(results)} "
                f"audience(s) not notified ({', '.join(failed)})"
            )
        else:
            logger.debug(f"Order {order.id} {event_type} sent to {len(results)} audiences")

        await self._record(order, event_type)
        return list(results)

    async def _record(self, order: Order, event_type: str) -> None:
        if self.inbox is None:
            return
        entry = inbox_entry_for(order, event_type)
        if entry is None:
            return
        try:
            await self.inbox.add(entry)
        except Exception as e:
            logger.error(f"Order {order.id} {event_type}: inbox entry not stored: {e}")
