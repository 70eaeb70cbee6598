"""
FastAPI Application Entry Point

Restaurant Order Workflow - HTTP and WebSocket surface.

Endpoints:
    - POST /api/orders: Place an order
    - GET /api/orders: List orders (customers see only their own)
    - GET /api/orders/available: Orders a chef/waiter can claim
    - GET /api/orders/{id}: Order detail
    - PATCH /api/orders/{id}/status: Change status
    - POST /api/orders/{id}/claim | release | ready | complete | cancel
    - POST /api/orders/{id}/payment-intent: Start a card payment
    - POST /api/admin/orders/{id}/force-claim: Emergency reassignment
    - POST /webhook/stripe: Payment provider callbacks
    - GET /api/notifications: Staff inbox (ready orders, admin assignments)
    - POST /api/notifications/{id}/read | read-all: Mark inbox entries read
    - WS /ws/{channel}: Real-time order updates
    - GET /health: System health check

Identity is trusted from the X-Actor-Id and X-Actor-Role headers.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

import redis.asyncio as aioredis
from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from orderflow.core.config import StoreBackend, get_settings, setup_logging
from orderflow.core.exceptions import OrderNotFound, OrderValidationError, OrderWorkflowError
from orderflow.database import engine, init_db
from orderflow.domain import LineRequest, PaymentStatus, StaffRole, parse_role
from orderflow.schemas import (
    CancelRequest,
    ErrorResponse,
    ForceClaimRequest,
    HealthResponse,
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentIntentResponse,
    ReleaseRequest,
    StatusUpdateRequest,
)
from orderflow.services import OrderWorkflowService, get_workflow_service
from orderflow.services.catalog import DEMO_MENU, get_menu_catalog
from orderflow.services.inbox import BaseNotificationInbox, get_notification_inbox
from orderflow.services.notifications import get_connection_manager, get_transport
from orderflow.services.payment import (
    BasePaymentService,
    get_payment_service,
    payment_event_from_webhook,
)

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Order store: {settings.order_store_backend.value}")
    logger.info(f"   Notifications: {settings.notification_transport.value}")
    logger.info("=" * 60)

    if settings.order_store_backend == StoreBackend.SQL:
        await init_db()
        logger.info("✅ Database initialized")

    if settings.is_development and settings.seed_demo_menu:
        await get_menu_catalog().seed(DEMO_MENU)

    payment_service = get_payment_service()
    logger.info(f"✅ Payment Service: {payment_service.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("✅ Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    transport = get_transport()
    if hasattr(transport, "close"):
        await transport.close()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and staff-assignment workflow: role-scoped status "
        "transitions, exclusive chef/waiter claims and real-time fan-out."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

@dataclass(frozen=True)
class Actor:
    id: str
    role: StaffRole


def get_actor(
    x_actor_id: str = Header(..., alias="X-Actor-Id"),
    x_actor_role: str = Header("customer", alias="X-Actor-Role"),
) -> Actor:
    """Identity supplied by the upstream auth layer."""
    role = parse_role(x_actor_role)
    if role == StaffRole.SYSTEM:
        raise OrderValidationError("The system role is internal and cannot be used by callers")
    return Actor(id=x_actor_id, role=role)


def _ensure_visible(order, actor: Actor) -> None:
    # Customers must not learn that other customers' orders exist
    if actor.role == StaffRole.CUSTOMER and order.customer_ref != actor.id:
        raise OrderNotFound(f"Order not found with id: {order.id}")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    workflow: OrderWorkflowService = Depends(get_workflow_service),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    store_status = "healthy" if await workflow.store.health_check() else "unhealthy"

    redis_status = "healthy"
    try:
        r = aioredis.from_url(settings.redis_url, socket_timeout=2)
        await r.ping()
        await r.aclose()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = (
        f"healthy ({payment_service.provider_name})"
        if await payment_service.health_check()
        else f"unhealthy ({payment_service.provider_name})"
    )
    transport = workflow.notifier.transport
    transport_status = (
        f"healthy ({transport.provider_name})"
        if await transport.health_check()
        else f"unhealthy ({transport.provider_name})"
    )

    overall = "operational" if all(
        s.startswith("healthy")
        for s in [store_status, redis_status, payment_status, transport_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        order_store=store_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_transport=transport_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    status_code=201,
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    """Create a new order for the calling customer from menu item references."""
    order = await workflow.create_order(
        customer_ref=actor.id,
        items=[
            LineRequest(
                menu_item_id=item.menu_item_id,
                quantity=item.quantity,
                modifier_ids=tuple(item.modifier_ids),
                note=item.note,
            )
            for item in order_data.items
        ],
        payment_method=order_data.payment_method,
        table_ref=order_data.table_ref,
        order_type=order_data.order_type,
        special_instructions=order_data.special_instructions,
    )
    return OrderResponse.from_order(order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    status: Optional[List[str]] = Query(None),
    customer_ref: Optional[str] = Query(None),
    staff_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderListResponse:
    """Retrieve orders; customers only ever see their own."""
    if actor.role == StaffRole.CUSTOMER:
        customer_ref, staff_id = actor.id, None

    orders = await workflow.list_orders(
        customer_ref=customer_ref,
        staff_id=staff_id,
        statuses=status,
    )
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.from_order(o) for o in orders[skip:skip + limit]],
    )


@app.get(
    "/api/orders/available",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Claims"],
    summary="Claimable Orders",
)
async def available_orders(
    role: Optional[str] = Query(None, description="chef or waiter; defaults to the caller's role"),
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderListResponse:
    orders = await workflow.available_orders(role or actor.role)
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.from_order(o) for o in orders],
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await workflow.get_order(order_id)
    _ensure_visible(order, actor)
    return OrderResponse.from_order(order)


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Change Order Status",
)
async def change_status(
    order_id: str,
    update: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    order = await workflow.change_status(
        order_id, update.status, actor.id, actor.role, note=update.note
    )
    return OrderResponse.from_order(order)


@app.post(
    "/api/orders/{order_id}/cancel",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Cancel Order",
)
async def cancel_order(
    order_id: str,
    request: Optional[CancelRequest] = Body(None),
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    order = await workflow.cancel_order(
        order_id,
        actor.id,
        reason=request.reason if request else None,
        actor_role=actor.role,
    )
    return OrderResponse.from_order(order)


# =============================================================================
# CLAIM ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/claim",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Claims"],
    summary="Claim Order",
)
async def claim_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    """Chefs claim the kitchen slot, waiters the front-of-house slot."""
    order = await workflow.claim(order_id, actor.role, actor.id)
    return OrderResponse.from_order(order)


@app.post(
    "/api/orders/{order_id}/release",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Claims"],
    summary="Release Claim",
)
async def release_claim(
    order_id: str,
    request: Optional[ReleaseRequest] = Body(None),
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    role = (request.role if request else None) or actor.role
    order = await workflow.release(order_id, role, actor.id, actor.role)
    return OrderResponse.from_order(order)


@app.post(
    "/api/orders/{order_id}/ready",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Claims"],
    summary="Mark Ready (claiming chef)",
)
async def mark_ready(
    order_id: str,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    if actor.role != StaffRole.CHEF:
        raise OrderValidationError("Only the claiming chef can mark an order ready")
    order = await workflow.mark_ready(order_id, actor.id)
    return OrderResponse.from_order(order)


@app.post(
    "/api/orders/{order_id}/complete",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Claims"],
    summary="Mark Completed (claiming waiter)",
)
async def mark_completed(
    order_id: str,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    if actor.role != StaffRole.WAITER:
        raise OrderValidationError("Only the claiming waiter can complete an order")
    order = await workflow.mark_completed(order_id, actor.id)
    return OrderResponse.from_order(order)


@app.post(
    "/api/admin/orders/{order_id}/force-claim",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Admin"],
    summary="Emergency Reassignment",
)
async def force_claim(
    order_id: str,
    request: ForceClaimRequest,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
) -> OrderResponse:
    order = await workflow.force_claim(
        order_id, request.role, request.staff_id, actor.id, actor.role
    )
    return OrderResponse.from_order(order)


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/payment-intent",
    response_model=PaymentIntentResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
    summary="Create Payment Intent",
)
async def create_payment_intent(
    order_id: str,
    actor: Actor = Depends(get_actor),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> PaymentIntentResponse:
    """Create a provider payment for the order total and remember its reference."""
    order = await workflow.get_order(order_id)
    _ensure_visible(order, actor)

    if order.is_terminal:
        raise OrderValidationError(f"Order {order.id} is {order.status.value}")
    if order.payment_status == PaymentStatus.PAID:
        raise OrderValidationError(f"Order {order.id} is already paid")

    result = await payment_service.create_payment_intent(
        amount=order.total_amount,
        currency=settings.stripe_currency,
        metadata={"order_id": order.id},
    )
    if not result.success:
        raise HTTPException(
            status_code=400,
            detail=result.error_message or "Payment could not be started"
        )

    # Only if no callback or cancel moved the payment since the read above
    await workflow.update_payment_status(
        order.id,
        PaymentStatus.PENDING,
        result.payment_intent_id,
        expected=order.payment_status,
    )

    return PaymentIntentResponse(
        order_id=order.id,
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        amount=order.total_amount,
        currency=result.currency,
    )


@app.post(
    "/webhook/stripe",
    tags=["Payments"],
    summary="Stripe Webhook Endpoint",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    workflow: OrderWorkflowService = Depends(get_workflow_service),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """
    Handle payment provider callbacks.

    Configure this URL in your Stripe dashboard:
        https://your-domain.com/webhook/stripe
    """
    payload = await request.body()
    event = await payment_service.verify_webhook(payload, stripe_signature or "")
    if event is None:
        raise HTTPException(status_code=400, detail="Invalid webhook signature or payload")

    payment_event = payment_event_from_webhook(event)
    if payment_event is None:
        logger.debug(f"Ignoring webhook event {event.get('type', 'unknown')}")
        return {"received": True, "handled": False}

    try:
        order = await workflow.update_payment_status(
            payment_event.order_id,
            payment_event.payment_status,
            payment_event.provider_ref,
        )
    except OrderNotFound:
        logger.warning(f"Webhook {payment_event.event_type} for unknown order {payment_event.order_id}")
        return {"received": True, "handled": False}

    return {
        "received": True,
        "handled": True,
        "order_id": order.id,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
    }


# =============================================================================
# STAFF INBOX
# =============================================================================

@app.get(
    "/api/notifications",
    response_model=NotificationListResponse,
    tags=["Notifications"],
    summary="List My Notifications",
)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    inbox: BaseNotificationInbox = Depends(get_notification_inbox),
) -> NotificationListResponse:
    """Inbox entries addressed to the caller or the caller's role, newest first."""
    entries = await inbox.list_for(actor.id, actor.role, unread_only=unread_only, limit=limit)
    notifications = [NotificationResponse.for_reader(n, actor.id) for n in entries]
    return NotificationListResponse(
        total=len(notifications),
        unread=sum(1 for n in notifications if not n.read),
        notifications=notifications,
    )


@app.post(
    "/api/notifications/read-all",
    response_model=MarkAllReadResponse,
    tags=["Notifications"],
    summary="Mark All Notifications Read",
)
async def mark_all_notifications_read(
    actor: Actor = Depends(get_actor),
    inbox: BaseNotificationInbox = Depends(get_notification_inbox),
) -> MarkAllReadResponse:
    return MarkAllReadResponse(marked=await inbox.mark_all_read(actor.id, actor.role))


@app.post(
    "/api/notifications/{notification_id}/read",
    response_model=NotificationResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
    summary="Mark Notification Read",
)
async def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(get_actor),
    inbox: BaseNotificationInbox = Depends(get_notification_inbox),
) -> NotificationResponse:
    entry = await inbox.mark_read(notification_id, actor.id, actor.role)
    return NotificationResponse.for_reader(entry, actor.id)


# =============================================================================
# REAL-TIME UPDATES
# =============================================================================

@app.websocket("/ws/{channel}")
async def order_updates(websocket: WebSocket, channel: str) -> None:
    """
    Subscribe to an update channel, e.g. customer.<id>, staff.orders,
    kitchen.orders, front-of-house.orders or table.<ref>.
    """
    manager = get_connection_manager()
    await manager.connect(channel, websocket)
    try:
        while True:
            # Clients only listen; incoming frames keep the socket alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(channel, websocket)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderWorkflowError)
async def workflow_exception_handler(request: Request, exc: OrderWorkflowError) -> JSONResponse:
    """Render workflow errors as ErrorResponse with their own status code."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
