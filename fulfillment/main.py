"""
FastAPI Application Entry Point

Restaurant Order Fulfillment & Billing Engine.
Runs with an in-process event broadcaster (development) or Redis fan-out
across workers (staging/production).

Endpoints:
    - POST   /api/orders: Checkout (create order)
    - GET    /api/orders: List orders by channel / display bucket
    - GET    /api/orders/stream: Server-sent lifecycle events
    - GET    /api/orders/{id}: Order with recomputed line items
    - POST   /api/orders/{id}/status, /advance: Status transitions
    - PUT    /api/orders/{id}/payment-method: Record payment method
    - GET    /api/orders/{id}/items[/unprinted]: Canonical items
    - POST   /api/orders/{id}/items/printed, /print: Kitchen printing
    - POST   /api/orders/{id}/invoice, /finalize: Billing
    - GET    /api/vendors/{id}/sales-summary: Sales report
    - DELETE /api/admin/orders: Bulk purge
    - GET    /health: System health check
"""

import asyncio
import sys
import logging
from datetime import date, datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from fulfillment.core.config import get_settings, setup_logging
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.database import get_db, init_db, engine
from fulfillment.models import Order
from fulfillment.schemas import (
    ChannelEnum,
    ErrorResponse,
    FinalizeBillRequest,
    HealthResponse,
    InvoiceRequest,
    InvoiceResponse,
    ItemsResponse,
    MarkPrintedRequest,
    OrderCreate,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    PaymentMethodUpdate,
    PrintRequest,
    PrintResponse,
    PurgeResponse,
    SalesSummaryResponse,
    StatusUpdate,
)
from fulfillment.services import lifecycle
from fulfillment.services.events import get_event_broadcaster, scope_predicate, sse_frames
from fulfillment.services.orders import ChannelRef, CustomerInfo, OrderService

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


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
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    broadcaster = get_event_broadcaster()
    await broadcaster.start()
    logger.info(f"✅ Event Broadcaster: {broadcaster.provider_name}")
    logger.info(f"✅ Resync interval: {settings.event_resync_interval_seconds}s")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await broadcaster.close()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle, tax-aware billing and kitchen ticket tracking for "
        "dine-in, delivery and pickup orders, with live lifecycle events."
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

ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


# =============================================================================
# DEPENDENCIES & HELPERS
# =============================================================================

def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(db, broadcaster=get_event_broadcaster())


async def order_detail(service: OrderService, order: Order) -> OrderDetailResponse:
    """Order row plus recomputed items and display state."""
    items = await service.get_canonical_items(order.id)
    following = lifecycle.next_status(order.channel, order.status)
    return OrderDetailResponse(
        **OrderResponse.model_validate(order).model_dump(),
        items=[item.to_dict() for item in items],
        display_bucket=lifecycle.display_bucket(order.channel, order.status),
        can_advance=lifecycle.can_advance(order.channel, order.status),
        next_status=following if following != order.status else None,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "events": "/api/orders/stream",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify the database and the event transport."""

    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    broadcaster = get_event_broadcaster()
    events_status = "healthy" if await broadcaster.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, events_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        events=events_status,
        event_provider=broadcaster.provider_name,
        subscribers=broadcaster.subscriber_count,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderDetailResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Create Order (Checkout)",
)
async def create_order(
    order_data: OrderCreate,
    service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    """Create a pending order on one channel. Dine-in orders occupy their table."""
    logger.info(f"Creating {order_data.channel.value} order for vendor #{order_data.vendor_id}")

    order = await service.create_order(
        order_data.channel.value,
        [item.to_raw() for item in order_data.items],
        CustomerInfo(
            name=order_data.customer.name,
            phone=order_data.customer.phone,
            notes=order_data.customer.notes,
        ),
        ChannelRef(
            table_id=order_data.table_id,
            delivery_address_id=order_data.delivery_address_id,
            delivery_address=order_data.delivery_address,
            pickup_reference=order_data.pickup_reference,
            pickup_time=order_data.pickup_time,
        ),
        vendor_id=order_data.vendor_id,
    )
    return await order_detail(service, order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    vendor_id: int = Query(..., ge=1),
    channel: Optional[ChannelEnum] = Query(None),
    bucket: Optional[str] = Query(None, description="Display bucket, e.g. pending, ready, served"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Retrieve a page of a vendor's orders, newest first."""
    total, orders = await service.list_orders(
        vendor_id,
        channel=channel.value if channel else None,
        bucket=bucket,
        skip=skip,
        limit=limit,
    )
    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/orders/stream",
    tags=["Events"],
    summary="Lifecycle Event Stream (SSE)",
)
async def order_stream(
    request: Request,
    vendor_id: Optional[int] = Query(None, ge=1),
    table_id: Optional[int] = Query(None),
) -> StreamingResponse:
    """
    Server-sent events, all vendors unless narrowed by ``vendor_id``
    (and optionally ``table_id``).

    Sends ``connected`` first, then lifecycle events as they happen and a
    ``resync`` frame every interval; clients refetch on either.
    """
    subscription = get_event_broadcaster().subscribe(scope_predicate(vendor_id, table_id))
    logger.info(f"SSE client connected (vendor #{vendor_id}, table {table_id})")

    frames = sse_frames(
        subscription,
        settings.event_resync_interval_seconds,
        hello={"vendorId": vendor_id, "tableId": table_id},
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderDetailResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> OrderDetailResponse:
    """Get a specific order with its line items recomputed."""
    order = await service.get_order(order_id)
    return await order_detail(service, order)


@app.post(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def update_status(
    order_id: int,
    update: StatusUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Move an order to the next status of its channel."""
    order = await service.advance_status(order_id, update.status)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/orders/{order_id}/advance",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def advance_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await service.advance(order_id)
    return OrderResponse.model_validate(order)


@app.put(
    "/api/orders/{order_id}/payment-method",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Billing"],
)
async def set_payment_method(
    order_id: int,
    update: PaymentMethodUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Record the payment method once. Changing it needs ``override``."""
    order = await service.set_payment_method(order_id, update.payment_method.value, override=update.override)
    return OrderResponse.model_validate(order)


# =============================================================================
# KITCHEN ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders/{order_id}/items",
    response_model=ItemsResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
)
async def get_items(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> ItemsResponse:
    items = await service.get_canonical_items(order_id)
    return ItemsResponse(order_id=order_id, items=[item.to_dict() for item in items])


@app.get(
    "/api/orders/{order_id}/items/unprinted",
    response_model=ItemsResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
)
async def get_unprinted_items(
    order_id: int,
    service: OrderService = Depends(get_order_service),
) -> ItemsResponse:
    items = await service.get_unprinted_items(order_id)
    return ItemsResponse(order_id=order_id, items=[item.to_dict() for item in items])


@app.post(
    "/api/orders/{order_id}/items/printed",
    response_model=ItemsResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
)
async def mark_printed(
    order_id: int,
    request_data: MarkPrintedRequest,
    service: OrderService = Depends(get_order_service),
) -> ItemsResponse:
    """Record printed quantities. Quantities beyond what is unprinted are clamped."""
    items = await service.mark_printed(
        order_id,
        [{"itemId": mark.item_id, "quantity": mark.quantity} for mark in request_data.items],
    )
    return ItemsResponse(order_id=order_id, items=[item.to_dict() for item in items])


@app.post(
    "/api/orders/{order_id}/print",
    response_model=PrintResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
)
async def print_ticket(
    order_id: int,
    request_data: Optional[PrintRequest] = None,
    service: OrderService = Depends(get_order_service),
) -> PrintResponse:
    """Kitchen print of unprinted items, or a full reprint without side effects."""
    request_data = request_data or PrintRequest()
    result = await service.print_ticket(order_id, full=request_data.full, width=request_data.width)
    return PrintResponse(**result.to_dict())


# =============================================================================
# BILLING ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/invoice",
    response_model=InvoiceResponse,
    responses=ERROR_RESPONSES,
    tags=["Billing"],
)
async def preview_invoice(
    order_id: int,
    request_data: Optional[InvoiceRequest] = None,
    service: OrderService = Depends(get_order_service),
) -> InvoiceResponse:
    discount = request_data.discount.model_dump(mode="json") if request_data and request_data.discount else None
    invoice = await service.build_invoice(order_id, discount)
    return InvoiceResponse(**invoice.to_dict())


@app.post(
    "/api/orders/{order_id}/finalize",
    response_model=InvoiceResponse,
    responses=ERROR_RESPONSES,
    tags=["Billing"],
)
async def finalize_bill(
    order_id: int,
    request_data: Optional[FinalizeBillRequest] = None,
    service: OrderService = Depends(get_order_service),
) -> InvoiceResponse:
    """Finalize the bill; a stored payment method is reused."""
    request_data = request_data or FinalizeBillRequest()
    invoice = await service.finalize_bill(
        order_id,
        discount=request_data.discount.model_dump(mode="json") if request_data.discount else None,
        payment_method=request_data.payment_method.value if request_data.payment_method else None,
    )
    return InvoiceResponse(**invoice.to_dict())


@app.get(
    "/api/vendors/{vendor_id}/sales-summary",
    response_model=SalesSummaryResponse,
    tags=["Reports"],
)
async def sales_summary(
    vendor_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    service: OrderService = Depends(get_order_service),
) -> SalesSummaryResponse:
    summary = await service.sales_summary(vendor_id, start, end)
    return SalesSummaryResponse(**summary.to_dict())


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.delete(
    "/api/admin/orders",
    response_model=PurgeResponse,
    tags=["Admin"],
)
async def purge_orders(
    vendor_id: Optional[int] = Query(None),
    service: OrderService = Depends(get_order_service),
) -> PurgeResponse:
    """Delete all orders and kitchen tickets (optionally for one vendor)."""
    counts = await service.purge_orders(vendor_id)
    return PurgeResponse(**counts)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    """Map engine errors onto their HTTP status."""
    logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


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
