"""
FastAPI Application Entry Point

Restaurant POS coordination core: orders, tables, cashier shifts and the
live event channel shared by cashier, kitchen and customer screens.

Endpoints:
    - /api/orders: Order lifecycle (create, status, pay, settle, refund)
    - /api/tables: Table administration, blocks, bell/bill requests
    - /api/shifts: Cash in / cash out and the derived cash balance
    - /api/cashiers/login: Cashier login with authoritative shift state
    - /ws: Topic-scoped live events
    - /health: System health check

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.core.errors import PosError
from app.database import async_session_maker, engine, get_db, init_db
from app.schemas import (
    ActiveShiftResponse,
    AvailabilityUpdate,
    CashBalance,
    CashMovementRequest,
    CustomerRequest,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OrderCreate,
    OrderListResponse,
    OrderSnapshot,
    OrderStatusUpdate,
    OrderUpdate,
    PaymentRequest,
    ShiftSnapshot,
    TableBlockRequest,
    TableBlockSnapshot,
    TableCreate,
    TableSnapshot,
    TableUpdate,
    TableView,
)
from app.services.activity import ActivityLogger
from app.services.auth import CashierAuthService
from app.services.events import BaseEventBus, get_event_bus
from app.services.events.websocket import websocket_endpoint
from app.services.orders import OrderService
from app.services.shifts import ShiftLedger
from app.services.tables import TableBlockRegistry, TableService, get_table_blocks

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

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    bus = get_event_bus()
    await bus.start()
    logger.info(f"✅ Event Bus: {bus.provider_name}")

    # Validate production config
    if not settings.is_development:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await bus.shutdown()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Real-time order and table coordination for a restaurant floor: "
        "order lifecycle, table blocking, cashier shifts and live events."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_bus() -> BaseEventBus:
    return get_event_bus()


def get_blocks() -> TableBlockRegistry:
    return get_table_blocks()


def get_activity() -> ActivityLogger:
    return ActivityLogger(async_session_maker)


def get_order_service(
    db: AsyncSession = Depends(get_db),
    bus: BaseEventBus = Depends(get_bus),
    blocks: TableBlockRegistry = Depends(get_blocks),
    activity: ActivityLogger = Depends(get_activity),
) -> OrderService:
    return OrderService(db, bus, blocks, activity)


def get_table_service(
    db: AsyncSession = Depends(get_db),
    bus: BaseEventBus = Depends(get_bus),
    blocks: TableBlockRegistry = Depends(get_blocks),
    activity: ActivityLogger = Depends(get_activity),
) -> TableService:
    return TableService(db, bus, blocks, activity)


def get_shift_ledger(
    db: AsyncSession = Depends(get_db),
    activity: ActivityLogger = Depends(get_activity),
) -> ShiftLedger:
    return ShiftLedger(db, activity)


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    activity: ActivityLogger = Depends(get_activity),
) -> CashierAuthService:
    return CashierAuthService(db, activity)


Actor = Optional[str]


def get_actor(x_actor: Optional[str] = Header(None, alias="x-actor")) -> Actor:
    """Display name of the staff member issuing the request (for the activity log)."""
    return x_actor


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "restaurant": settings.restaurant_name,
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
    db: AsyncSession = Depends(get_db),
    bus: BaseEventBus = Depends(get_bus),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2, socket_connect_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    # Check event bus
    bus_status = "healthy" if await bus.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, bus_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        event_bus=bus_status,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@app.post(
    "/api/orders",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    """
    Create a dining or takeaway order.

    Dining orders need a table number; takeaway orders need a payment
    method and are recorded as paid immediately.
    """
    logger.info(f"Creating {order_data.order_type.value} order")
    return (await service.create(order_data, actor=actor)).unwrap()


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    status: Optional[str] = Query(None),
    is_paid: Optional[bool] = Query(None),
    is_settled: Optional[bool] = Query(None),
    order_type: Optional[str] = Query(None),
    table_number: Optional[int] = Query(None, ge=1),
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Retrieve orders newest first, optionally filtered."""
    orders = (
        await service.list_orders(
            status=status,
            is_paid=is_paid,
            is_settled=is_settled,
            order_type=order_type,
            table_number=table_number,
            skip=skip,
            limit=limit,
        )
    ).unwrap()
    return OrderListResponse(total=len(orders), orders=orders)


@app.get(
    "/api/orders/active",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="Active Order Queue",
)
async def list_active_orders(
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Orders still waiting on the kitchen or the cashier."""
    orders = (await service.list_active()).unwrap()
    return OrderListResponse(total=len(orders), orders=orders)


@app.get(
    "/api/orders/history",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="Order History",
)
async def list_order_history(
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Settled, refunded and cancelled-dining orders, latest first."""
    orders = (await service.list_history(limit=limit, skip=skip)).unwrap()
    return OrderListResponse(total=len(orders), orders=orders)


@app.get(
    "/api/orders/{order_ref}",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_ref: str,
    service: OrderService = Depends(get_order_service),
) -> OrderSnapshot:
    """Get an order by storage id or order code."""
    return (await service.get_by_id(order_ref)).unwrap()


@app.patch(
    "/api/orders/{order_ref}/status",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def update_order_status(
    order_ref: str,
    body: OrderStatusUpdate,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    return (await service.update_status(order_ref, body.status, actor=actor)).unwrap()


@app.post(
    "/api/orders/{order_ref}/pay",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def mark_order_paid(
    order_ref: str,
    body: PaymentRequest,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    """Record payment; the order is settled in the same step."""
    return (await service.mark_paid(order_ref, body.payment_method, actor=actor)).unwrap()


@app.post(
    "/api/orders/{order_ref}/settle",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def settle_order(
    order_ref: str,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    return (await service.settle(order_ref, actor=actor)).unwrap()


@app.post(
    "/api/orders/{order_ref}/refund",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def refund_order(
    order_ref: str,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    """Refund a cancelled, pre-paid order."""
    return (await service.mark_refunded(order_ref, actor=actor)).unwrap()


@app.put(
    "/api/orders/{order_ref}",
    response_model=OrderSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def update_order(
    order_ref: str,
    body: OrderUpdate,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> OrderSnapshot:
    return (await service.update_order(order_ref, body, actor=actor)).unwrap()


@app.delete(
    "/api/orders/{order_ref}",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def delete_order(
    order_ref: str,
    service: OrderService = Depends(get_order_service),
    actor: Actor = Depends(get_actor),
) -> MessageResponse:
    code = (await service.delete_order(order_ref, actor=actor)).unwrap()
    return MessageResponse(message=f"Order {code} deleted successfully")


# =============================================================================
# TABLE API ENDPOINTS
# =============================================================================

@app.get(
    "/api/tables",
    response_model=list[TableView],
    tags=["Tables"],
)
async def list_tables(
    service: TableService = Depends(get_table_service),
) -> list[TableView]:
    """All tables with their derived occupied/blocked state."""
    return (await service.list_tables()).unwrap()


@app.get(
    "/api/tables/blocked",
    response_model=list[TableBlockSnapshot],
    tags=["Tables"],
)
async def list_blocked_tables(
    service: TableService = Depends(get_table_service),
) -> list[TableBlockSnapshot]:
    return service.list_blocked()


@app.post(
    "/api/tables",
    response_model=TableSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def create_table(
    body: TableCreate,
    service: TableService = Depends(get_table_service),
    actor: Actor = Depends(get_actor),
) -> TableSnapshot:
    return (await service.create_table(body, actor=actor)).unwrap()


@app.get(
    "/api/tables/{table_number}",
    response_model=TableView,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def get_table(
    table_number: int,
    service: TableService = Depends(get_table_service),
) -> TableView:
    return (await service.get_table(table_number)).unwrap()


@app.put(
    "/api/tables/{table_number}",
    response_model=TableSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def update_table(
    table_number: int,
    body: TableUpdate,
    service: TableService = Depends(get_table_service),
    actor: Actor = Depends(get_actor),
) -> TableSnapshot:
    return (await service.update_table(table_number, body, actor=actor)).unwrap()


@app.delete(
    "/api/tables/{table_number}",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def delete_table(
    table_number: int,
    service: TableService = Depends(get_table_service),
    actor: Actor = Depends(get_actor),
) -> MessageResponse:
    (await service.delete_table(table_number, actor=actor)).unwrap()
    return MessageResponse(message="Table deleted successfully")


@app.patch(
    "/api/tables/{table_number}/availability",
    response_model=TableSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def set_table_availability(
    table_number: int,
    body: AvailabilityUpdate,
    service: TableService = Depends(get_table_service),
    actor: Actor = Depends(get_actor),
) -> TableSnapshot:
    return (await service.set_availability(table_number, body.available, actor=actor)).unwrap()


@app.post(
    "/api/tables/{table_number}/block",
    response_model=TableBlockSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def block_table(
    table_number: int,
    body: TableBlockRequest,
    service: TableService = Depends(get_table_service),
) -> TableBlockSnapshot:
    """A customer session opened the menu for this table."""
    return (await service.block(table_number, body.table_label)).unwrap()


@app.post(
    "/api/tables/{table_number}/release",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def release_table(
    table_number: int,
    service: TableService = Depends(get_table_service),
    actor: Actor = Depends(get_actor),
) -> MessageResponse:
    existed = (await service.release(table_number, reason=f"released by {actor or 'client'}")).unwrap()
    return MessageResponse(
        message=f"Table {table_number} released" if existed else f"Table {table_number} was not blocked"
    )


@app.post(
    "/api/tables/{table_number}/bell",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def ring_bell(
    table_number: int,
    body: CustomerRequest,
    service: TableService = Depends(get_table_service),
) -> MessageResponse:
    (await service.bell_request(table_number, body.table_label)).unwrap()
    return MessageResponse(message="Staff notified")


@app.post(
    "/api/tables/{table_number}/bill",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Tables"],
)
async def request_bill(
    table_number: int,
    body: CustomerRequest,
    service: TableService = Depends(get_table_service),
) -> MessageResponse:
    (await service.bill_request(table_number, body.table_label)).unwrap()
    return MessageResponse(message="Bill requested")


# =============================================================================
# SHIFT API ENDPOINTS
# =============================================================================

@app.post(
    "/api/shifts/cash-in",
    response_model=ShiftSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Shifts"],
)
async def cash_in(
    body: CashMovementRequest,
    ledger: ShiftLedger = Depends(get_shift_ledger),
) -> ShiftSnapshot:
    return (await ledger.cash_in(body.cashier_id, body.cashier_username, body.amount)).unwrap()


@app.post(
    "/api/shifts/cash-out",
    response_model=ShiftSnapshot,
    responses=ERROR_RESPONSES,
    tags=["Shifts"],
)
async def cash_out(
    body: CashMovementRequest,
    ledger: ShiftLedger = Depends(get_shift_ledger),
) -> ShiftSnapshot:
    """Close the active shift; the response carries the cash difference."""
    return (await ledger.cash_out(body.cashier_id, body.amount)).unwrap()


@app.get(
    "/api/shifts/active",
    response_model=ActiveShiftResponse,
    responses=ERROR_RESPONSES,
    tags=["Shifts"],
)
async def get_active_shift(
    cashier_id: str = Query(..., min_length=1),
    ledger: ShiftLedger = Depends(get_shift_ledger),
) -> ActiveShiftResponse:
    """Authoritative shift state used by clients to reconcile their cache."""
    return ActiveShiftResponse(active_shift=(await ledger.get_active_shift(cashier_id)).unwrap())


@app.get(
    "/api/shifts/balance",
    response_model=CashBalance,
    responses=ERROR_RESPONSES,
    tags=["Shifts"],
)
async def get_cash_balance(
    cashier_id: str = Query(..., min_length=1),
    ledger: ShiftLedger = Depends(get_shift_ledger),
) -> CashBalance:
    return (await ledger.running_balance(cashier_id)).unwrap()


@app.get(
    "/api/shifts",
    response_model=list[ShiftSnapshot],
    responses=ERROR_RESPONSES,
    tags=["Shifts"],
)
async def list_shifts(
    cashier_id: str = Query(..., min_length=1),
    ledger: ShiftLedger = Depends(get_shift_ledger),
) -> list[ShiftSnapshot]:
    return (await ledger.list_shifts(cashier_id)).unwrap()


# =============================================================================
# CASHIER ENDPOINTS
# =============================================================================

@app.post(
    "/api/cashiers/login",
    response_model=LoginResponse,
    responses=ERROR_RESPONSES,
    tags=["Cashiers"],
)
async def login(
    body: LoginRequest,
    auth: CashierAuthService = Depends(get_auth_service),
) -> LoginResponse:
    return (await auth.login(body.username, body.password)).unwrap()


@app.post(
    "/api/cashiers",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Cashiers"],
)
async def create_cashier(
    body: LoginRequest,
    auth: CashierAuthService = Depends(get_auth_service),
) -> MessageResponse:
    cashier_id = (await auth.create_cashier(body.username, body.password)).unwrap()
    return MessageResponse(message=f"Cashier created with id {cashier_id}")


# =============================================================================
# LIVE EVENTS
# =============================================================================

@app.websocket("/ws")
async def events_socket(websocket: WebSocket) -> None:
    await websocket_endpoint(websocket, get_bus(), get_blocks())


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    return JSONResponse(
        status_code=exc.http_status,
        content=ErrorResponse(error=exc.message, error_code=exc.code).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request",
            error_code="validation_error",
        ).model_dump(),
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


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
