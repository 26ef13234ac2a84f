"""
Pydantic Schemas for Request/Response Validation

Requests are validated for shape here; domain rules (dining needs a
table, takeaway needs a payment method, ...) are enforced by the
services so that direct callers get the same ValidationError.

Snapshots are full, denormalized copies of an entity. They are what
the API returns and what every broadcast event carries.

Author: Khalil Bannouri
Version: 4.0.0
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime

from app.models import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    ShiftStatus,
    order_is_active,
)


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderItem(BaseModel):
    """Single line of an order, priced at the moment it was ordered."""
    item_id: str = Field(..., min_length=1, max_length=64, examples=["menu_42"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Chicken Kottu"])
    unit_price: float = Field(..., ge=0, examples=[100.0])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    category: Optional[str] = Field(None, max_length=50)

    @property
    def line_total(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    order_type: OrderType = Field(..., examples=["dining"])
    items: List[OrderItem] = Field(default_factory=list)
    customer_name: Optional[str] = Field(None, max_length=100, examples=["Nimal"])
    table_number: Optional[int] = Field(None, ge=1, examples=[7])
    payment_method: Optional[PaymentMethod] = Field(None, examples=["cash"])
    cashier_id: Optional[str] = Field(None, max_length=64)
    cashier_name: Optional[str] = Field(None, max_length=100)


class OrderUpdate(BaseModel):
    """Edit of an unsettled order. Replacing items re-snapshots the total."""
    customer_name: Optional[str] = Field(None, min_length=1, max_length=100)
    items: Optional[List[OrderItem]] = None
    table_number: Optional[int] = Field(None, ge=1)


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., examples=["cooking"])


class PaymentRequest(BaseModel):
    payment_method: str = Field(..., examples=["cash"])


class OrderSnapshot(BaseModel):
    """Full order state as stored."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_code: str
    customer_name: str
    items: List[OrderItem]
    status: OrderStatus
    total: float
    order_type: OrderType
    table_number: Optional[int] = None
    is_paid: bool
    is_settled: bool
    payment_method: Optional[PaymentMethod] = None
    refund_status: bool = False
    cashier_id: Optional[str] = None
    cashier_name: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return order_is_active(self.status, self.order_type, self.is_settled, self.refund_status)

    @property
    def effective_timestamp(self) -> datetime:
        if self.status == OrderStatus.CANCELLED:
            return self.created_at
        return self.completed_at or self.created_at


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderSnapshot]


# =============================================================================
# TABLE SCHEMAS
# =============================================================================

class TableCreate(BaseModel):
    label: str = Field(..., max_length=50, examples=["A3"])
    capacity: int = Field(..., examples=[4])


class TableUpdate(TableCreate):
    pass


class AvailabilityUpdate(BaseModel):
    available: bool


class TableSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    table_number: int
    label: str
    capacity: int
    available: bool


class TableView(TableSnapshot):
    """Table with its derived floor state."""
    occupied: bool = False
    blocked: bool = False


class TableBlockRequest(BaseModel):
    table_label: str = Field("", max_length=50)


class TableBlockSnapshot(BaseModel):
    table_id: int
    table_label: str
    blocked_at: datetime


class CustomerRequest(BaseModel):
    """Bell or bill request from a customer device."""
    table_label: str = Field("", max_length=50)


# =============================================================================
# SHIFT SCHEMAS
# =============================================================================

class CashMovementRequest(BaseModel):
    cashier_id: str = Field(..., min_length=1, max_length=64)
    cashier_username: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., examples=[1000.0])


class ShiftSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cashier_id: str
    cashier_username: str
    cash_in_amount: float
    cash_in_time: datetime
    cash_out_amount: Optional[float] = None
    cash_out_time: Optional[datetime] = None
    status: ShiftStatus
    shift_date: datetime
    difference: Optional[float] = None


class CashBalance(BaseModel):
    """Running cash position, derived from the order ledger on every read."""
    shift_id: int
    cashier_id: str
    cash_in_amount: float
    cash_payments: float
    cash_refunds: float
    balance: float


class ActiveShiftResponse(BaseModel):
    success: bool = True
    active_shift: Optional[ShiftSnapshot] = None


# =============================================================================
# CASHIER SCHEMAS
# =============================================================================

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    success: bool = True
    cashier_id: str
    username: str
    active_shift: Optional[ShiftSnapshot] = None


# =============================================================================
# GENERIC RESPONSES
# =============================================================================

class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    error_code: Optional[str] = None
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    event_bus: str
    timestamp: datetime
