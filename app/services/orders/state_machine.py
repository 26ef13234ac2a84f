"""
Order State Machine

Pure transition rules, free of storage concerns. The order service asks
these functions whether a change is legal, then applies it with a guarded
UPDATE so that a concurrent duplicate request fails instead of applying
twice.

Status pipeline (payment_pending/payment_complete are optional steps):

    new -> cooking -> ready -> payment_pending -> payment_complete -> completed
      \\________________________________________________________/
                        any non-terminal -> cancelled

Status moves forward only (skipping steps is allowed); completed and
cancelled are terminal. Payment and settlement are separate axes:

    - settled implies paid, or a refunded cancelled order
    - mark_paid settles in the same step
    - settle clears an order that was already paid (takeaway)

Author: Khalil Bannouri
Version: 4.0.0
"""

from typing import Iterable, Optional, Protocol

from app.core.errors import ConflictError, ValidationError
from app.models import (
    TERMINAL_STATUSES,
    OrderStatus,
    OrderType,
    PaymentMethod,
)
from app.schemas import OrderCreate, OrderItem

PIPELINE: tuple[OrderStatus, ...] = (
    OrderStatus.NEW,
    OrderStatus.COOKING,
    OrderStatus.READY,
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.PAYMENT_COMPLETE,
    OrderStatus.COMPLETED,
)

_RANK = {status: i for i, status in enumerate(PIPELINE)}

VALID_STATUSES = tuple(s.value for s in OrderStatus)


class OrderState(Protocol):
    """Fields the rules read; satisfied by the ORM model and by snapshots."""
    order_code: str
    status: OrderStatus
    order_type: OrderType
    is_paid: bool
    is_settled: bool
    refund_status: bool
    payment_method: Optional[PaymentMethod]


def compute_total(items: Iterable[OrderItem]) -> float:
    return round(sum(item.line_total for item in items), 2)


def validate_new_order(request: OrderCreate) -> None:
    """
    Reject malformed order requests before anything is written.

    Raises:
        ValidationError: no items, dining without table, takeaway without
            payment method, or a takeaway order carrying a table
    """
    if not request.items:
        raise ValidationError("Order must contain at least one item")

    if request.order_type == OrderType.DINING:
        if request.table_number is None:
            raise ValidationError("Table number is required for dining orders")
    else:
        if request.payment_method is None:
            raise ValidationError("Payment method is required for takeaway orders")
        if request.table_number is not None:
            raise ValidationError("Takeaway orders cannot be assigned to a table")

    if compute_total(request.items) <= 0:
        raise ValidationError("Valid total amount is required")


def clean_customer_name(value: str) -> str:
    """Trimmed name for an edit; unlike creation there is no default to fall back on."""
    name = (value or "").strip()
    if not name:
        raise ValidationError("Customer name cannot be blank")
    return name


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Status must be one of: {', '.join(VALID_STATUSES)}")


def parse_payment_method(value: str) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError('Payment method must be either "card" or "cash"')


def check_status_transition(order: OrderState, target: OrderStatus) -> None:
    """
    Raises:
        ConflictError: the order is terminal, settled (except finishing it as
            completed), already in `target`, or `target` would move backwards
    """
    current = order.status

    if current in TERMINAL_STATUSES:
        raise ConflictError(f"Order {order.order_code} is already {current.value}")

    if order.is_settled and target != OrderStatus.COMPLETED:
        raise ConflictError(f"Order {order.order_code} is settled and can only be completed")

    if target == current:
        raise ConflictError(f"Order {order.order_code} is already {current.value}")

    if target == OrderStatus.CANCELLED:
        return

    if _RANK[target] < _RANK[current]:
        raise ConflictError(
            f"Order {order.order_code} cannot move from {current.value} back to {target.value}"
        )


def check_mark_paid(order: OrderState) -> None:
    if order.is_paid:
        raise ConflictError(f"Order {order.order_code} is already paid")
    if order.status == OrderStatus.CANCELLED:
        raise ConflictError(f"Order {order.order_code} is cancelled and cannot be paid")


def check_settle(order: OrderState) -> None:
    if order.is_settled:
        raise ConflictError(f"Order {order.order_code} is already settled")
    if not order.is_paid:
        raise ConflictError(f"Order {order.order_code} must be paid before it can be settled")


def check_refund(order: OrderState) -> None:
    if order.status != OrderStatus.CANCELLED:
        raise ConflictError("Only cancelled orders can be refunded")
    if order.refund_status:
        raise ConflictError(f"Order {order.order_code} is already refunded")
    if not order.is_paid:
        raise ConflictError(f"Order {order.order_code} was never paid; nothing to refund")
    if order.is_settled:
        raise ConflictError(f"Order {order.order_code} is already settled")


def check_editable(order: OrderState) -> None:
    if order.is_settled:
        raise ConflictError(f"Order {order.order_code} is settled and can no longer be edited")
    if order.status in TERMINAL_STATUSES:
        raise ConflictError(f"Order {order.order_code} is {order.status.value} and can no longer be edited")


def settlement_invariant_holds(order: OrderState) -> bool:
    """Settled orders were paid, either directly or before a refund."""
    return not order.is_settled or order.is_paid
