"""
SQLAlchemy Database Models

Durable records for the restaurant floor:
- Orders (dining/takeaway) with independent status, payment and settlement axes
- Tables keyed by a stable numeric table number
- Cashier shifts (at most one active per cashier)
- Cashier accounts and the activity log

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    and_,
    case,
    func,
    not_,
    text,
)
from app.database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    """Store enum values (not member names) so raw SQL guards can match them."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    NEW = "new"
    COOKING = "cooking"
    READY = "ready"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETE = "payment_complete"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    """Order type - eat in or take away."""
    DINING = "dining"
    TAKEAWAY = "takeaway"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"


class ShiftStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def order_is_active(
    status: OrderStatus,
    order_type: OrderType,
    is_settled: bool,
    refund_status: bool,
) -> bool:
    """
    Whether an order still belongs in the cashier/kitchen queue.

    Settled and refunded orders are history. Cancelled dining orders leave
    immediately; cancelled takeaway orders wait for their refund.
    """
    if is_settled or refund_status:
        return False
    if status == OrderStatus.CANCELLED and order_type == OrderType.DINING:
        return False
    return True


class Order(Base):
    """
    Main Order table.

    Items and total are a snapshot taken at creation. Status, payment
    and settlement evolve independently; once settled the row is history.
    """
    __tablename__ = "orders"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Human-readable code, e.g. ORD-48213307
    order_code = Column(String(32), nullable=False, unique=True, index=True)

    # =========================================================================
    # ORDER TYPE
    # =========================================================================
    order_type = Column(_enum(OrderType), nullable=False, index=True)
    table_number = Column(Integer, nullable=True, index=True)

    # =========================================================================
    # CONTENTS
    # =========================================================================
    customer_name = Column(String(100), nullable=False)
    items = Column(JSON, nullable=False)
    total = Column(Float, nullable=False)

    # =========================================================================
    # STATUS / PAYMENT / SETTLEMENT
    # =========================================================================
    status = Column(_enum(OrderStatus), default=OrderStatus.NEW, nullable=False, index=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    is_settled = Column(Boolean, default=False, nullable=False, index=True)
    payment_method = Column(_enum(PaymentMethod), nullable=True)
    refund_status = Column(Boolean, default=False, nullable=False)

    # =========================================================================
    # CASHIER ATTRIBUTION (null = placed by a customer session)
    # =========================================================================
    cashier_id = Column(String(64), nullable=True)
    cashier_name = Column(String(100), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def effective_timestamp(self) -> datetime:
        """Authoritative time for history views: cancelled orders use creation time."""
        if self.status == OrderStatus.CANCELLED:
            return self.created_at
        return self.completed_at or self.created_at

    @classmethod
    def effective_timestamp_clause(cls):
        """SQL twin of `effective_timestamp`, for ordering history."""
        return case(
            (cls.status == OrderStatus.CANCELLED, cls.created_at),
            else_=func.coalesce(cls.completed_at, cls.created_at),
        )

    @property
    def is_active(self) -> bool:
        return order_is_active(self.status, self.order_type, self.is_settled, self.refund_status)

    @classmethod
    def active_clause(cls):
        """SQL twin of `is_active`."""
        return and_(
            cls.is_settled.is_(False),
            cls.refund_status.is_(False),
            not_(and_(cls.status == OrderStatus.CANCELLED, cls.order_type == OrderType.DINING)),
        )

    @classmethod
    def occupying_clause(cls, table_number: int):
        """Orders that keep `table_number` occupied."""
        return and_(
            cls.table_number == table_number,
            cls.is_settled.is_(False),
            cls.status != OrderStatus.CANCELLED,
        )

    def __repr__(self):
        return f"<Order {self.order_code} - {self.order_type.value} - {self.status.value}>"


class DiningTable(Base):
    """
    Physical table. `table_number` is the join key for orders and blocks;
    the label is display only.
    """
    __tablename__ = "tables"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    table_number = Column(Integer, nullable=False, unique=True, index=True)
    label = Column(String(50), nullable=False, unique=True)
    capacity = Column(Integer, nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Table {self.table_number} ({self.label})>"


class Shift(Base):
    """Cashier shift between cash in and cash out."""
    __tablename__ = "cashier_shifts"
    __table_args__ = (
        # At most one active shift per cashier, enforced by the database.
        Index(
            "uq_cashier_shifts_active_cashier",
            "cashier_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    cashier_id = Column(String(64), nullable=False, index=True)
    cashier_username = Column(String(100), nullable=False)
    cash_in_amount = Column(Float, nullable=False)
    cash_in_time = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    cash_out_amount = Column(Float, nullable=True)
    cash_out_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(_enum(ShiftStatus), default=ShiftStatus.ACTIVE, nullable=False)
    shift_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def difference(self) -> Optional[float]:
        if self.cash_out_amount is None:
            return None
        return round(self.cash_out_amount - self.cash_in_amount, 2)

    def __repr__(self):
        return f"<Shift #{self.id} - {self.cashier_username} - {self.status.value}>"


class Cashier(Base):
    __tablename__ = "cashiers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    password_hash = Column(String(128), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ActivityLog(Base):
    """
    Audit trail of floor operations.

    Written fire-and-forget; a failed write never fails the operation
    being logged.
    """
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    category = Column(String(32), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    actor = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    outcome = Column(String(16), nullable=False, default="success")
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
