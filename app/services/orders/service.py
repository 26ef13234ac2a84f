"""
Order Service

Persists order lifecycle changes. Every mutation follows the same steps:

    1. resolve the order by storage id or order code
    2. check the transition against the state machine
    3. apply it with a single guarded UPDATE (compare-and-set on the
       fields the rule depended on) and check the matched row count
    4. broadcast the fresh snapshot, then write the activity log

A duplicate request that loses the race in step 3 fails with
ConflictError instead of applying twice. Steps 4 and the log are best
effort and never undo step 3.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import time
from typing import Optional, Union

from sqlalchemy import and_, not_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import ConflictError, NotFoundError, ValidationError, as_result
from app.models import Order, OrderStatus, OrderType, utcnow
from app.schemas import OrderCreate, OrderSnapshot, OrderUpdate
from app.services.activity import ActivityLogger
from app.services.events import BaseEventBus, broadcast
from app.services.events.messages import (
    OrderCreatedEvent,
    OrderDeletedEvent,
    OrderStatusChangedEvent,
    OrderUpdatedEvent,
)
from app.services.orders import state_machine as sm
from app.services.tables.blocks import TableBlockRegistry

logger = logging.getLogger(__name__)
settings = get_settings()

OrderRef = Union[int, str]

_CODE_ATTEMPTS = 5


def generate_order_code() -> str:
    """Time-derived code, e.g. ORD-3072811453 (microseconds, last 10 digits)."""
    return f"ORD-{time.time_ns() // 1_000 % 10_000_000_000:010d}"


class OrderService:
    """Order operations bound to one database session."""

    def __init__(
        self,
        db: AsyncSession,
        bus: BaseEventBus,
        blocks: TableBlockRegistry,
        activity: ActivityLogger,
    ):
        self.db = db
        self.bus = bus
        self.blocks = blocks
        self.activity = activity

    # =========================================================================
    # READS
    # =========================================================================

    async def _resolve(self, ref: OrderRef, fresh: bool = False) -> Order:
        """Find an order by storage id (digits) or order code."""
        ref_text = str(ref).strip()
        if ref_text.isdigit():
            query = select(Order).where(Order.id == int(ref_text))
        elif ref_text:
            query = select(Order).where(Order.order_code == ref_text)
        else:
            raise NotFoundError("Order not found")

        if fresh:
            query = query.execution_options(populate_existing=True)
        order = (await self.db.execute(query)).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {ref_text} not found")
        return order

    @as_result
    async def get_by_id(self, ref: OrderRef) -> OrderSnapshot:
        return OrderSnapshot.model_validate(await self._resolve(ref))

    @as_result
    async def list_orders(
        self,
        status: Optional[str] = None,
        is_paid: Optional[bool] = None,
        is_settled: Optional[bool] = None,
        order_type: Optional[str] = None,
        table_number: Optional[int] = None,
        active_only: bool = False,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> list[OrderSnapshot]:
        """List orders newest first, optionally filtered."""
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())

        if status:
            query = query.where(Order.status == sm.parse_status(status))
        if is_paid is not None:
            query = query.where(Order.is_paid.is_(is_paid))
        if is_settled is not None:
            query = query.where(Order.is_settled.is_(is_settled))
        if order_type:
            try:
                query = query.where(Order.order_type == OrderType(order_type))
            except ValueError:
                raise ValidationError('Order type must be either "takeaway" or "dining"')
        if table_number is not None:
            query = query.where(Order.table_number == table_number)
        if active_only:
            query = query.where(Order.active_clause())
        if skip:
            query = query.offset(skip)
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return [OrderSnapshot.model_validate(o) for o in result.scalars().all()]

    async def list_active(self):
        """Cashier/kitchen queue: unsettled, minus cancelled dining and refunded orders."""
        return await self.list_orders(active_only=True)

    @as_result
    async def list_history(self, limit: Optional[int] = None, skip: int = 0) -> list[OrderSnapshot]:
        """Orders that left the active queue, latest effective timestamp first."""
        query = (
            select(Order)
            .where(not_(Order.active_clause()))
            .order_by(Order.effective_timestamp_clause().desc(), Order.id.desc())
        )
        if skip:
            query = query.offset(skip)
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return [OrderSnapshot.model_validate(o) for o in result.scalars().all()]

    # =========================================================================
    # CREATION
    # =========================================================================

    @as_result
    async def create(self, request: OrderCreate, actor: Optional[str] = None) -> OrderSnapshot:
        """
        Create a dining or takeaway order.

        Dining orders start unpaid with no payment method. Takeaway orders
        are paid at placement. Neither is settled until a cashier acts.
        A dining order converts the table's block into occupancy.
        """
        sm.validate_new_order(request)

        is_takeaway = request.order_type == OrderType.TAKEAWAY
        total = sm.compute_total(request.items)
        items = [item.model_dump(mode="json") for item in request.items]

        order = None
        for attempt in range(_CODE_ATTEMPTS):
            code = generate_order_code()
            order = Order(
                order_code=code,
                customer_name=(request.customer_name or "").strip() or _default_name(request, code),
                items=items,
                total=total,
                status=OrderStatus.NEW,
                order_type=request.order_type,
                table_number=None if is_takeaway else request.table_number,
                is_paid=is_takeaway,
                is_settled=False,
                payment_method=request.payment_method if is_takeaway else None,
                cashier_id=request.cashier_id,
                cashier_name=request.cashier_name or actor,
            )
            self.db.add(order)
            try:
                await self.db.commit()
                break
            except IntegrityError:
                await self.db.rollback()
                logger.warning(f"Order code collision on {code} (attempt {attempt + 1})")
                order = None
        if order is None:
            raise ConflictError("Could not allocate a unique order code, please retry")

        await self.db.refresh(order)
        snapshot = OrderSnapshot.model_validate(order)
        logger.info(f"Order {snapshot.order_code} created ({snapshot.order_type.value}, total {snapshot.total})")

        if snapshot.table_number is not None and self.blocks.is_blocked(snapshot.table_number):
            await self.blocks.release(snapshot.table_number, reason=f"order {snapshot.order_code} placed")

        await broadcast(self.bus, OrderCreatedEvent(order=snapshot))
        await self.activity.log(
            "Order",
            "Created",
            actor or request.cashier_name or "Customer",
            f"New {snapshot.order_type.value} order created: {snapshot.customer_name} "
            f"(Total: {settings.currency_label} {snapshot.total:.2f})",
        )
        return snapshot

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def _apply(self, order: Order, guard, values: dict) -> Order:
        """Guarded UPDATE of one order; ConflictError when the guard no longer matches."""
        values.setdefault("updated_at", utcnow())
        result = await self.db.execute(
            update(Order)
            .where(and_(Order.id == order.id, guard))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        matched = result.rowcount
        await self.db.commit()

        if matched == 0:
            raise ConflictError(
                f"Order {order.order_code} was changed by another request; refresh and try again"
            )
        return await self._resolve(order.id, fresh=True)

    @as_result
    async def update_status(self, ref: OrderRef, status: str, actor: Optional[str] = None) -> OrderSnapshot:
        target = sm.parse_status(status)
        order = await self._resolve(ref)
        sm.check_status_transition(order, target)

        values = {"status": target}
        if target == OrderStatus.COMPLETED:
            values["completed_at"] = utcnow()

        previous = order.status
        order = await self._apply(
            order,
            and_(Order.status == previous, Order.is_settled.is_(order.is_settled)),
            values,
        )
        snapshot = OrderSnapshot.model_validate(order)
        logger.info(f"Order {snapshot.order_code}: {previous.value} -> {target.value}")

        await broadcast(self.bus, OrderStatusChangedEvent(order=snapshot))
        await self.activity.log(
            "Order", "Status Updated", actor,
            f"Order {snapshot.order_code} status changed to: {target.value}",
        )
        return snapshot

    @as_result
    async def mark_paid(self, ref: OrderRef, payment_method: str, actor: Optional[str] = None) -> OrderSnapshot:
        """Record payment; for this flow payment completion is settlement."""
        method = sm.parse_payment_method(payment_method)
        order = await self._resolve(ref)
        sm.check_mark_paid(order)

        order = await self._apply(
            order,
            and_(Order.is_paid.is_(False), Order.status != OrderStatus.CANCELLED),
            {"is_paid": True, "is_settled": True, "payment_method": method},
        )
        snapshot = OrderSnapshot.model_validate(order)
        logger.info(f"Order {snapshot.order_code} paid by {method.value}")

        await broadcast(self.bus, OrderUpdatedEvent(order=snapshot))
        await self.activity.log(
            "Order", "Payment Completed", actor,
            f"Order {snapshot.order_code} marked as paid ({method.value})",
        )
        return snapshot

    @as_result
    async def settle(self, ref: OrderRef, actor: Optional[str] = None) -> OrderSnapshot:
        """Clear an already-paid order from the active queue."""
        order = await self._resolve(ref)
        sm.check_settle(order)

        order = await self._apply(
            order,
            and_(Order.is_paid.is_(True), Order.is_settled.is_(False)),
            {"is_settled": True},
        )
        snapshot = OrderSnapshot.model_validate(order)
        logger.info(f"Order {snapshot.order_code} settled")

        await broadcast(self.bus, OrderUpdatedEvent(order=snapshot))
        await self.activity.log(
            "Order", "Order Settled", actor,
            f"Order {snapshot.order_code} settled by cashier",
        )
        return snapshot

    @as_result
    async def mark_refunded(self, ref: OrderRef, actor: Optional[str] = None) -> OrderSnapshot:
        """Refund a cancelled, pre-paid order and retire it to history."""
        order = await self._resolve(ref)
        sm.check_refund(order)

        order = await self._apply(
            order,
            and_(
                Order.status == OrderStatus.CANCELLED,
                Order.is_paid.is_(True),
                Order.refund_status.is_(False),
                Order.is_settled.is_(False),
            ),
            {"refund_status": True, "is_settled": True},
        )
        snapshot = OrderSnapshot.model_validate(order)
        logger.info(f"Order {snapshot.order_code} refunded")

        await broadcast(self.bus, OrderUpdatedEvent(order=snapshot))
        await self.activity.log(
            "Order", "Refunded", actor,
            f"Order {snapshot.order_code} marked as refunded",
        )
        return snapshot

    @as_result
    async def update_order(self, ref: OrderRef, changes: OrderUpdate, actor: Optional[str] = None) -> OrderSnapshot:
        """Edit name, items or table of an open order."""
        order = await self._resolve(ref)
        sm.check_editable(order)

        values = {}
        if changes.customer_name is not None:
            values["customer_name"] = sm.clean_customer_name(changes.customer_name)
        if changes.items is not None:
            if not changes.items:
                raise ValidationError("Order must contain at least one item")
            values["items"] = [item.model_dump(mode="json") for item in changes.items]
            values["total"] = sm.compute_total(changes.items)
        if changes.table_number is not None:
            if order.order_type != OrderType.DINING:
                raise ValidationError("Takeaway orders cannot be assigned to a table")
            values["table_number"] = changes.table_number
        if not values:
            raise ValidationError("No changes supplied")

        order = await self._apply(
            order,
            and_(Order.is_settled.is_(False), Order.status == order.status),
            values,
        )
        snapshot = OrderSnapshot.model_validate(order)

        await broadcast(self.bus, OrderUpdatedEvent(order=snapshot))
        await self.activity.log("Order", "Updated", actor, f"Order {snapshot.order_code} updated")
        return snapshot

    @as_result
    async def delete_order(self, ref: OrderRef, actor: Optional[str] = None) -> str:
        """Administrative delete; the only path that removes an order row."""
        order = await self._resolve(ref)
        order_id, code = order.id, order.order_code
        await self.db.delete(order)
        await self.db.commit()

        logger.info(f"Order {code} deleted")
        await broadcast(self.bus, OrderDeletedEvent(order_id=order_id, order_code=code))
        await self.activity.log("Order", "Deleted", actor, f"Order {code} deleted")
        return code

    # =========================================================================
    # OCCUPANCY
    # =========================================================================

    async def is_occupied(self, table_number: int) -> bool:
        """True while an unsettled, non-cancelled order references the table."""
        result = await self.db.execute(
            select(Order.id).where(Order.occupying_clause(table_number)).limit(1)
        )
        return result.first() is not None

    async def occupied_tables(self) -> set[int]:
        result = await self.db.execute(
            select(Order.table_number)
            .where(
                Order.table_number.is_not(None),
                Order.is_settled.is_(False),
                Order.status != OrderStatus.CANCELLED,
            )
            .distinct()
        )
        return {row[0] for row in result.all()}


def _default_name(request: OrderCreate, code: str) -> str:
    if request.order_type == OrderType.TAKEAWAY:
        return f"Takeaway #{code[-4:]}"
    return f"Table {request.table_number}"
