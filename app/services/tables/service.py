"""
Table Service

Administrative table CRUD plus the floor view cashiers work from. Every
change is announced on the `tables` topic so open dashboards converge.

Occupancy is never stored: it is derived from the order ledger on each
read (an unsettled, non-cancelled order referencing the table).

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError, as_result
from app.models import DiningTable, Order, OrderStatus, utcnow
from app.schemas import (
    TableBlockSnapshot,
    TableCreate,
    TableSnapshot,
    TableUpdate,
    TableView,
)
from app.services.activity import ActivityLogger
from app.services.events import BaseEventBus, broadcast
from app.services.events.messages import (
    BellRequestEvent,
    BillRequestEvent,
    TableAvailabilityChangedEvent,
    TableCreatedEvent,
    TableDeletedEvent,
    TableUpdatedEvent,
)
from app.services.tables.blocks import TableBlockRegistry

logger = logging.getLogger(__name__)


class TableService:
    """Table operations bound to one database session."""

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

    async def _get(self, table_number: int) -> DiningTable:
        table = (
            await self.db.execute(
                select(DiningTable).where(DiningTable.table_number == table_number)
            )
        ).scalar_one_or_none()
        if table is None:
            raise NotFoundError("Table not found")
        return table

    async def _occupied_numbers(self) -> set[int]:
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

    @as_result
    async def list_tables(self) -> list[TableView]:
        """All tables ordered by label, with derived occupied/blocked flags."""
        result = await self.db.execute(select(DiningTable).order_by(DiningTable.label))
        occupied = await self._occupied_numbers()
        blocked = self.blocks.blocked_ids()
        return [
            TableView(
                **TableSnapshot.model_validate(t).model_dump(),
                occupied=t.table_number in occupied,
                blocked=t.table_number in blocked,
            )
            for t in result.scalars().all()
        ]

    @as_result
    async def get_table(self, table_number: int) -> TableView:
        table = await self._get(table_number)
        return TableView(
            **TableSnapshot.model_validate(table).model_dump(),
            occupied=await self.is_occupied(table_number),
            blocked=self.blocks.is_blocked(table_number),
        )

    async def is_occupied(self, table_number: int) -> bool:
        result = await self.db.execute(
            select(Order.id).where(Order.occupying_clause(table_number)).limit(1)
        )
        return result.first() is not None

    def is_blocked(self, table_number: int) -> bool:
        return self.blocks.is_blocked(table_number)

    def list_blocked(self) -> list[TableBlockSnapshot]:
        """Current blocks, for a cashier dashboard that just (re)connected."""
        return self.blocks.list_blocks()

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def _check_label(self, label: str, exclude_id: Optional[int] = None) -> None:
        query = select(DiningTable.id).where(DiningTable.label == label)
        if exclude_id is not None:
            query = query.where(DiningTable.id != exclude_id)
        if (await self.db.execute(query)).first() is not None:
            raise ConflictError("Table label already exists")

    @as_result
    async def create_table(self, request: TableCreate, actor: Optional[str] = None) -> TableSnapshot:
        label, capacity = _validate(request.label, request.capacity)
        await self._check_label(label)

        highest = (await self.db.execute(select(func.max(DiningTable.table_number)))).scalar()
        table_number = (highest or 0) + 1
        table = DiningTable(
            table_number=table_number,
            label=label,
            capacity=capacity,
            available=True,
        )
        self.db.add(table)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise unique_conflict(e, table_number)
        await self.db.refresh(table)

        snapshot = TableSnapshot.model_validate(table)
        logger.info(f"Table {snapshot.table_number} created: {label} (capacity {capacity})")
        await broadcast(self.bus, TableCreatedEvent(table=snapshot))
        await self.activity.log(
            "Table", "Added", actor,
            f"New table created: {label} (Capacity: {capacity})",
        )
        return snapshot

    @as_result
    async def update_table(
        self, table_number: int, request: TableUpdate, actor: Optional[str] = None
    ) -> TableSnapshot:
        label, capacity = _validate(request.label, request.capacity)
        table = await self._get(table_number)
        await self._check_label(label, exclude_id=table.id)

        table.label = label
        table.capacity = capacity
        table.updated_at = utcnow()
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Table label already exists")
        await self.db.refresh(table)

        snapshot = TableSnapshot.model_validate(table)
        await broadcast(self.bus, TableUpdatedEvent(table=snapshot))
        await self.activity.log(
            "Table", "Updated", actor,
            f"Table updated: {label} (Capacity: {capacity})",
        )
        return snapshot

    @as_result
    async def delete_table(self, table_number: int, actor: Optional[str] = None) -> int:
        table = await self._get(table_number)
        label = table.label
        await self.db.delete(table)
        await self.db.commit()

        logger.info(f"Table {table_number} ({label}) deleted")
        await broadcast(self.bus, TableDeletedEvent(table_id=table_number))
        if self.blocks.is_blocked(table_number):
            await self.blocks.release(table_number, reason="deleted")
        await self.activity.log("Table", "Deleted", actor, f"Table deleted: {label}")
        return table_number

    @as_result
    async def set_availability(
        self, table_number: int, available: bool, actor: Optional[str] = None
    ) -> TableSnapshot:
        table = await self._get(table_number)
        table.available = available
        table.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(table)

        snapshot = TableSnapshot.model_validate(table)
        await broadcast(self.bus, TableAvailabilityChangedEvent(table=snapshot))
        await self.activity.log(
            "Table",
            "Made Available" if available else "Made Unavailable",
            actor,
            f"Table {'made available' if available else 'made unavailable'}: {snapshot.label}",
        )
        return snapshot

    # =========================================================================
    # CUSTOMER SIGNALS
    # =========================================================================

    @as_result
    async def block(self, table_id: int, table_label: str = "") -> TableBlockSnapshot:
        return await self.blocks.block(table_id, table_label)

    @as_result
    async def release(self, table_id: int, reason: str = "manual") -> bool:
        return await self.blocks.release(table_id, reason=reason)

    @as_result
    async def bell_request(self, table_id: int, table_label: str = "") -> int:
        """Customer rang for service; returns how many dashboards were notified."""
        logger.info(f"🔔 Bell request from table {table_id} ({table_label})")
        return await broadcast(self.bus, BellRequestEvent(table_id=table_id, table_label=table_label))

    @as_result
    async def bill_request(self, table_id: int, table_label: str = "") -> int:
        logger.info(f"🧾 Bill request from table {table_id} ({table_label})")
        return await broadcast(self.bus, BillRequestEvent(table_id=table_id, table_label=table_label))


def unique_conflict(error: IntegrityError, table_number: int) -> ConflictError:
    """Name the unique column a failed insert collided on."""
    if "table_number" in str(error.orig):
        return ConflictError(
            f"Table number {table_number} was taken by a concurrent request, please retry"
        )
    return ConflictError("Table label already exists")


def _validate(label: str, capacity) -> tuple[str, int]:
    label = (label or "").strip()
    if not label:
        raise ValidationError("Table label is required")
    if capacity is None or capacity < 1:
        raise ValidationError("Valid capacity is required (minimum 1)")
    return label, int(capacity)
