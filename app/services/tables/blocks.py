"""
Table Block Registry

Tracks which tables a customer session is currently viewing the menu for.
Blocks live only in the coordinating process's memory: they are advisory
floor signals, never a hard invariant, and disappear on restart.

Blocks are keyed strictly by table number and are last-writer-wins: a
second session blocking the same table refreshes the timestamp, and any
caller may release. There is no per-session fencing token, so two
customer devices racing on one table can flip the block back and forth.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.core.errors import ValidationError
from app.schemas import TableBlockSnapshot
from app.services.events import BaseEventBus, broadcast
from app.services.events.messages import TableBlockedEvent, TableReleasedEvent

logger = logging.getLogger(__name__)


@dataclass
class TableBlock:
    table_id: int
    table_label: str
    blocked_at: datetime

    def snapshot(self) -> TableBlockSnapshot:
        return TableBlockSnapshot(
            table_id=self.table_id,
            table_label=self.table_label,
            blocked_at=self.blocked_at,
        )


class TableBlockRegistry:
    """In-memory table -> block map with broadcast side effects."""

    def __init__(self, bus: BaseEventBus):
        self.bus = bus
        self._blocks: dict[int, TableBlock] = {}

    async def block(self, table_id: int, table_label: str = "") -> TableBlockSnapshot:
        """
        Register (or refresh) a block and announce it to the `tables` topic.

        Raises:
            ValidationError: table_id is not a positive table number
        """
        table_id = table_key(table_id)
        block = TableBlock(
            table_id=table_id,
            table_label=table_label or "",
            blocked_at=datetime.now(timezone.utc),
        )
        refreshed = table_id in self._blocks
        self._blocks[table_id] = block

        logger.info(
            f"🔒 Table {table_id} ({block.table_label}) "
            f"{'block refreshed' if refreshed else 'blocked'}"
        )
        await broadcast(self.bus, TableBlockedEvent(table_id=table_id, table_label=block.table_label))
        return block.snapshot()

    async def release(self, table_id: int, reason: str = "manual") -> bool:
        """
        Clear a block regardless of who set it.

        Always announces the release so clients that missed the block (or
        still show a stale one) converge. Returns whether a block existed.
        """
        table_id = table_key(table_id)
        block = self._blocks.pop(table_id, None)
        label = block.table_label if block else ""

        logger.info(f"🔓 Table {table_id} released ({reason})")
        await broadcast(self.bus, TableReleasedEvent(table_id=table_id, table_label=label))
        return block is not None

    def is_blocked(self, table_id: int) -> bool:
        return table_key(table_id) in self._blocks

    def get(self, table_id: int) -> Optional[TableBlockSnapshot]:
        block = self._blocks.get(table_key(table_id))
        return block.snapshot() if block else None

    def list_blocks(self) -> list[TableBlockSnapshot]:
        return [b.snapshot() for b in sorted(self._blocks.values(), key=lambda b: b.table_id)]

    def blocked_ids(self) -> set[int]:
        return set(self._blocks)

    def clear(self) -> None:
        self._blocks.clear()


def table_key(table_id) -> int:
    try:
        key = int(table_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid table id: {table_id!r}")
    if key < 1:
        raise ValidationError(f"Invalid table id: {table_id!r}")
    return key
