"""
Customer Table Session

Client-owned lifecycle of one customer's block on a table. The session
blocks the table when the menu opens and releases it on:

    - inactivity: no interaction for `inactivity_timeout` seconds
    - hidden: the menu stays hidden for `hidden_timeout` seconds
    - close: the menu is torn down (best effort)

Once an order has been placed for the table in this session, none of
these fire: the order is the stronger occupancy signal and the table must
not be freed under a seated customer.

The timers are not authoritative. A cashier release always wins and is
immediate.

Every block and release also goes to the local block mirror.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

from app.client.mirror import LocalBlockMirror, MirroredBlocker
from app.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class TableBlocker(Protocol):
    """What the session needs from the coordinator; TableBlockRegistry fits."""

    async def block(self, table_id: int, table_label: str = "") -> Any: ...

    async def release(self, table_id: int, reason: str = "manual") -> Any: ...


class CustomerTableSession:

    def __init__(
        self,
        blocker: TableBlocker,
        table_id: int,
        table_label: str = "",
        inactivity_timeout: Optional[float] = None,
        hidden_timeout: Optional[float] = None,
        mirror: Optional[LocalBlockMirror] = None,
    ):
        self.blocker = MirroredBlocker(blocker, mirror)
        self.table_id = table_id
        self.table_label = table_label
        self.inactivity_timeout = (
            inactivity_timeout if inactivity_timeout is not None
            else settings.table_inactivity_timeout_seconds
        )
        self.hidden_timeout = (
            hidden_timeout if hidden_timeout is not None
            else settings.table_hidden_timeout_seconds
        )
        self.order_placed = False
        self.released = False
        self.release_reason: Optional[str] = None
        self._inactivity: Optional[asyncio.Task] = None
        self._hidden: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self.released

    async def open(self) -> None:
        """Block the table and start watching for inactivity."""
        await self.blocker.block(self.table_id, self.table_label)
        self.released = False
        self.release_reason = None
        self._restart_inactivity()
        logger.info(f"Customer session opened on table {self.table_id}")

    def activity(self) -> None:
        """A pointer, click, scroll, key or touch event."""
        if self.active and not self.order_placed:
            self._restart_inactivity()

    def visibility_changed(self, hidden: bool) -> None:
        if hidden:
            if self.active and not self.order_placed and self._hidden is None:
                self._hidden = self._schedule(self.hidden_timeout, "hidden timeout")
        else:
            self._hidden = _cancel(self._hidden)

    def mark_order_placed(self) -> None:
        """Suppress every automatic release for the rest of the session."""
        self.order_placed = True
        self._inactivity = _cancel(self._inactivity)
        self._hidden = _cancel(self._hidden)

    async def close(self) -> bool:
        """
        Menu teardown. Releases the block unless an order was placed.

        Returns whether a release was sent. Release failures are logged,
        since the device may already be going away.
        """
        self._inactivity = _cancel(self._inactivity)
        self._hidden = _cancel(self._hidden)
        if self.released or self.order_placed:
            return False
        return await self._release("closed")

    def _restart_inactivity(self) -> None:
        _cancel(self._inactivity)
        self._inactivity = self._schedule(self.inactivity_timeout, "inactivity timeout")

    def _schedule(self, delay: float, reason: str) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(self._expire(delay, reason))

    async def _expire(self, delay: float, reason: str) -> None:
        await asyncio.sleep(delay)
        if self.order_placed or self.released:
            return
        # Detach this timer before releasing so close() does not cancel it
        if reason == "hidden timeout":
            self._hidden = None
        else:
            self._inactivity = None
        await self._release(reason)
        self._inactivity = _cancel(self._inactivity)
        self._hidden = _cancel(self._hidden)

    async def _release(self, reason: str) -> bool:
        self.released = True
        self.release_reason = reason
        try:
            await self.blocker.release(self.table_id, reason=reason)
        except Exception as e:
            logger.warning(f"Release of table {self.table_id} ({reason}) did not arrive: {e}")
            return False
        logger.info(f"Table {self.table_id} released by customer session ({reason})")
        return True


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is not None and not task.done():
        task.cancel()
    return None
