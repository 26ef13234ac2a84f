"""
Order Cache

Client-side view of orders built from broadcast snapshots. Every event
carries the full order, so applying one is a plain overwrite keyed by
order id: events that arrive late, twice or out of order can never
produce a merged state the server never had. An administrative delete
drops the entry.
"""

import logging
from typing import Iterable, Optional, Union

from app.schemas import OrderSnapshot
from app.services.events.messages import ORDER_EVENTS, BaseEvent, OrderDeletedEvent

logger = logging.getLogger(__name__)


class OrderCache:

    def __init__(self):
        self._orders: dict[int, OrderSnapshot] = {}

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: int) -> bool:
        return order_id in self._orders

    def apply(self, item: Union[BaseEvent, OrderSnapshot]) -> Optional[OrderSnapshot]:
        """Overwrite the cached order with the snapshot; non-order events are ignored."""
        if isinstance(item, OrderDeletedEvent):
            self._orders.pop(item.order_id, None)
            return None
        if isinstance(item, ORDER_EVENTS):
            snapshot = item.order
        elif isinstance(item, OrderSnapshot):
            snapshot = item
        else:
            return None
        self._orders[snapshot.id] = snapshot
        return snapshot

    def replace_all(self, snapshots: Iterable[OrderSnapshot]) -> None:
        """Adopt a freshly fetched server state (after a reconnect)."""
        self._orders = {s.id: s for s in snapshots}
        logger.debug(f"Order cache reloaded with {len(self._orders)} orders")

    def get(self, order_id: int) -> Optional[OrderSnapshot]:
        return self._orders.get(order_id)

    def by_code(self, order_code: str) -> Optional[OrderSnapshot]:
        return next((o for o in self._orders.values() if o.order_code == order_code), None)

    def active(self) -> list[OrderSnapshot]:
        """Cashier/kitchen queue, oldest first."""
        return sorted(
            (o for o in self._orders.values() if o.is_active),
            key=lambda o: (o.created_at, o.id),
        )

    def history(self) -> list[OrderSnapshot]:
        """Orders that left the queue, latest effective timestamp first."""
        return sorted(
            (o for o in self._orders.values() if not o.is_active),
            key=lambda o: (o.effective_timestamp, o.id),
            reverse=True,
        )

    def for_table(self, table_number: int) -> list[OrderSnapshot]:
        """Orders a customer at `table_number` follows (client-side filtering)."""
        return [o for o in self._orders.values() if o.table_number == table_number]

    def clear(self) -> None:
        self._orders.clear()
