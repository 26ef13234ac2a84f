"""
Broadcast Event Schemas

Every observer-relevant state change produces exactly one of the events
below. Each event is a variant of a tagged union keyed by `type`, with a
fixed schema per variant, and carries a full snapshot of the affected
entity so a client that missed earlier events still converges from the
latest one it receives.

Wire format (one JSON object per message):

    {
        "event": "order_update",
        "data": {"type": "order_status_changed", "order": {...}, "timestamp": 1729330000000}
    }

`event` is the channel name clients register handlers for; `data.type`
selects the variant.

Author: Khalil Bannouri
Version: 4.0.0
"""

import time
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.schemas import OrderSnapshot, TableSnapshot


def now_ms() -> int:
    return int(time.time() * 1000)


class Topic(str, Enum):
    """Subscription rooms."""
    TABLES = "tables"
    MENU_ITEMS = "menu-items"
    ORDERS = "orders"


class BaseEvent(BaseModel):
    channel: ClassVar[str]
    topic: ClassVar[Topic]

    timestamp: int = Field(default_factory=now_ms)

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.channel, "data": self.model_dump(mode="json")}


# =============================================================================
# TABLE EVENTS
# =============================================================================

class TableCreatedEvent(BaseEvent):
    channel: ClassVar[str] = "table_update"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_created"] = "table_created"
    table: TableSnapshot


class TableUpdatedEvent(BaseEvent):
    channel: ClassVar[str] = "table_update"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_updated"] = "table_updated"
    table: TableSnapshot


class TableAvailabilityChangedEvent(BaseEvent):
    channel: ClassVar[str] = "table_update"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_availability_changed"] = "table_availability_changed"
    table: TableSnapshot


class TableDeletedEvent(BaseEvent):
    channel: ClassVar[str] = "table_update"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_deleted"] = "table_deleted"
    table_id: int


class TableBlockedEvent(BaseEvent):
    channel: ClassVar[str] = "table_blocked"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_blocked"] = "table_blocked"
    table_id: int
    table_label: str = ""


class TableReleasedEvent(BaseEvent):
    channel: ClassVar[str] = "table_released"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["table_released"] = "table_released"
    table_id: int
    table_label: str = ""


# =============================================================================
# CUSTOMER REQUESTS
# =============================================================================

class BellRequestEvent(BaseEvent):
    channel: ClassVar[str] = "bell_request"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["bell_request"] = "bell_request"
    table_id: int
    table_label: str = ""


class BillRequestEvent(BaseEvent):
    channel: ClassVar[str] = "bill_request"
    topic: ClassVar[Topic] = Topic.TABLES
    type: Literal["bill_request"] = "bill_request"
    table_id: int
    table_label: str = ""


# =============================================================================
# ORDER EVENTS
# =============================================================================

class OrderCreatedEvent(BaseEvent):
    channel: ClassVar[str] = "order_update"
    topic: ClassVar[Topic] = Topic.ORDERS
    type: Literal["order_created"] = "order_created"
    order: OrderSnapshot


class OrderStatusChangedEvent(BaseEvent):
    channel: ClassVar[str] = "order_update"
    topic: ClassVar[Topic] = Topic.ORDERS
    type: Literal["order_status_changed"] = "order_status_changed"
    order: OrderSnapshot


class OrderUpdatedEvent(BaseEvent):
    channel: ClassVar[str] = "order_update"
    topic: ClassVar[Topic] = Topic.ORDERS
    type: Literal["order_updated"] = "order_updated"
    order: OrderSnapshot


class OrderDeletedEvent(BaseEvent):
    """Administrative delete; the row is gone, so only its identity is sent."""
    channel: ClassVar[str] = "order_update"
    topic: ClassVar[Topic] = Topic.ORDERS
    type: Literal["order_deleted"] = "order_deleted"
    order_id: int
    order_code: str


BroadcastEvent = Annotated[
    Union[
        TableCreatedEvent,
        TableUpdatedEvent,
        TableAvailabilityChangedEvent,
        TableDeletedEvent,
        TableBlockedEvent,
        TableReleasedEvent,
        BellRequestEvent,
        BillRequestEvent,
        OrderCreatedEvent,
        OrderStatusChangedEvent,
        OrderUpdatedEvent,
        OrderDeletedEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[BroadcastEvent] = TypeAdapter(BroadcastEvent)

# Order events that carry a full snapshot
ORDER_EVENTS = (OrderCreatedEvent, OrderStatusChangedEvent, OrderUpdatedEvent)


def parse_event(payload: dict[str, Any]) -> BroadcastEvent:
    """
    Parse a wire message (or its bare `data` part) into its event variant.

    Raises:
        pydantic.ValidationError: unknown `type` or a payload that does not
            match the variant's schema
    """
    data = payload.get("data", payload) if "event" in payload else payload
    return _event_adapter.validate_python(data)
