import asyncio

import pytest
from pydantic import ValidationError as SchemaError

from app.core.errors import TransientInfraError
from app.services.events import InMemoryEventBus, Topic, broadcast, parse_event
from app.services.events.messages import (
    BellRequestEvent,
    OrderCreatedEvent,
    OrderDeletedEvent,
    TableBlockedEvent,
    TableDeletedEvent,
)
from app.services.events.websocket import WebSocketConnection


async def test_connect_does_not_subscribe(bus):
    subscriber = bus.connect()

    assert await bus.publish(TableBlockedEvent(table_id=1)) == 0
    assert subscriber.pending() == []


async def test_delivery_is_scoped_to_topic(bus):
    tables_only = bus.connect()
    orders_only = bus.connect()
    bus.subscribe(tables_only, Topic.TABLES)
    bus.subscribe(orders_only, Topic.ORDERS)

    assert await bus.publish(TableBlockedEvent(table_id=2, table_label="A2")) == 1

    assert [e.table_id for e in tables_only.pending()] == [2]
    assert orders_only.pending() == []


async def test_unsubscribe_stops_delivery(bus):
    subscriber = bus.connect()
    bus.subscribe(subscriber, Topic.TABLES)
    bus.unsubscribe(subscriber, Topic.TABLES)

    await bus.publish(TableDeletedEvent(table_id=3))

    assert subscriber.pending() == []
    assert bus.members(Topic.TABLES) == 0


async def test_disconnect_drops_memberships(bus):
    subscriber = bus.connect()
    bus.subscribe(subscriber, Topic.TABLES)
    bus.subscribe(subscriber, Topic.ORDERS)

    bus.disconnect(subscriber)

    assert subscriber.closed
    assert subscriber.topics == set()
    assert bus.members(Topic.TABLES) == bus.members(Topic.ORDERS) == 0
    assert bus.connection_count == 0
    with pytest.raises(TransientInfraError):
        bus.subscribe(subscriber, Topic.TABLES)


async def test_full_queue_drops_for_that_connection_only():
    bus = InMemoryEventBus(queue_size=2)
    await bus.start()
    slow = bus.connect()
    fast = bus.connect()
    bus.subscribe(slow, Topic.TABLES)
    bus.subscribe(fast, Topic.TABLES)

    for table_id in (1, 2):
        await bus.publish(BellRequestEvent(table_id=table_id))
    fast.pending()

    assert await bus.publish(BellRequestEvent(table_id=3)) == 1
    assert slow.dropped == 1
    assert [e.table_id for e in slow.pending()] == [1, 2]
    assert [e.table_id for e in fast.pending()] == [3]
    await bus.shutdown()


async def test_next_event_times_out(bus):
    subscriber = bus.connect()
    assert await subscriber.next_event(timeout=0.01) is None


async def test_publish_requires_running_bus():
    bus = InMemoryEventBus()

    with pytest.raises(TransientInfraError):
        await bus.publish(TableBlockedEvent(table_id=1))
    with pytest.raises(TransientInfraError):
        bus.connect()
    assert not await bus.health_check()


async def test_broadcast_swallows_bus_failures():
    bus = InMemoryEventBus()
    assert await broadcast(bus, TableBlockedEvent(table_id=1)) == 0


async def test_shutdown_disconnects_everyone():
    bus = InMemoryEventBus()
    await bus.start()
    subscriber = bus.connect()
    bus.subscribe(subscriber, Topic.ORDERS)

    await bus.shutdown()

    assert subscriber.closed
    assert not bus.is_running


def test_wire_message_parses_back_to_the_same_event():
    event = TableBlockedEvent(table_id=7, table_label="A7")

    wire = event.to_wire()

    assert wire["event"] == "table_blocked"
    assert wire["data"]["type"] == "table_blocked"
    assert parse_event(wire) == event
    assert parse_event(wire["data"]) == event


def test_order_event_carries_full_snapshot():
    payload = {
        "type": "order_created",
        "timestamp": 1,
        "order": {
            "id": 1,
            "order_code": "ORD-0000000001",
            "customer_name": "Table 2",
            "items": [{"item_id": "m1", "name": "Kottu", "unit_price": 950, "quantity": 1}],
            "status": "new",
            "total": 950,
            "order_type": "dining",
            "table_number": 2,
            "is_paid": False,
            "is_settled": False,
            "created_at": "2026-01-01T10:00:00Z",
        },
    }

    event = parse_event(payload)

    assert isinstance(event, OrderCreatedEvent)
    assert event.order.table_number == 2
    assert event.order.is_active


def test_unknown_event_type_is_rejected():
    with pytest.raises(SchemaError):
        parse_event({"type": "table_exploded", "table_id": 1})


def test_event_missing_required_fields_is_rejected():
    with pytest.raises(SchemaError):
        parse_event({"type": "table_blocked"})


class _BrokenSocket:
    async def send_json(self, message):
        raise RuntimeError("socket closed")


async def test_failed_writer_leaves_the_bus(bus, blocks):
    connection = WebSocketConnection(_BrokenSocket(), bus, blocks)
    connection.subscriber = bus.connect()
    bus.subscribe(connection.subscriber, Topic.TABLES)
    writer = connection.start_writer()

    await bus.publish(TableDeletedEvent(table_id=4))
    with pytest.raises(RuntimeError):
        await writer
    await asyncio.sleep(0)

    assert connection.subscriber.closed
    assert bus.members(Topic.TABLES) == 0
    assert bus.connection_count == 0
    assert await bus.publish(TableDeletedEvent(table_id=5)) == 0


async def test_order_deleted_event_round_trips():
    event = OrderDeletedEvent(order_id=7, order_code="ORD-0000000007")

    wire = event.to_wire()

    assert wire["event"] == "order_update"
    assert parse_event(wire) == event
