import asyncio
import json

import pytest

from app.client.cache import OrderCache
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models import Order, OrderStatus, OrderType, PaymentMethod
from app.schemas import OrderCreate, OrderUpdate
from app.services.events.messages import (
    OrderCreatedEvent,
    OrderDeletedEvent,
    OrderStatusChangedEvent,
    OrderUpdatedEvent,
    TableReleasedEvent,
    parse_event,
)
from app.services.orders import OrderService, generate_order_code
from app.services.orders.state_machine import settlement_invariant_holds
from tests.factories import dining, make_items, takeaway


async def _create(orders, request, actor="tester"):
    result = await orders.create(request, actor=actor)
    assert result.success, result.error_message
    return result.data


# =============================================================================
# CREATION
# =============================================================================

async def test_dining_order_starts_new_unpaid_unsettled(orders):
    order = await _create(orders, dining(table_number=7))

    assert order.total == 250
    assert order.status == OrderStatus.NEW
    assert order.order_type == OrderType.DINING
    assert order.table_number == 7
    assert order.is_paid is False
    assert order.is_settled is False
    assert order.payment_method is None
    assert order.customer_name == "Table 7"
    assert order.order_code.startswith("ORD-")


async def test_takeaway_without_payment_method_is_rejected_and_nothing_stored(orders):
    request = OrderCreate(order_type="takeaway", items=make_items((1, 200)))

    result = await orders.create(request)

    assert not result.success
    assert isinstance(result.error, ValidationError)
    assert result.error_code == "validation_error"
    assert (await orders.list_orders()).data == []


async def test_takeaway_is_paid_at_placement_but_not_settled(orders):
    order = await _create(orders, takeaway(payment_method="card", customer_name="Nimal"))

    assert order.is_paid is True
    assert order.is_settled is False
    assert order.payment_method == PaymentMethod.CARD
    assert order.table_number is None
    assert order.customer_name == "Nimal"


async def test_takeaway_default_name_uses_code_suffix(orders):
    order = await _create(orders, takeaway())
    assert order.customer_name == f"Takeaway #{order.order_code[-4:]}"


async def test_cashier_name_falls_back_to_actor(orders):
    order = await _create(orders, dining(cashier_id="c-1"), actor="amaya")
    assert order.cashier_id == "c-1"
    assert order.cashier_name == "amaya"


async def test_order_codes_are_unique():
    codes = {generate_order_code() for _ in range(50)}
    assert len(codes) == 50
    assert all(len(code) == len("ORD-") + 10 for code in codes)


async def test_create_broadcasts_order_created(orders, listener):
    order = await _create(orders, dining())

    events = [e for e in listener.pending() if isinstance(e, OrderCreatedEvent)]
    assert len(events) == 1
    assert events[0].order == order
    assert events[0].to_wire()["event"] == "order_update"


# =============================================================================
# LOOKUP / LISTING
# =============================================================================

async def test_lookup_by_id_and_by_code(orders):
    order = await _create(orders, dining())

    by_id = await orders.get_by_id(order.id)
    by_code = await orders.get_by_id(order.order_code)
    by_digits = await orders.get_by_id(str(order.id))

    assert by_id.data == by_code.data == by_digits.data == order


async def test_unknown_order_is_not_found(orders):
    result = await orders.get_by_id("ORD-0000000000")
    assert isinstance(result.error, NotFoundError)
    with pytest.raises(NotFoundError):
        (await orders.get_by_id(999)).unwrap()


async def test_list_filters(orders):
    first = await _create(orders, dining(table_number=1))
    second = await _create(orders, dining(table_number=2))
    third = await _create(orders, takeaway())

    newest_first = (await orders.list_orders()).data
    assert [o.id for o in newest_first] == [third.id, second.id, first.id]

    assert [o.id for o in (await orders.list_orders(order_type="takeaway")).data] == [third.id]
    assert [o.id for o in (await orders.list_orders(table_number=2)).data] == [second.id]
    assert {o.id for o in (await orders.list_orders(is_paid=False)).data} == {first.id, second.id}
    assert len((await orders.list_orders(limit=2)).data) == 2
    assert [o.id for o in (await orders.list_orders(limit=1, skip=2)).data] == [first.id]


async def test_list_rejects_unknown_filters(orders):
    assert isinstance((await orders.list_orders(status="served")).error, ValidationError)
    assert isinstance((await orders.list_orders(order_type="delivery")).error, ValidationError)


# =============================================================================
# STATUS
# =============================================================================

async def test_status_moves_forward_and_broadcasts(orders, listener):
    order = await _create(orders, dining())
    listener.pending()

    cooking = (await orders.update_status(order.order_code, "cooking")).unwrap()
    assert cooking.status == OrderStatus.COOKING

    events = listener.pending()
    assert len(events) == 1
    assert isinstance(events[0], OrderStatusChangedEvent)
    assert events[0].order.status == OrderStatus.COOKING


async def test_status_cannot_move_backwards(orders):
    order = await _create(orders, dining())
    (await orders.update_status(order.id, "ready")).unwrap()

    result = await orders.update_status(order.id, "cooking")

    assert isinstance(result.error, ConflictError)
    assert (await orders.get_by_id(order.id)).data.status == OrderStatus.READY


async def test_completing_sets_completed_at(orders):
    order = await _create(orders, dining())
    assert order.completed_at is None

    done = (await orders.update_status(order.id, "completed")).unwrap()

    assert done.completed_at is not None
    assert isinstance((await orders.update_status(order.id, "cancelled")).error, ConflictError)


async def test_invalid_status_value(orders):
    order = await _create(orders, dining())
    result = await orders.update_status(order.id, "served")
    assert isinstance(result.error, ValidationError)


# =============================================================================
# PAYMENT / SETTLEMENT / REFUND
# =============================================================================

async def test_mark_paid_settles_and_second_payment_conflicts(orders, listener):
    order = await _create(orders, dining())
    listener.pending()

    paid = (await orders.mark_paid(order.id, "cash")).unwrap()
    assert paid.is_paid and paid.is_settled
    assert paid.payment_method == PaymentMethod.CASH

    again = await orders.mark_paid(order.id, "card")
    assert isinstance(again.error, ConflictError)

    current = (await orders.get_by_id(order.id)).data
    assert current.payment_method == PaymentMethod.CASH
    assert current.updated_at == paid.updated_at
    assert len([e for e in listener.pending() if isinstance(e, OrderUpdatedEvent)]) == 1


async def test_concurrent_payments_apply_once(session_maker, bus, blocks, activity):
    async with session_maker() as db:
        order = (await OrderService(db, bus, blocks, activity).create(dining())).unwrap()

    async def pay():
        async with session_maker() as db:
            return await OrderService(db, bus, blocks, activity).mark_paid(order.id, "cash")

    results = await asyncio.gather(*(pay() for _ in range(5)))

    assert sum(r.success for r in results) == 1
    assert all(isinstance(r.error, ConflictError) for r in results if not r.success)


async def test_cancelled_order_cannot_be_paid(orders):
    order = await _create(orders, dining())
    (await orders.update_status(order.id, "cancelled")).unwrap()

    assert isinstance((await orders.mark_paid(order.id, "cash")).error, ConflictError)


async def test_invalid_payment_method(orders):
    order = await _create(orders, dining())
    assert isinstance((await orders.mark_paid(order.id, "cheque")).error, ValidationError)


async def test_settle_takeaway(orders):
    order = await _create(orders, takeaway())

    settled = (await orders.settle(order.id)).unwrap()

    assert settled.is_settled
    assert isinstance((await orders.settle(order.id)).error, ConflictError)


async def test_unpaid_order_cannot_be_settled(orders):
    order = await _create(orders, dining())
    assert isinstance((await orders.settle(order.id)).error, ConflictError)


async def test_cancelled_takeaway_stays_active_until_refunded(orders):
    order = await _create(orders, takeaway(lines=((1, 200),)))
    (await orders.update_status(order.id, "cancelled")).unwrap()

    active = (await orders.list_active()).data
    assert [o.id for o in active] == [order.id]

    refunded = (await orders.mark_refunded(order.id)).unwrap()
    assert refunded.refund_status and refunded.is_settled
    assert (await orders.list_active()).data == []
    assert isinstance((await orders.mark_refunded(order.id)).error, ConflictError)


async def test_cancelled_dining_order_leaves_active_view(orders):
    order = await _create(orders, dining())
    (await orders.update_status(order.id, "cancelled")).unwrap()

    assert (await orders.list_active()).data == []
    assert isinstance((await orders.mark_refunded(order.id)).error, ConflictError)


async def test_active_view_excludes_settled(orders):
    keep = await _create(orders, dining(table_number=1))
    gone = await _create(orders, dining(table_number=2))
    (await orders.mark_paid(gone.id, "card")).unwrap()

    assert [o.id for o in (await orders.list_active()).data] == [keep.id]


# =============================================================================
# EDIT / DELETE
# =============================================================================

async def test_update_items_recomputes_total(orders):
    order = await _create(orders, dining())

    changed = (await orders.update_order(
        order.id, OrderUpdate(items=make_items((3, 100)), customer_name=" Saman "),
    )).unwrap()

    assert changed.total == 300
    assert changed.customer_name == "Saman"


async def test_update_rejects_empty_and_takeaway_table(orders):
    order = await _create(orders, takeaway())

    assert isinstance((await orders.update_order(order.id, OrderUpdate())).error, ValidationError)
    assert isinstance(
        (await orders.update_order(order.id, OrderUpdate(table_number=3))).error, ValidationError
    )


async def test_settled_order_cannot_be_edited(orders):
    order = await _create(orders, dining())
    (await orders.mark_paid(order.id, "cash")).unwrap()

    result = await orders.update_order(order.id, OrderUpdate(customer_name="Late"))
    assert isinstance(result.error, ConflictError)


async def test_delete_order(orders):
    order = await _create(orders, dining())

    assert (await orders.delete_order(order.id)).data == order.order_code
    assert isinstance((await orders.get_by_id(order.id)).error, NotFoundError)
    assert isinstance((await orders.delete_order(order.id)).error, NotFoundError)


# =============================================================================
# OCCUPANCY
# =============================================================================

async def test_table_occupied_until_settled(orders):
    order = await _create(orders, dining(table_number=4))
    assert await orders.is_occupied(4)
    assert await orders.occupied_tables() == {4}

    (await orders.mark_paid(order.id, "cash")).unwrap()

    assert not await orders.is_occupied(4)
    assert await orders.occupied_tables() == set()


async def test_cancelled_dining_order_frees_table(orders):
    order = await _create(orders, dining(table_number=5))
    (await orders.update_status(order.id, "cancelled")).unwrap()
    assert not await orders.is_occupied(5)


async def test_dining_order_releases_table_block(orders, blocks, listener):
    await blocks.block(3, "A3")
    listener.pending()

    await _create(orders, dining(table_number=3))

    assert not blocks.is_blocked(3)
    released = [e for e in listener.pending() if isinstance(e, TableReleasedEvent)]
    assert [e.table_id for e in released] == [3]


async def test_blank_name_edit_is_rejected(orders):
    order = await _create(orders, dining(customer_name="Nimal"))

    result = await orders.update_order(order.id, OrderUpdate(customer_name="   "))

    assert isinstance(result.error, ValidationError)
    assert (await orders.get_by_id(order.id)).data.customer_name == "Nimal"


async def test_delete_broadcasts_order_deleted(orders, listener):
    order = await _create(orders, dining())
    listener.pending()

    (await orders.delete_order(order.id)).unwrap()

    [event] = listener.pending()
    assert isinstance(event, OrderDeletedEvent)
    assert (event.order_id, event.order_code) == (order.id, order.order_code)


# =============================================================================
# HISTORY
# =============================================================================

async def test_effective_timestamp_follows_completion(orders, db):
    first = await _create(orders, dining(table_number=1))
    second = await _create(orders, dining(table_number=2))
    (await orders.update_status(second.id, "cancelled")).unwrap()
    (await orders.mark_paid(first.id, "cash")).unwrap()
    completed = (await orders.update_status(first.id, "completed")).unwrap()

    assert completed.effective_timestamp == completed.completed_at
    assert completed.effective_timestamp > second.created_at

    row = await db.get(Order, first.id)
    assert row.effective_timestamp == row.completed_at

    history = (await orders.list_history()).unwrap()
    assert [o.id for o in history] == [first.id, second.id]
    assert history[1].effective_timestamp == history[1].created_at


async def test_history_excludes_active_orders(orders):
    open_order = await _create(orders, dining(table_number=3))
    paid = await _create(orders, takeaway())
    (await orders.settle(paid.id)).unwrap()

    history = (await orders.list_history()).unwrap()

    assert [o.id for o in history] == [paid.id]
    assert open_order.id not in {o.id for o in history}
    assert (await orders.list_history(limit=1, skip=1)).unwrap() == []


# =============================================================================
# SETTLEMENT INVARIANT
# =============================================================================

async def _assert_settled_orders_were_paid(orders):
    for order in (await orders.list_orders()).unwrap():
        assert settlement_invariant_holds(order), order.order_code


async def test_settlement_invariant_across_lifecycles(orders):
    dine = await _create(orders, dining(table_number=6))
    await _assert_settled_orders_were_paid(orders)

    (await orders.update_status(dine.id, "cooking")).unwrap()
    await _assert_settled_orders_were_paid(orders)

    early = await orders.settle(dine.id)
    assert isinstance(early.error, ConflictError)
    assert (await orders.get_by_id(dine.id)).data.is_settled is False
    await _assert_settled_orders_were_paid(orders)

    (await orders.mark_paid(dine.id, "card")).unwrap()
    await _assert_settled_orders_were_paid(orders)

    (await orders.update_status(dine.id, "completed")).unwrap()
    await _assert_settled_orders_were_paid(orders)

    take = await _create(orders, takeaway())
    await _assert_settled_orders_were_paid(orders)

    (await orders.update_status(take.id, "cancelled")).unwrap()
    await _assert_settled_orders_were_paid(orders)

    refunded = (await orders.mark_refunded(take.id)).unwrap()
    assert refunded.is_settled and refunded.is_paid and refunded.refund_status
    await _assert_settled_orders_were_paid(orders)

    unpaid = await _create(orders, dining(table_number=8))
    (await orders.update_status(unpaid.id, "cancelled")).unwrap()
    assert isinstance((await orders.mark_refunded(unpaid.id)).error, ConflictError)
    await _assert_settled_orders_were_paid(orders)


# =============================================================================
# BROADCAST ROUND TRIP
# =============================================================================

async def test_applying_received_events_reproduces_server_state(orders, listener):
    cache = OrderCache()

    def receive():
        for event in listener.pending():
            cache.apply(parse_event(json.loads(json.dumps(event.to_wire()))))

    async def assert_mirrors(order_id):
        receive()
        server = await orders.get_by_id(order_id)
        if server.success:
            assert cache.get(order_id) == server.data
        else:
            assert isinstance(server.error, NotFoundError)
            assert order_id not in cache

    take = await _create(orders, takeaway(payment_method="card"))
    await assert_mirrors(take.id)
    (await orders.update_status(take.id, "cooking")).unwrap()
    await assert_mirrors(take.id)
    (await orders.update_order(take.id, OrderUpdate(customer_name="Kasun"))).unwrap()
    await assert_mirrors(take.id)
    (await orders.settle(take.id)).unwrap()
    await assert_mirrors(take.id)
    (await orders.update_status(take.id, "completed")).unwrap()
    await assert_mirrors(take.id)

    dine = await _create(orders, dining(table_number=9))
    await assert_mirrors(dine.id)
    (await orders.update_status(dine.id, "ready")).unwrap()
    await assert_mirrors(dine.id)
    (await orders.mark_paid(dine.id, "cash")).unwrap()
    await assert_mirrors(dine.id)
    (await orders.delete_order(dine.id)).unwrap()
    await assert_mirrors(dine.id)

    assert len(cache) == 1
    assert cache.get(take.id) == (await orders.get_by_id(take.id)).data
