"""
WebSocket Hub

Bridges WebSocket connections to the event bus. Wire messages are JSON
objects of the form {"event": <name>, "data": {...}}.

Client -> server:
    subscribe:<topic> / unsubscribe:<topic>    topic membership
    table_blocked / table_released             {table_id, table_label}
    bell_request / bill_request                {table_id, table_label}

Server -> client:
    table_update, table_blocked, table_released, order_update,
    bell_request, bill_request                 full event payloads
    subscribed / unsubscribed                  {topic} acknowledgements
    error                                      {message}

A new connection belongs to no topic. Memberships are dropped on
disconnect, so clients re-subscribe after every reconnect.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from app.core.errors import PosError
from app.services.events import BaseEventBus, broadcast
from app.services.events.base import Subscriber
from app.services.events.messages import BellRequestEvent, BillRequestEvent, Topic
from app.services.tables.blocks import TableBlockRegistry, table_key

logger = logging.getLogger(__name__)

# Close code for "try again later"
TRY_AGAIN_LATER = 1013


class WebSocketConnection:
    """One client socket and its bus subscription."""

    def __init__(self, websocket: WebSocket, bus: BaseEventBus, blocks: TableBlockRegistry):
        self.websocket = websocket
        self.bus = bus
        self.blocks = blocks
        self.subscriber: Optional[Subscriber] = None
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": data})

    async def _writer(self) -> None:
        """Forward queued bus events to the socket until cancelled."""
        while True:
            message = await self.subscriber.queue.get()
            wire = message.to_wire()
            await self.send(wire["event"], wire["data"])

    def start_writer(self) -> asyncio.Task:
        writer = asyncio.get_running_loop().create_task(self._writer())
        writer.add_done_callback(self._writer_done)
        return writer

    def _writer_done(self, task: asyncio.Task) -> None:
        """Drop the connection from the bus once its writer fails."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"WebSocket writer for {self.subscriber.id} stopped: {error}")
            self.bus.disconnect(self.subscriber)

    async def serve(self) -> None:
        await self.websocket.accept()
        try:
            self.subscriber = self.bus.connect()
        except PosError as e:
            logger.warning(f"Rejecting WebSocket connection: {e.message}")
            await self.websocket.close(code=TRY_AGAIN_LATER)
            return

        writer = self.start_writer()
        try:
            while True:
                raw = await self.websocket.receive_text()
                await self.handle(raw)
        except WebSocketDisconnect:
            pass
        finally:
            writer.cancel()
            self.bus.disconnect(self.subscriber)

    async def handle(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send("error", {"message": "Malformed message"})
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await self.send("error", {"message": "Message must carry an event name"})
            return

        event = message["event"]
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        try:
            if event.startswith("subscribe:") or event.startswith("unsubscribe:"):
                await self._membership(event)
            elif event == "table_blocked":
                await self.blocks.block(data.get("table_id"), data.get("table_label", ""))
            elif event == "table_released":
                await self.blocks.release(data.get("table_id"), reason="client request")
            elif event == "bell_request":
                logger.info(f"🔔 Bell request from table {data.get('table_id')} ({data.get('table_label', '')})")
                await broadcast(self.bus, BellRequestEvent(**_table_fields(data)))
            elif event == "bill_request":
                logger.info(f"🧾 Bill request from table {data.get('table_id')} ({data.get('table_label', '')})")
                await broadcast(self.bus, BillRequestEvent(**_table_fields(data)))
            else:
                await self.send("error", {"message": f"Unknown event: {event}"})
        except PosError as e:
            await self.send("error", {"message": e.message})

    async def _membership(self, event: str) -> None:
        action, _, name = event.partition(":")
        try:
            topic = Topic(name)
        except ValueError:
            await self.send("error", {"message": f"Unknown topic: {name}"})
            return

        if action == "subscribe":
            self.bus.subscribe(self.subscriber, topic)
            await self.send("subscribed", {"topic": topic.value})
        else:
            self.bus.unsubscribe(self.subscriber, topic)
            await self.send("unsubscribed", {"topic": topic.value})


def _table_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "table_id": table_key(data.get("table_id")),
        "table_label": str(data.get("table_label") or ""),
    }


async def websocket_endpoint(websocket: WebSocket, bus: BaseEventBus, blocks: TableBlockRegistry) -> None:
    await WebSocketConnection(websocket, bus, blocks).serve()
