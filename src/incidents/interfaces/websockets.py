"""
Incident Event Stream
=====================

WebSocket feed of lifecycle events.

Clients connect to ``/ws/incidents?topic=incident:<id>`` (or the wildcard
``incident:*``) and receive each matching event as a JSON text frame.
Every connection is a dispatcher subscription with its own bounded
outgoing queue; a client that cannot keep up is disconnected.
"""

import asyncio
import functools
import json
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core import ValidationException
from incidents.application import WILDCARD_TOPIC, NotificationDispatcher, Subscription
from incidents.application.notifications import validate_topic
from incidents.domain import LifecycleEvent
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["Incident Events"])


class _Connection:
    __slots__ = ("topic", "queue", "subscription", "writer")

    def __init__(self, topic: str, queue: asyncio.Queue):
        self.topic = topic
        self.queue = queue
        self.subscription: Optional[Subscription] = None
        self.writer: Optional[asyncio.Task] = None


class IncidentConnectionManager:
    """Manages WebSocket subscribers with backpressure and heartbeat."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        max_connections: int = 100,
        queue_size: int = 50,
        heartbeat_interval: int = 30
    ):
        self._dispatcher = dispatcher
        self._connections: Dict[WebSocket, _Connection] = {}
        self._max_connections = max_connections
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval
        self._pending: Set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, topic: str) -> bool:
        """Accept and subscribe the connection. Returns False if rejected."""
        if len(self._connections) >= self._max_connections:
            await websocket.close(code=1013)  # Try Again Later
            logger.warning(
                "WebSocket connection rejected",
                extra={"reason": "max_connections", "total": len(self._connections)}
            )
            return False

        try:
            topic = validate_topic(topic)
        except ValidationException as e:
            await websocket.close(code=1008)  # Policy Violation
            logger.info("WebSocket connection rejected", extra={"reason": e.message})
            return False

        await websocket.accept()
        connection = _Connection(topic, asyncio.Queue(maxsize=self._queue_size))
        self._connections[websocket] = connection
        connection.subscription = self._dispatcher.subscribe(
            topic, functools.partial(self._enqueue, websocket)
        )
        connection.writer = asyncio.create_task(self._writer(websocket, connection.queue))

        logger.info(
            "WebSocket client connected",
            extra={"topic": topic, "total": len(self._connections)}
        )
        return True

    async def disconnect(self, websocket: WebSocket) -> None:
        """Unsubscribe the connection and cancel its writer task."""
        connection = self._connections.pop(websocket, None)
        if connection is None:
            return

        if connection.subscription is not None:
            self._dispatcher.unsubscribe(connection.subscription)
        if connection.writer and not connection.writer.done():
            connection.writer.cancel()

        try:
            await websocket.close()
        except RuntimeError as e:
            # Already closed by the client
            logger.debug("WebSocket close skipped", extra={"error": str(e)})

        logger.info("WebSocket client disconnected", extra={"total": len(self._connections)})

    async def close_all(self) -> None:
        """Close all connections gracefully."""
        for websocket in list(self._connections):
            await self.disconnect(websocket)

    async def _enqueue(self, websocket: WebSocket, event: LifecycleEvent) -> None:
        connection = self._connections.get(websocket)
        if connection is None:
            return
        try:
            connection.queue.put_nowait(event.to_json())
        except asyncio.QueueFull:
            logger.warning(
                "WebSocket client cannot keep up, disconnecting",
                extra={"topic": connection.topic, "incident_id": event.incident_id}
            )
            task = asyncio.get_running_loop().create_task(self.disconnect(websocket))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _writer(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Per-connection writer coroutine that drains the queue."""
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    message = json.dumps({
                        "type": "heartbeat",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    })
                await websocket.send_text(message)
        except asyncio.CancelledError:
            return
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("WebSocket writer stopped", extra={"error": str(e)})


@router.websocket("/ws/incidents")
async def incident_events(
    websocket: WebSocket,
    topic: str = Query(WILDCARD_TOPIC, description="incident:<id> or incident:*")
):
    """
    Stream lifecycle events for one incident or for all of them.

    Frames are the JSON form of a lifecycle event:
    {"type": "StatusChanged", "incidentId": "...", "actorId": "...",
     "timestamp": "ISO 8601", ...payload}
    """
    manager: IncidentConnectionManager = websocket.app.state.connection_manager
    if not await manager.connect(websocket, topic):
        return

    try:
        while True:
            # Inbound frames are ignored; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)


# Export router for inclusion in main app
ws_router = router
