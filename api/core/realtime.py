"""
In-process change broker for the realtime channel.

Each open ``/realtime/{table}`` WebSocket owns a bounded queue registered
under (table, user_id). Writes to a collection publish one message to every
queue of that owner. Single-instance only; a multi-worker deployment would
need an external pub/sub instead.
"""

import asyncio
import logging
from collections import defaultdict
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect

from api.core.config import settings
from api.models.schemas import ChangeMessage

logger = logging.getLogger(__name__)


class ChangeBroker:
    """Fan-out of collection changes to connected listeners."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._queues: dict[tuple[str, UUID], set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, table: str, user_id: UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues[(table, user_id)].add(queue)
        logger.debug(f"Listener attached to {table} for {user_id}")
        return queue

    def unsubscribe(self, table: str, user_id: UUID, queue: asyncio.Queue) -> None:
        key = (table, user_id)
        listeners = self._queues.get(key)
        if listeners is None:
            return
        listeners.discard(queue)
        if not listeners:
            del self._queues[key]
        logger.debug(f"Listener detached from {table} for {user_id}")

    def listener_count(self, table: str, user_id: UUID) -> int:
        return len(self._queues.get((table, user_id), ()))

    def publish(self, user_id: UUID, message: ChangeMessage) -> int:
        """Queue a message for every listener. Returns how many received it."""
        delivered = 0
        for queue in list(self._queues.get((message.table, user_id), ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping {message.table} change for a slow listener")
        return delivered


async def relay_changes(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued changes to an accepted socket until the client goes away.

    Inbound frames are read and discarded so a client close is noticed even
    while no changes arrive.
    """

    async def forward() -> None:
        while True:
            message: ChangeMessage = await queue.get()
            await websocket.send_json(message.model_dump(mode="json", by_alias=True))

    async def drain() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        error = None if task.cancelled() else task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            logger.warning(f"Change relay stopped: {error!r}")


# Global broker instance
broker = ChangeBroker(max_queue_size=settings.realtime_queue_size)
