"""
Per-client WebSocket relay of sharing events.

A client picks the event groups it wants with ``/ws?topics=recv,send``
(both by default). Each client is its own EventBus subscriber with a
bounded queue, so a slow UI only delays its own stream.
"""

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect

from quickmark_share.errors import DataError
from quickmark_share.events import RECV_DONE, RECV_OFFER, RECV_STATUS, SEND_DONE, SEND_STATUS

logger = logging.getLogger(__name__)

TOPICS = {
    "recv": (RECV_STATUS, RECV_OFFER, RECV_DONE),
    "send": (SEND_STATUS, SEND_DONE),
}
QUEUE_SIZE = 256


def parse_topics(value: str | None) -> set[str]:
    """Map a ``topics`` query value to the event names it selects."""
    if not value:
        return {name for names in TOPICS.values() for name in names}
    selected: set[str] = set()
    for topic in value.split(","):
        topic = topic.strip()
        if topic not in TOPICS:
            raise DataError(f"Unknown event topic: {topic!r}")
        selected.update(TOPICS[topic])
    return selected


class EventStream:
    """
    Streams the selected sharing events to one WebSocket client.

    Offers still waiting for a decision are replayed on connect, so a UI
    that reconnects can still accept them. An offer that arrives during
    the replay may be delivered twice; clients key offers by id.

    When the queue is full the oldest queued event is dropped.
    """

    def __init__(self, websocket: WebSocket, sharing_service, event_names: set[str],
                 queue_size: int = QUEUE_SIZE) -> None:
        self._websocket = websocket
        self._service = sharing_service
        self._event_names = event_names
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    async def _enqueue(self, event: str, data: dict) -> None:
        if event not in self._event_names:
            return
        if self._queue.full():
            dropped, _ = self._queue.get_nowait()
            logger.warning(f"WebSocket client is behind; dropped a {dropped} event")
        self._queue.put_nowait((event, data))

    async def _pump(self) -> None:
        while True:
            event, data = await self._queue.get()
            await self._websocket.send_json({"event": event, "data": data})

    async def serve(self) -> None:
        """Run until the client disconnects."""
        await self._websocket.accept()
        self._service.events.subscribe(self._enqueue)
        logger.info(f"WebSocket client connected: {sorted(self._event_names)}")
        try:
            if RECV_OFFER in self._event_names:
                for offer in await self._service.pending_offers():
                    await self._enqueue(RECV_OFFER, offer.model_dump(mode="json"))

            sender = asyncio.create_task(self._pump())
            try:
                while True:
                    # Clients send nothing; this only watches for the close
                    await self._websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected")
            finally:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
        finally:
            self._service.events.unsubscribe(self._enqueue)
