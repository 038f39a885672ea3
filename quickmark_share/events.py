"""Event sink shared by the discovery, transfer and sharing components."""

import logging

from pydantic import BaseModel

logger = logging.getLogger(__name__)

RECV_STATUS = "recv_status"
RECV_OFFER = "recv_offer"
RECV_DONE = "recv_done"
SEND_STATUS = "send_status"
SEND_DONE = "send_done"


class EventBus:
    """Fans events out to registered async callbacks."""

    def __init__(self) -> None:
        self._callbacks: list = []  # async fn(event_type, data)

    def subscribe(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._callbacks.append(callback)

    def unsubscribe(self, callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def emit(self, event_type: str, payload: BaseModel) -> None:
        """Emit an event to all registered callbacks."""
        data = payload.model_dump(mode="json", exclude_none=True)
        logger.debug(f"Event {event_type}: {data}")
        for cb in list(self._callbacks):
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")
