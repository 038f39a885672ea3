"""Inbound connections that parsed a header and await a user decision."""

import asyncio
import logging

from quickmark_share.errors import StateError
from quickmark_share.transfer.models import PendingTransfer, RecvOffer

logger = logging.getLogger(__name__)


class PendingTransferRegistry:
    """
    Offer id -> PendingTransfer.

    Every entry is removed exactly once, by whichever caller claims it
    first. The lock is never held across network I/O.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingTransfer] = {}
        self._lock = asyncio.Lock()

    async def add(self, pending: PendingTransfer) -> None:
        async with self._lock:
            if pending.id in self._pending:
                raise StateError(f"Transfer {pending.id} is already pending")
            self._pending[pending.id] = pending

    async def claim(self, transfer_id: str) -> PendingTransfer:
        """Remove and return an entry; a second claimant gets StateError."""
        async with self._lock:
            pending = self._pending.pop(transfer_id, None)
        if pending is None:
            raise StateError(f"No such pending transfer: {transfer_id}")
        return pending

    async def offers(self) -> list[RecvOffer]:
        async with self._lock:
            return [p.to_offer() for p in self._pending.values()]

    async def drain(self) -> list[PendingTransfer]:
        """Remove and return every entry."""
        async with self._lock:
            drained = list(self._pending.values())
            self._pending.clear()
        return drained

    def __len__(self) -> int:
        return len(self._pending)
