"""Pydantic models for note transfers."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from quickmark_share.config import TRANSFER_MAGIC


class TransferKind(str, Enum):
    """What an archive carries."""
    ALL = "all"
    SINGLE = "single"


class TransferHeader(BaseModel):
    """Sent before the payload; bytes follow only after the receiver's ack."""
    magic: str = TRANSFER_MAGIC
    kind: TransferKind
    size: int
    filename: str


@dataclass
class PendingTransfer:
    """An accepted connection whose header parsed, awaiting a decision."""
    id: str
    header: TransferHeader
    peer: str
    reader: asyncio.StreamReader = field(repr=False)
    writer: asyncio.StreamWriter = field(repr=False)

    def to_offer(self) -> "RecvOffer":
        return RecvOffer(
            id=self.id,
            peer=self.peer,
            kind=self.header.kind,
            size=self.header.size,
            filename=self.header.filename,
        )


class SendTaskState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# --- Event payloads ---

class RecvStatus(BaseModel):
    phase: str


class RecvOffer(BaseModel):
    id: str
    peer: str
    kind: TransferKind
    size: int
    filename: str


class RecvDone(BaseModel):
    ok: bool
    message: str
    bytes: int | None = None
    peer: str | None = None


class SendStatus(BaseModel):
    phase: str
    sent: int | None = None
    total: int | None = None


class SendDone(BaseModel):
    ok: bool
    message: str
