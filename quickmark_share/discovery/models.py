"""Pydantic models for peer discovery."""

from typing import Literal

from pydantic import BaseModel, Field

from quickmark_share.config import DISCOVERY_MAGIC, MAX_PORT


class DiscoveryMessage(BaseModel):
    """The JSON payload of a discovery ping or pong datagram."""
    magic: str = DISCOVERY_MAGIC
    kind: Literal["ping", "pong"]
    name: str
    transfer_port: int = Field(ge=0, le=MAX_PORT)
    id: str


class PeerInfo(BaseModel):
    """A receiver that answered a discovery ping."""
    name: str
    ip: str
    port: int  # TCP transfer port
    id: str
