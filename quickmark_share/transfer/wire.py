"""
Wire protocol helpers.

Discovery datagrams are bare JSON. A transfer header is a 4-byte
big-endian length followed by JSON; the payload is an 8-byte big-endian
length followed by the raw archive bytes. The receiver answers a header
with a 3-byte token before any payload is sent.
"""

import asyncio
import json
import logging
import os
import struct

from pydantic import ValidationError

from quickmark_share.config import (
    CHUNK_SIZE,
    DISCOVERY_MAGIC,
    MAX_DATAGRAM_SIZE,
    MAX_HEADER_SIZE,
    TRANSFER_MAGIC,
)
from quickmark_share.discovery.models import DiscoveryMessage
from quickmark_share.errors import NetworkError, ProtocolError, TransferRejected
from quickmark_share.transfer.models import TransferHeader

logger = logging.getLogger(__name__)

HEADER_LENGTH_FORMAT = "!I"
HEADER_LENGTH_SIZE = struct.calcsize(HEADER_LENGTH_FORMAT)
PAYLOAD_LENGTH_FORMAT = "!Q"
PAYLOAD_LENGTH_SIZE = struct.calcsize(PAYLOAD_LENGTH_FORMAT)

ACK_OK = b"OK\n"
ACK_REJECT = b"NO\n"
ACK_SIZE = 3


# --- Discovery ---

def encode_discovery(msg: DiscoveryMessage) -> bytes:
    data = json.dumps(msg.model_dump()).encode("utf-8")
    if len(data) > MAX_DATAGRAM_SIZE:
        raise ProtocolError(f"Discovery message too large ({len(data)} bytes)")
    return data


def decode_discovery(data: bytes) -> DiscoveryMessage:
    """Parse a datagram, rejecting anything that is not our protocol."""
    try:
        msg = DiscoveryMessage.model_validate_json(data)
    except ValidationError as e:
        raise ProtocolError(f"Malformed discovery message: {e.error_count()} error(s)") from e
    if msg.magic != DISCOVERY_MAGIC:
        raise ProtocolError(f"Unexpected discovery magic {msg.magic!r}")
    return msg


# --- Transfer header ---

def encode_header(header: TransferHeader) -> bytes:
    body = json.dumps(header.model_dump(mode="json")).encode("utf-8")
    return struct.pack(HEADER_LENGTH_FORMAT, len(body)) + body


def decode_header(body: bytes) -> TransferHeader:
    try:
        header = TransferHeader.model_validate_json(body)
    except ValidationError as e:
        raise ProtocolError(f"Malformed transfer header: {e.error_count()} error(s)") from e
    if header.magic != TRANSFER_MAGIC:
        raise ProtocolError(f"Unexpected transfer magic {header.magic!r}")
    if header.size < 0:
        raise ProtocolError(f"Invalid payload size {header.size}")
    return header


async def send_header(writer: asyncio.StreamWriter, header: TransferHeader) -> None:
    writer.write(encode_header(header))
    await writer.drain()


async def read_header(reader: asyncio.StreamReader) -> TransferHeader:
    """Read and validate a length-prefixed header. Reads no payload bytes."""
    try:
        prefix = await reader.readexactly(HEADER_LENGTH_SIZE)
        (length,) = struct.unpack(HEADER_LENGTH_FORMAT, prefix)
        if length == 0 or length > MAX_HEADER_SIZE:
            raise ProtocolError(f"Invalid header length {length}")
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Connection closed while reading header ({len(e.partial)} bytes read)"
        ) from e
    return decode_header(body)


# --- Acknowledgement ---

async def send_ack(writer: asyncio.StreamWriter, accept: bool) -> None:
    writer.write(ACK_OK if accept else ACK_REJECT)
    await writer.drain()


async def read_ack(reader: asyncio.StreamReader, timeout: float) -> None:
    """Wait for the receiver's decision; return only on ``OK\\n``."""
    try:
        token = await asyncio.wait_for(reader.readexactly(ACK_SIZE), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProtocolError(f"Receiver did not acknowledge within {timeout:g}s") from e
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("Receiver did not acknowledge (connection closed)") from e

    if token == ACK_OK:
        return
    if token == ACK_REJECT:
        raise TransferRejected()
    raise ProtocolError(f"Receiver did not acknowledge (got {token!r})")


# --- Payload ---

async def write_payload(
    writer: asyncio.StreamWriter,
    file_path: str | os.PathLike,
    progress_callback=None,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """
    Stream a file as an 8-byte length followed by its bytes.

    Args:
        writer: The TCP connection stream.
        file_path: File to send.
        progress_callback: optional async fn(sent, total) called after
            every chunk.
        chunk_size: Bytes per write window.

    Returns:
        The number of payload bytes written.
    """
    total = os.path.getsize(file_path)
    writer.write(struct.pack(PAYLOAD_LENGTH_FORMAT, total))
    await writer.drain()

    sent = 0
    with open(file_path, "rb") as f:
        while sent < total:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
            sent += len(chunk)
            if progress_callback:
                await progress_callback(sent, total)

    if sent != total:
        raise NetworkError(f"File shrank while sending ({sent} of {total} bytes)")
    return sent


async def read_payload(
    reader: asyncio.StreamReader,
    out,
    expected_size: int | None = None,
    timeout: float | None = None,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """
    Read an 8-byte length-prefixed payload into the binary file ``out``.

    Every read is bounded by ``timeout``. A stream that ends before the
    declared length is a failure, never a short success.
    """
    try:
        prefix = await asyncio.wait_for(
            reader.readexactly(PAYLOAD_LENGTH_SIZE), timeout=timeout
        )
    except asyncio.IncompleteReadError as e:
        raise NetworkError("Connection closed before payload length") from e
    except asyncio.TimeoutError as e:
        raise NetworkError("Timed out waiting for payload") from e

    (total,) = struct.unpack(PAYLOAD_LENGTH_FORMAT, prefix)
    if expected_size is not None and total != expected_size:
        raise ProtocolError(
            f"Payload length {total} does not match announced size {expected_size}"
        )

    remaining = total
    while remaining > 0:
        try:
            chunk = await asyncio.wait_for(
                reader.read(min(chunk_size, remaining)), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Timed out after {total - remaining} of {total} bytes"
            ) from e
        if not chunk:
            raise NetworkError(
                f"Connection closed after {total - remaining} of {total} bytes"
            )
        await asyncio.to_thread(out.write, chunk)
        remaining -= len(chunk)

    return total
