"""
Outbound side of a transfer.

Connects to a receiver, offers the archive with a header, waits for the
receiver's decision and streams the payload.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone

from quickmark_share.config import ShareSettings
from quickmark_share.errors import NetworkError, ShareError
from quickmark_share.events import SEND_DONE, SEND_STATUS, EventBus
from quickmark_share.transfer.models import SendDone, SendStatus, TransferHeader
from quickmark_share.transfer.wire import read_ack, send_header, write_payload

logger = logging.getLogger(__name__)


async def open_connection(
    host: str, port: int, timeout: float
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    try:
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise NetworkError(f"Timed out connecting to {host}:{port}") from e
    except OSError as e:
        raise NetworkError(f"Could not connect to {host}:{port}: {e}") from e
    except (ValueError, OverflowError) as e:
        raise NetworkError(f"Invalid address {host}:{port}: {e}") from e


async def _close(writer: asyncio.StreamWriter | None) -> None:
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _sent_message(host: str, port: int) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return f"Sent notes to {host}:{port} at {ts}"


async def send_archive(
    archive_path: str | os.PathLike,
    host: str,
    port: int,
    header: TransferHeader,
    events: EventBus,
    settings: ShareSettings,
) -> str:
    """
    Offer an archive to a receiver and stream it once acknowledged.

    Args:
        archive_path: Zip archive to send.
        host, port: The receiver's transfer address.
        header: Header announcing kind, size and filename.
        events: Sink for ``send_status`` / ``send_done``.
        settings: Timeouts and chunk size.

    Returns:
        A human-readable success message.

    Raises:
        ShareError: after emitting ``send_done`` with ``ok=False``.
    """
    writer: asyncio.StreamWriter | None = None

    async def on_progress(sent: int, total: int) -> None:
        await events.emit(SEND_STATUS, SendStatus(phase="sending", sent=sent, total=total))

    try:
        await events.emit(SEND_STATUS, SendStatus(phase="connecting"))
        reader, writer = await open_connection(host, port, settings.connect_timeout)

        try:
            await send_header(writer, header)
            await events.emit(SEND_STATUS, SendStatus(phase="waiting for receiver"))
            await read_ack(reader, settings.ack_timeout)

            await events.emit(
                SEND_STATUS, SendStatus(phase="sending", sent=0, total=header.size)
            )
            await write_payload(
                writer, archive_path, on_progress, chunk_size=settings.chunk_size
            )
        except OSError as e:
            raise NetworkError(f"Connection to {host}:{port} failed: {e}") from e

        message = _sent_message(host, port)
        logger.info(message)
        await events.emit(SEND_DONE, SendDone(ok=True, message=message))
        return message

    except asyncio.CancelledError:
        await events.emit(SEND_DONE, SendDone(ok=False, message="Send cancelled"))
        raise
    except ShareError as e:
        logger.error(f"Send to {host}:{port} failed: {e}")
        await events.emit(SEND_DONE, SendDone(ok=False, message=str(e)))
        raise
    finally:
        await _close(writer)


async def send_raw(
    archive_path: str | os.PathLike,
    host: str,
    port: int,
    settings: ShareSettings,
) -> str:
    """Send an archive without a header or handshake (legacy receivers)."""
    reader, writer = await open_connection(host, port, settings.connect_timeout)
    try:
        await write_payload(writer, archive_path, chunk_size=settings.chunk_size)
    except OSError as e:
        raise NetworkError(f"Connection to {host}:{port} failed: {e}") from e
    finally:
        await _close(writer)

    message = _sent_message(host, port)
    logger.info(message)
    return message
