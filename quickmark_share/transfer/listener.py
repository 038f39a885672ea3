"""
TCP transfer listener.

Accepts inbound connections on the transfer port, reads each transfer
header and parks the connection in the pending registry until the user
accepts or rejects the offer.
"""

import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path

from quickmark_share.config import INDEX_FILE, NOTE_EXTENSION, ShareSettings
from quickmark_share.errors import NetworkError, ShareError
from quickmark_share.events import RECV_DONE, RECV_OFFER, RECV_STATUS, EventBus
from quickmark_share.notes.merge import merge_into_store
from quickmark_share.notes.store import NoteStore
from quickmark_share.transfer import archive
from quickmark_share.transfer.models import (
    PendingTransfer,
    RecvDone,
    RecvStatus,
)
from quickmark_share.transfer.registry import PendingTransferRegistry
from quickmark_share.transfer.wire import read_header, read_payload, send_ack

logger = logging.getLogger(__name__)


def _peer_label(writer: asyncio.StreamWriter) -> str:
    peername = writer.get_extra_info("peername")
    if not peername:
        return "unknown"
    return f"{peername[0]}:{peername[1]}"


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _install_archive(store: NoteStore, archive_path: Path, scratch: Path) -> int:
    """Extract an archive, copy its note bodies and merge its index."""
    archive.unpack(archive_path, scratch)
    incoming = archive.read_index(scratch / INDEX_FILE)

    known_ids = {n.id for n in incoming}
    for body in sorted(scratch.glob(f"*{NOTE_EXTENSION}")):
        if not body.is_file():
            continue
        if body.stem not in known_ids:
            logger.warning(f"Archive body {body.name} has no index entry")
        shutil.copyfile(body, store.notes_dir / body.name)

    merge_into_store(store, incoming)
    return len(incoming)


async def receive_into_store(
    reader: asyncio.StreamReader,
    store: NoteStore,
    settings: ShareSettings,
    expected_size: int | None = None,
) -> tuple[int, int]:
    """
    Read a length-prefixed archive and merge it into ``store``.

    The temporary archive and extraction directory are removed on every
    exit path. Note bodies copied before a failure are kept.

    Returns:
        (payload bytes, number of index entries received)
    """
    with tempfile.TemporaryDirectory(prefix="quickmark-recv-") as tmp:
        tmp_dir = Path(tmp)
        archive_path = tmp_dir / "incoming_notes.zip"
        scratch = tmp_dir / "extracted"

        with open(archive_path, "wb") as out:
            size = await read_payload(
                reader,
                out,
                expected_size=expected_size,
                timeout=settings.read_timeout,
                chunk_size=settings.chunk_size,
            )

        count = await asyncio.to_thread(_install_archive, store, archive_path, scratch)
    return size, count


class TransferListener:
    """Serves the transfer port and resolves pending offers."""

    def __init__(
        self,
        settings: ShareSettings,
        store: NoteStore,
        registry: PendingTransferRegistry,
        events: EventBus,
    ) -> None:
        self._settings = settings
        self._store = store
        self._registry = registry
        self._events = events
        self._server: asyncio.Server | None = None
        self._port = 0

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """Bind the transfer port. Raises NetworkError if it is taken."""
        try:
            self._server = await asyncio.start_server(
                self._handle_incoming_connection,
                self._settings.bind_host,
                self._settings.transfer_port,
            )
        except OSError as e:
            raise NetworkError(
                f"Could not bind transfer port {self._settings.transfer_port}: {e}"
            ) from e

        self._port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Transfer listener on port {self._port}")

    async def stop(self) -> None:
        """Stop accepting and close every connection still awaiting a decision."""
        if self._server is None:
            return
        self._server.close()
        for pending in await self._registry.drain():
            logger.info(f"Dropping pending transfer {pending.id} from {pending.peer}")
            await _close(pending.writer)
        await self._server.wait_closed()
        self._server = None
        logger.info("Transfer listener stopped")

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Read the header of a new connection and publish it as an offer."""
        peer = _peer_label(writer)
        try:
            header = await asyncio.wait_for(
                read_header(reader), timeout=self._settings.read_timeout
            )
        except (ShareError, asyncio.TimeoutError, OSError) as e:
            reason = str(e) or "timed out"
            logger.warning(f"Bad transfer header from {peer}: {reason}")
            await self._events.emit(
                RECV_DONE,
                RecvDone(ok=False, message=f"Receive failed: bad header ({reason})", peer=peer),
            )
            await _close(writer)
            return

        pending = PendingTransfer(
            id=str(uuid.uuid4()),
            header=header,
            peer=peer,
            reader=reader,
            writer=writer,
        )
        await self._registry.add(pending)
        logger.info(
            f"Incoming {header.kind.value} transfer {pending.id} from {peer} "
            f"({header.size} bytes)"
        )
        await self._events.emit(RECV_OFFER, pending.to_offer())

    async def decide(self, transfer_id: str, accept: bool) -> bool:
        """Claim an offer and resolve it. StateError if it is not pending."""
        pending = await self._registry.claim(transfer_id)
        return await self.resolve(pending, accept)

    async def resolve(self, pending: PendingTransfer, accept: bool) -> bool:
        """
        Answer a claimed offer.

        Rejecting sends the rejection token and reads nothing. Accepting
        sends the acknowledgement, receives the archive and merges it.
        Every path ends in exactly one ``recv_done`` event.

        Returns:
            True if notes were received and merged.
        """
        try:
            if not accept:
                await send_ack(pending.writer, accept=False)
                logger.info(f"Rejected transfer {pending.id} from {pending.peer}")
                await self._events.emit(
                    RECV_DONE,
                    RecvDone(ok=False, message="Transfer rejected", peer=pending.peer),
                )
                return False

            await send_ack(pending.writer, accept=True)
            await self._events.emit(RECV_STATUS, RecvStatus(phase="receiving"))

            size, count = await receive_into_store(
                pending.reader,
                self._store,
                self._settings,
                expected_size=pending.header.size,
            )
            logger.info(f"Received {count} notes ({size} bytes) from {pending.peer}")
            await self._events.emit(
                RECV_DONE,
                RecvDone(
                    ok=True,
                    message=f"Received notes from {pending.peer}",
                    bytes=size,
                    peer=pending.peer,
                ),
            )
            return True

        except asyncio.CancelledError:
            await self._events.emit(
                RECV_DONE,
                RecvDone(ok=False, message="Receive cancelled", peer=pending.peer),
            )
            raise
        except (ShareError, OSError) as e:
            logger.error(f"Receive error for {pending.id} from {pending.peer}: {e}")
            await self._events.emit(
                RECV_DONE,
                RecvDone(ok=False, message=f"Receive failed: {e}", peer=pending.peer),
            )
            return False
        finally:
            await _close(pending.writer)
