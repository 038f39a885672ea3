"""
The user-facing sharing operations.

Owns the discovery responder, the transfer listener, the pending transfer
registry and the table of detached send tasks, and reports everything it
does through an injected EventBus.
"""

import asyncio
import logging
import tempfile
import uuid
from pathlib import Path

from quickmark_share.config import MAX_PORT, ShareSettings
from quickmark_share.discovery.models import PeerInfo
from quickmark_share.discovery.service import DiscoveryResponder, discover
from quickmark_share.errors import DataError, NetworkError, ShareError, StateError
from quickmark_share.events import RECV_DONE, RECV_STATUS, SEND_DONE, EventBus
from quickmark_share.notes.store import NoteStore
from quickmark_share.transfer import archive
from quickmark_share.transfer.client import send_archive, send_raw
from quickmark_share.transfer.listener import TransferListener, receive_into_store
from quickmark_share.transfer.models import (
    RecvDone,
    RecvOffer,
    RecvStatus,
    SendDone,
    SendTaskState,
    TransferHeader,
    TransferKind,
)
from quickmark_share.transfer.registry import PendingTransferRegistry

logger = logging.getLogger(__name__)

ALL_NOTES_FILENAME = "quickmark_notes.zip"


class SharingService:
    """Discover receivers, send notes, and receive offered notes."""

    def __init__(
        self,
        settings: ShareSettings | None = None,
        events: EventBus | None = None,
        store: NoteStore | None = None,
    ) -> None:
        self._settings = settings or ShareSettings()
        self.events = events or EventBus()
        self._store = store or NoteStore(self._settings.notes_dir)
        self._registry = PendingTransferRegistry()
        self._responder = DiscoveryResponder(self._settings)
        self._listener = TransferListener(
            self._settings, self._store, self._registry, self.events
        )
        self._listening = False
        self._send_tasks: dict[str, asyncio.Task] = {}
        self._receive_tasks: set[asyncio.Task] = set()

    @property
    def settings(self) -> ShareSettings:
        return self._settings

    @property
    def store(self) -> NoteStore:
        return self._store

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def transfer_port(self) -> int:
        return self._listener.port

    @property
    def discovery_port(self) -> int:
        return self._responder.port

    @property
    def device_name(self) -> str:
        return self._responder.device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._settings.device_name = name
        self._responder.device_name = name

    # --- Receiving ---

    async def start_receive_service(self) -> str:
        """
        Start answering pings and accepting offers.

        Idempotent: later calls only re-announce the listening status. A
        port that cannot be bound is reported once as a failed
        ``recv_done`` event; the other listener still starts.
        """
        if self._listening:
            await self.events.emit(RECV_STATUS, RecvStatus(phase="listening"))
            return "Already listening"
        self._listening = True

        try:
            await self._listener.start()
            self._responder.transfer_port = self._listener.port
        except NetworkError as e:
            logger.error(f"Transfer listener failed to start: {e}")
            await self.events.emit(RECV_DONE, RecvDone(ok=False, message=str(e)))

        try:
            await self._responder.start()
        except NetworkError as e:
            logger.error(f"Discovery responder failed to start: {e}")
            await self.events.emit(RECV_DONE, RecvDone(ok=False, message=str(e)))

        if not (self._listener.is_serving or self._responder.is_running):
            self._listening = False
            return "Could not start receive service"

        await self.events.emit(RECV_STATUS, RecvStatus(phase="listening"))
        return (
            f"Listening for shares on transfer port {self._listener.port}, "
            f"discovery port {self._responder.port}"
        )

    async def stop(self) -> None:
        """Stop listeners, drop pending offers and cancel running tasks."""
        tasks = list(self._send_tasks.values()) + list(self._receive_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._receive_tasks.clear()

        await self._responder.stop()
        await self._listener.stop()
        self._listening = False
        logger.info("Sharing service stopped")

    async def pending_offers(self) -> list[RecvOffer]:
        return await self._registry.offers()

    async def accept_incoming_transfer(self, transfer_id: str, accept: bool) -> asyncio.Task:
        """
        Claim a pending offer and resolve it on a background task.

        Raises:
            StateError: the offer is unknown or already claimed.
        """
        pending = await self._registry.claim(transfer_id)
        task = asyncio.create_task(self._listener.resolve(pending, accept))
        self._receive_tasks.add(task)
        task.add_done_callback(self._receive_tasks.discard)
        return task

    async def receive_notes(self, timeout_secs: float | None = None) -> str:
        """
        Legacy one-shot receive: answer one ping, then accept one
        un-headered transfer and merge it.
        """
        if self._listening:
            raise StateError("Receive service is already running")
        timeout = timeout_secs if timeout_secs is not None else self._settings.legacy_receive_timeout

        responder = DiscoveryResponder(self._settings)
        connected: asyncio.Future = asyncio.get_running_loop().create_future()

        async def on_connection(reader, writer):
            if connected.done():
                writer.close()
                return
            connected.set_result((reader, writer))

        try:
            server = await asyncio.start_server(
                on_connection, self._settings.bind_host, self._settings.transfer_port
            )
        except OSError as e:
            raise NetworkError(f"Could not bind transfer port: {e}") from e

        writer = None
        try:
            responder.transfer_port = server.sockets[0].getsockname()[1]
            await responder.start()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            try:
                await asyncio.wait_for(responder.wait_for_ping(), timeout=timeout)
                reader, writer = await asyncio.wait_for(
                    connected, timeout=max(0.0, deadline - loop.time())
                )
            except asyncio.TimeoutError as e:
                raise NetworkError(f"No sender within {timeout:g}s") from e

            peername = writer.get_extra_info("peername")
            peer = f"{peername[0]}:{peername[1]}" if peername else "unknown"
            size, count = await receive_into_store(reader, self._store, self._settings)
            logger.info(f"Received {count} notes ({size} bytes) from {peer}")
            return f"Received notes from {peer}"
        finally:
            await responder.stop()
            server.close()
            if writer is not None:
                writer.close()
            await server.wait_closed()

    # --- Discovery ---

    async def discover_receivers(self, wait_secs: float | None = None) -> list[PeerInfo]:
        window = wait_secs if wait_secs is not None else self._settings.sweep_window
        return await discover(self._settings, window)

    # --- Sending ---

    async def send_all_notes_to(self, ip: str, port: int) -> str:
        """Send the whole collection and wait for the outcome."""
        return await self._send(ip, port, None)

    async def send_note_to(self, note_id: str, ip: str, port: int) -> str:
        """Send one note and wait for the outcome."""
        return await self._send(ip, port, note_id)

    async def start_send_all_notes_to(self, ip: str, port: int) -> str:
        """Send the whole collection on a background task; returns its id."""
        return self._spawn_send(ip, port, None)

    async def start_send_note_to(self, note_id: str, ip: str, port: int) -> str:
        """Send one note on a background task; returns its id."""
        return self._spawn_send(ip, port, note_id)

    async def send_all_notes(self, wait_secs: float | None = None) -> str:
        """Legacy send: find the first receiver and push an un-headered archive."""
        window = wait_secs if wait_secs is not None else self._settings.send_discovery_timeout
        peers = await discover(self._settings, window, first_only=True)
        if not peers:
            raise NetworkError(f"No receiver found within {window:g}s")
        peer = peers[0]

        with tempfile.TemporaryDirectory(prefix="quickmark-send-") as tmp:
            archive_path = Path(tmp) / ALL_NOTES_FILENAME
            await asyncio.to_thread(archive.pack_all, self._store, archive_path)
            return await send_raw(archive_path, peer.ip, peer.port, self._settings)

    def send_task_state(self, task_id: str) -> SendTaskState:
        task = self._send_tasks.get(task_id)
        if task is None:
            raise StateError(f"No such send task: {task_id}")
        if not task.done():
            return SendTaskState.RUNNING
        if task.cancelled():
            return SendTaskState.CANCELLED
        if task.exception() is not None or not task.result():
            return SendTaskState.FAILED
        return SendTaskState.COMPLETED

    def cancel_send(self, task_id: str) -> bool:
        task = self._send_tasks.get(task_id)
        if task is None:
            raise StateError(f"No such send task: {task_id}")
        return task.cancel()

    def _spawn_send(self, ip: str, port: int, note_id: str | None) -> str:
        self._prune_send_tasks()
        task_id = str(uuid.uuid4())
        task = asyncio.create_task(self._send_task(ip, port, note_id))
        self._send_tasks[task_id] = task
        return task_id

    def _prune_send_tasks(self) -> None:
        """Forget the oldest finished handles beyond the configured history."""
        finished = [tid for tid, task in self._send_tasks.items() if task.done()]
        excess = len(finished) - self._settings.send_task_history
        for task_id in finished[:max(0, excess)]:
            del self._send_tasks[task_id]

    async def _send_task(self, ip: str, port: int, note_id: str | None) -> bool:
        """Task wrapper for a detached send; outcome is reported via events."""
        try:
            await self._send(ip, port, note_id)
        except ShareError:
            # send_done was already emitted
            return False
        return True

    async def _send(self, ip: str, port: int, note_id: str | None) -> str:
        if not 1 <= port <= MAX_PORT:
            message = f"Invalid transfer port: {port}"
            logger.error(message)
            await self.events.emit(SEND_DONE, SendDone(ok=False, message=message))
            raise DataError(message)

        with tempfile.TemporaryDirectory(prefix="quickmark-send-") as tmp:
            tmp_dir = Path(tmp)
            try:
                if note_id is None:
                    archive_path = tmp_dir / ALL_NOTES_FILENAME
                    await asyncio.to_thread(archive.pack_all, self._store, archive_path)
                    kind = TransferKind.ALL
                else:
                    archive_path = tmp_dir / f"note_{note_id}.zip"
                    await asyncio.to_thread(
                        archive.pack_single, self._store, note_id, archive_path
                    )
                    kind = TransferKind.SINGLE
            except (ShareError, OSError) as e:
                logger.error(f"Could not pack notes: {e}")
                await self.events.emit(
                    SEND_DONE, SendDone(ok=False, message=f"Could not pack notes: {e}")
                )
                if isinstance(e, ShareError):
                    raise
                raise ShareError(str(e)) from e

            header = TransferHeader(
                kind=kind,
                size=archive_path.stat().st_size,
                filename=archive_path.name,
            )
            return await send_archive(
                archive_path, ip, port, header, self.events, self._settings
            )
