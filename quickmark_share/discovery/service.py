"""
UDP-based LAN discovery.

A sender broadcasts a ping to every local subnet and collects pongs;
a receiver answers pings with the port its transfer listener is on.
"""

import asyncio
import ipaddress
import logging
import socket
import uuid

import psutil

from quickmark_share.config import ShareSettings
from quickmark_share.discovery.models import DiscoveryMessage, PeerInfo
from quickmark_share.errors import NetworkError, ProtocolError
from quickmark_share.transfer.wire import decode_discovery, encode_discovery

logger = logging.getLogger(__name__)

GLOBAL_BROADCAST = "255.255.255.255"


def broadcast_addresses() -> list[str]:
    """
    Directed broadcast address (``ip | ~netmask``) of every non-loopback
    IPv4 interface, plus the global broadcast address.
    """
    addresses = {GLOBAL_BROADCAST}
    for name, snics in psutil.net_if_addrs().items():
        for snic in snics:
            if snic.family != socket.AF_INET or not snic.netmask:
                continue
            try:
                iface = ipaddress.IPv4Interface(f"{snic.address}/{snic.netmask}")
            except ValueError as e:
                logger.debug(f"Skipping interface {name}: {e}")
                continue
            if iface.ip.is_loopback:
                continue
            addresses.add(str(iface.network.broadcast_address))
    return sorted(addresses)


def _udp_socket(host: str, port: int, reuse: bool = False) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        if reuse:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


class ResponderProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol answering discovery pings."""

    def __init__(self, responder: "DiscoveryResponder"):
        self.responder = responder
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            msg = decode_discovery(data)
        except ProtocolError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return
        if msg.kind != "ping":
            return

        pong = DiscoveryMessage(
            kind="pong",
            name=self.responder.device_name,
            transfer_port=self.responder.transfer_port,
            id=str(uuid.uuid4()),
        )
        try:
            self.transport.sendto(encode_discovery(pong), addr)
        except OSError as e:
            logger.warning(f"Could not answer ping from {addr}: {e}")
            return
        logger.debug(f"Answered ping from {msg.name} at {addr[0]}:{addr[1]}")
        self.responder.mark_answered()

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryResponder:
    """Answers discovery pings on the well-known discovery port."""

    def __init__(self, settings: ShareSettings) -> None:
        self._settings = settings
        self._transport: asyncio.DatagramTransport | None = None
        self._device_name = settings.device_name
        self._transfer_port = settings.transfer_port
        self._answered = asyncio.Event()
        self._port = 0

    @property
    def transfer_port(self) -> int:
        return self._transfer_port

    @transfer_port.setter
    def transfer_port(self, port: int) -> None:
        self._transfer_port = port

    @property
    def device_name(self) -> str:
        return self._device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._device_name = name

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    def mark_answered(self) -> None:
        self._answered.set()

    async def wait_for_ping(self) -> None:
        """Return once at least one ping has been answered."""
        await self._answered.wait()

    async def start(self) -> None:
        """Bind the discovery port. Raises NetworkError if that fails."""
        loop = asyncio.get_running_loop()
        try:
            sock = _udp_socket(
                self._settings.bind_host, self._settings.discovery_port, reuse=True
            )
        except OSError as e:
            raise NetworkError(
                f"Could not bind discovery port {self._settings.discovery_port}: {e}"
            ) from e

        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: ResponderProtocol(self),
            sock=sock,
        )
        self._port = sock.getsockname()[1]
        logger.info(f"Discovery responder on UDP port {self._port}")

    async def stop(self) -> None:
        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("Discovery responder stopped")


class PongCollector(asyncio.DatagramProtocol):
    """Queues valid pongs; anything else on the socket is noise."""

    def __init__(self) -> None:
        self.pongs: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            msg = decode_discovery(data)
        except ProtocolError as e:
            logger.debug(f"Ignoring invalid discovery reply from {addr}: {e}")
            return
        if msg.kind == "pong":
            self.pongs.put_nowait((msg, addr))

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Discovery send error: {exc}")


async def discover(
    settings: ShareSettings,
    window: float,
    first_only: bool = False,
    targets: list[tuple[str, int]] | None = None,
) -> list[PeerInfo]:
    """
    Ping every broadcast address and collect the receivers that answer.

    Args:
        settings: Supplies the device name and discovery port.
        window: Seconds to wait for pongs.
        first_only: Stop at the first pong instead of waiting out the window.
        targets: Addresses to ping instead of the local broadcast set.

    Returns:
        One PeerInfo per distinct (ip, transfer port).
    """
    loop = asyncio.get_running_loop()
    try:
        sock = _udp_socket(settings.bind_host, 0)
    except OSError as e:
        raise NetworkError(f"Could not open discovery socket: {e}") from e

    transport, collector = await loop.create_datagram_endpoint(PongCollector, sock=sock)
    try:
        ping = DiscoveryMessage(
            kind="ping",
            name=settings.device_name,
            transfer_port=settings.transfer_port,
            id=str(uuid.uuid4()),
        )
        data = encode_discovery(ping)

        if targets is None:
            targets = [(addr, settings.discovery_port) for addr in broadcast_addresses()]
        for target in targets:
            try:
                transport.sendto(data, target)
            except OSError as e:
                # Some interfaces might not support broadcast
                logger.debug(f"Ping to {target} failed: {e}")

        peers: dict[tuple[str, int], PeerInfo] = {}
        deadline = loop.time() + window
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                msg, addr = await asyncio.wait_for(collector.pongs.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break

            key = (addr[0], msg.transfer_port)
            if key in peers:
                continue
            peers[key] = PeerInfo(name=msg.name, ip=addr[0], port=msg.transfer_port, id=msg.id)
            logger.info(f"Discovered receiver {msg.name} at {addr[0]}:{msg.transfer_port}")
            if first_only:
                break

        return list(peers.values())
    finally:
        transport.close()
