import asyncio
import json
import socket
from types import SimpleNamespace

from quickmark_share.discovery import service as discovery
from quickmark_share.discovery.models import DiscoveryMessage
from quickmark_share.discovery.service import DiscoveryResponder, discover
from quickmark_share.transfer.wire import decode_discovery, encode_discovery


def snic(family, address, netmask):
    return SimpleNamespace(family=family, address=address, netmask=netmask)


def test_broadcast_addresses_per_interface(monkeypatch):
    fake = {
        "lo": [snic(socket.AF_INET, "127.0.0.1", "255.0.0.0")],
        "eth0": [
            snic(socket.AF_INET, "192.168.1.23", "255.255.255.0"),
            snic(socket.AF_INET6, "fe80::1", "ffff:ffff:ffff:ffff::"),
        ],
        "wlan0": [snic(socket.AF_INET, "10.0.3.4", "255.255.0.0")],
        "tun0": [snic(socket.AF_INET, "172.16.0.9", None)],
    }
    monkeypatch.setattr(discovery.psutil, "net_if_addrs", lambda: fake)

    assert discovery.broadcast_addresses() == [
        "10.0.255.255",
        "192.168.1.255",
        "255.255.255.255",
    ]


def test_broadcast_addresses_falls_back_to_global(monkeypatch):
    monkeypatch.setattr(discovery.psutil, "net_if_addrs", lambda: {})
    assert discovery.broadcast_addresses() == ["255.255.255.255"]


def test_discover_deduplicates_by_address(settings):
    async def scenario():
        responder = DiscoveryResponder(settings)
        responder.transfer_port = 4242
        await responder.start()
        try:
            target = ("127.0.0.1", responder.port)
            return await discover(settings, window=0.5, targets=[target] * 4)
        finally:
            await responder.stop()

    peers = asyncio.run(scenario())

    assert len(peers) == 1
    assert peers[0].ip == "127.0.0.1"
    assert peers[0].port == 4242
    assert peers[0].name == "test-host"


def test_discover_first_only_returns_early(settings):
    async def scenario():
        responder = DiscoveryResponder(settings)
        await responder.start()
        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            peers = await discover(
                settings, window=5, first_only=True,
                targets=[("127.0.0.1", responder.port)],
            )
            return peers, loop.time() - started
        finally:
            await responder.stop()

    peers, elapsed = asyncio.run(scenario())
    assert len(peers) == 1
    assert elapsed < 2


def test_discover_without_receivers_is_empty(settings):
    async def scenario():
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        return await discover(settings, window=0.2, targets=[("127.0.0.1", port)])

    assert asyncio.run(scenario()) == []


def test_discover_drops_pongs_with_out_of_range_port(settings):
    bad_pong = json.dumps({"magic": "quickmark_discovery_v1", "kind": "pong", "name": "x",
                           "transfer_port": 99999, "id": "i"}).encode()

    def answer_once(sock: socket.socket) -> None:
        _, addr = sock.recvfrom(2048)
        sock.sendto(bad_pong, addr)

    async def scenario():
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as fake:
            fake.bind(("127.0.0.1", 0))
            fake.settimeout(2)
            target = ("127.0.0.1", fake.getsockname()[1])
            peers, _ = await asyncio.gather(
                discover(settings, window=0.5, targets=[target]),
                asyncio.to_thread(answer_once, fake),
            )
        return peers

    assert asyncio.run(scenario()) == []


def test_responder_ignores_noise_and_keeps_serving(settings):
    def exchange(port: int, datagrams: list[bytes]) -> list[bytes]:
        replies = []
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.settimeout(0.3)
            for data in datagrams:
                s.sendto(data, ("127.0.0.1", port))
                try:
                    replies.append(s.recvfrom(2048)[0])
                except socket.timeout:
                    replies.append(b"")
        return replies

    foreign = json.dumps({"magic": "other_v1", "kind": "ping", "name": "x",
                          "transfer_port": 1, "id": "i"}).encode()
    bad_port = json.dumps({"magic": "quickmark_discovery_v1", "kind": "ping", "name": "x",
                           "transfer_port": 99999, "id": "i"}).encode()
    pong = encode_discovery(
        DiscoveryMessage(kind="pong", name="someone", transfer_port=1, id="p")
    )
    ping = encode_discovery(
        DiscoveryMessage(kind="ping", name="sender", transfer_port=1, id="q")
    )

    async def scenario():
        responder = DiscoveryResponder(settings)
        responder.transfer_port = 5555
        await responder.start()
        try:
            return await asyncio.to_thread(
                exchange, responder.port, [b"garbage", foreign, bad_port, pong, ping]
            )
        finally:
            await responder.stop()

    replies = asyncio.run(scenario())

    assert replies[:4] == [b"", b"", b"", b""]
    answer = decode_discovery(replies[4])
    assert answer.kind == "pong"
    assert answer.transfer_port == 5555
    assert answer.name == "test-host"


def test_each_pong_carries_a_fresh_id(settings):
    def ping_twice(port: int) -> list[str]:
        ids = []
        ping = encode_discovery(
            DiscoveryMessage(kind="ping", name="sender", transfer_port=1, id="q")
        )
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.settimeout(2)
            for _ in range(2):
                s.sendto(ping, ("127.0.0.1", port))
                ids.append(decode_discovery(s.recvfrom(2048)[0]).id)
        return ids

    async def scenario():
        responder = DiscoveryResponder(settings)
        await responder.start()
        try:
            return await asyncio.to_thread(ping_twice, responder.port)
        finally:
            await responder.stop()

    first, second = asyncio.run(scenario())
    assert first != second
