from __future__ import annotations

import socket
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from udp_bridge.ipc.bus import LocalBus


class FakeTransport:
    """Stands in for UdpTransport: remembers the peer and what was sent."""

    def __init__(self) -> None:
        self.peer: tuple[str, int] | None = None
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.on_datagram: Callable[[bytes, tuple[str, int]], None] | None = None
        self.on_fatal: Callable[[BaseException], None] | None = None
        self.closed = False

    def start(self, *, on_datagram: Any, on_fatal: Any = None) -> None:
        self.on_datagram = on_datagram
        self.on_fatal = on_fatal

    def deliver(self, data: bytes, addr: tuple[str, int]) -> None:
        assert self.on_datagram is not None
        self.peer = addr
        self.on_datagram(data, addr)

    def send(self, payload: bytes) -> tuple[str, int] | None:
        peer = self.peer
        if peer is None:
            return None
        self.sent.append((payload, peer))
        return peer

    def close(self) -> None:
        self.closed = True


class BusTap:
    """Collects everything published on one LocalBus topic."""

    def __init__(self, bus: LocalBus, topic: str) -> None:
        self.messages: list[str] = []
        bus.subscribe(topic, self.messages.append)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def local_bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
def udp_client() -> Iterator[Callable[[], socket.socket]]:
    """Factory for loopback UDP client sockets, closed after the test."""
    socks: list[socket.socket] = []

    def _make() -> socket.socket:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.bind(("127.0.0.1", 0))
        s.settimeout(2.0)
        socks.append(s)
        return s

    yield _make
    for s in socks:
        s.close()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait


@pytest.fixture
def bus_tap(local_bus: LocalBus) -> Callable[[str], BusTap]:
    def _tap(topic: str) -> BusTap:
        return BusTap(local_bus, topic)

    return _tap
