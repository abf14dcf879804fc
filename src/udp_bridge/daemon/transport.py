from __future__ import annotations

import errno
import logging
import queue
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SocketAddress = tuple[str, int]
DatagramHandler = Callable[[bytes, SocketAddress], None]
FatalHandler = Callable[[BaseException], None]

# Default receive buffer; longer datagrams are truncated by the OS.
DEFAULT_MAX_DATAGRAM = 1024

# Poll interval used only to notice shutdown.
_RX_POLL_S = 0.2

# recvfrom() errors after which the receive is simply re-issued.
# ECONNREFUSED/ECONNRESET are ICMP feedback from an earlier sendto().
# EMSGSIZE is how some platforms report a datagram longer than the buffer.
_RECOVERABLE_RX_ERRNOS: frozenset[int] = frozenset(
    {
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        errno.EINTR,
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.EMSGSIZE,
        getattr(errno, "WSAEMSGSIZE", errno.EMSGSIZE),
    }
)

_STOP = object()


@dataclass(slots=True)
class TransportStats:
    rx_datagrams: int = 0
    rx_bytes: int = 0
    rx_errors: int = 0
    tx_datagrams: int = 0
    tx_bytes: int = 0
    tx_failures: int = 0
    tx_dropped_no_peer: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "rx_datagrams": int(self.rx_datagrams),
            "rx_bytes": int(self.rx_bytes),
            "rx_errors": int(self.rx_errors),
            "tx_datagrams": int(self.tx_datagrams),
            "tx_bytes": int(self.tx_bytes),
            "tx_failures": int(self.tx_failures),
            "tx_dropped_no_peer": int(self.tx_dropped_no_peer),
        }


def _bind(ip: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((ip, int(port)))
    sock.settimeout(_RX_POLL_S)
    return sock


class UdpTransport:
    """One bound UDP socket with a receive thread and a send thread.

    The only shared state is the peer endpoint: the address of whoever sent the
    most recent datagram. Replies always go there.
    """

    def __init__(
        self,
        *,
        ip: str = "127.0.0.1",
        port: int = 9090,
        max_datagram_size: int = DEFAULT_MAX_DATAGRAM,
    ) -> None:
        if int(max_datagram_size) <= 0:
            raise ValueError("max_datagram_size must be positive")
        self._ip = str(ip)
        self._port = int(port)
        self._max_datagram = int(max_datagram_size)

        self._sock: socket.socket | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._tx_queue: queue.SimpleQueue[Any] = queue.SimpleQueue()

        self._peer_lock = threading.Lock()
        self._peer: SocketAddress | None = None

        self._stats_lock = threading.Lock()
        self._stats = TransportStats()

        self._on_fatal: FatalHandler | None = None
        self._fatal_error: BaseException | None = None

    @property
    def peer(self) -> SocketAddress | None:
        with self._peer_lock:
            return self._peer

    @property
    def local_address(self) -> SocketAddress:
        if self._sock is None:
            raise RuntimeError("transport not started")
        host, port = self._sock.getsockname()[:2]
        return str(host), int(port)

    @property
    def fatal_error(self) -> BaseException | None:
        return self._fatal_error

    @property
    def running(self) -> bool:
        return self._sock is not None and not self._stop.is_set()

    def start(self, *, on_datagram: DatagramHandler, on_fatal: FatalHandler | None = None) -> None:
        if self._sock is not None:
            raise RuntimeError("transport already started")

        self._stop.clear()
        self._tx_queue = queue.SimpleQueue()
        self._on_fatal = on_fatal
        self._sock = _bind(self._ip, self._port)
        logger.info("listening on udp %s:%d", *self.local_address)

        rx = threading.Thread(target=self._rx_loop, name="udp-rx", args=(on_datagram,), daemon=True)
        tx = threading.Thread(target=self._tx_loop, name="udp-tx", daemon=True)
        self._threads = [rx, tx]
        for t in self._threads:
            t.start()

    def send(self, payload: bytes) -> SocketAddress | None:
        """Queue `payload` for the current peer and return that peer.

        Returns None (and drops the payload) if no datagram has been received yet
        or the transport is not running.
        """
        peer = self.peer
        if peer is None:
            with self._stats_lock:
                self._stats.tx_dropped_no_peer += 1
            logger.debug("no peer yet; dropping %d byte datagram", len(payload))
            return None
        if self._stop.is_set() or self._sock is None:
            logger.debug("transport not running; dropping %d byte datagram", len(payload))
            return None

        self._tx_queue.put((bytes(payload), peer))
        return peer

    def close(self) -> None:
        if self._stop.is_set() and self._sock is None:
            return
        self._stop.set()
        self._tx_queue.put(_STOP)

        for t in self._threads:
            if t is threading.current_thread():
                continue
            t.join(timeout=1.0)
        self._threads.clear()

        sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def stats(self) -> TransportStats:
        with self._stats_lock:
            return TransportStats(**self._stats.to_dict())

    def _set_peer(self, addr: SocketAddress) -> None:
        with self._peer_lock:
            self._peer = addr

    def _rx_loop(self, on_datagram: DatagramHandler) -> None:
        sock = self._sock
        assert sock is not None

        # One recvfrom() outstanding at a time; re-issued after each completion.
        while not self._stop.is_set():
            try:
                data, addr = sock.recvfrom(self._max_datagram)
            except TimeoutError:
                continue
            except OSError as e:
                if self._stop.is_set():
                    return
                if e.errno in _RECOVERABLE_RX_ERRNOS:
                    with self._stats_lock:
                        self._stats.rx_errors += 1
                    logger.debug("recoverable receive error: %s", e)
                    continue
                self._fail(e)
                return

            peer = (str(addr[0]), int(addr[1]))
            self._set_peer(peer)
            with self._stats_lock:
                self._stats.rx_datagrams += 1
                self._stats.rx_bytes += len(data)

            try:
                on_datagram(data, peer)
            except Exception:
                logger.exception("datagram handler failed (peer=%s:%s)", peer[0], peer[1])

    def _tx_loop(self) -> None:
        while True:
            item = self._tx_queue.get()
            if item is _STOP or self._stop.is_set():
                return
            payload, peer = item
            sock = self._sock
            if sock is None:
                return
            try:
                sent = sock.sendto(payload, peer)
            except OSError as e:
                with self._stats_lock:
                    self._stats.tx_failures += 1
                logger.warning("error sending udp packet to %s:%s: %s", peer[0], peer[1], e)
                continue

            with self._stats_lock:
                self._stats.tx_datagrams += 1
                self._stats.tx_bytes += int(sent)
            logger.info("sent udp packet: %d bytes", int(sent))

    def _fail(self, exc: BaseException) -> None:
        self._fatal_error = exc
        logger.error("error receiving udp packet, receive loop stopped: %s", exc)
        self._stop.set()
        self._tx_queue.put(_STOP)
        if self._on_fatal is not None:
            try:
                self._on_fatal(exc)
            except Exception:
                logger.exception("fatal-error callback failed")
