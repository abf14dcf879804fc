from __future__ import annotations

import functools
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from udp_bridge.ipc.bus import BusAdapter, LocalBus
from udp_bridge.ipc.envelope import DecodeError, decode, encode
from udp_bridge.ipc.routes import RouteTable
from udp_bridge.log.mcap_recorder import (
    OUTCOME_MALFORMED,
    OUTCOME_PUBLISH_FAILED,
    OUTCOME_PUBLISHED,
    OUTCOME_UNROUTABLE,
    McapRecorder,
)
from udp_bridge.run import build_manifest_start, finalize_manifest, write_manifest

from .transport import DEFAULT_MAX_DATAGRAM, DatagramHandler, FatalHandler, SocketAddress, UdpTransport

logger = logging.getLogger(__name__)

STOP_REQUESTED = "requested"
STOP_INTERRUPTED = "interrupted"
STOP_TRANSPORT_ERROR = "transport_error"


class DatagramTransport(Protocol):
    @property
    def peer(self) -> SocketAddress | None: ...

    def start(self, *, on_datagram: DatagramHandler, on_fatal: FatalHandler | None = None) -> None: ...
    def send(self, payload: bytes) -> SocketAddress | None: ...
    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    ip: str = "127.0.0.1"
    port: int = 9090
    max_datagram_size: int = DEFAULT_MAX_DATAGRAM
    enable_dds: bool = True
    dds_domain_id: int = 0
    record: bool = False
    runs_dir: Path = Path("runs")
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": str(self.ip),
            "port": int(self.port),
            "max_datagram_size": int(self.max_datagram_size),
            "enable_dds": bool(self.enable_dds),
            "dds_domain_id": int(self.dds_domain_id),
            "record": bool(self.record),
            "runs_dir": str(self.runs_dir),
            "run_id": str(self.run_id) if self.run_id is not None else None,
        }


@dataclass(slots=True)
class BridgeStats:
    datagrams: int = 0
    malformed: int = 0
    unroutable: int = 0
    published: int = 0
    publish_failures: int = 0
    bus_messages: int = 0
    bus_unrouted: int = 0
    sent: int = 0
    send_dropped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "datagrams": int(self.datagrams),
            "malformed": int(self.malformed),
            "unroutable": int(self.unroutable),
            "published": int(self.published),
            "publish_failures": int(self.publish_failures),
            "bus_messages": int(self.bus_messages),
            "bus_unrouted": int(self.bus_unrouted),
            "sent": int(self.sent),
            "send_dropped": int(self.send_dropped),
        }


class TopicBridge:
    """Relay between one UDP peer and the bus.

    Inbound: datagram -> decode -> route match -> bus publish.
    Outbound: bus message on a subscribed topic -> encode -> send to last peer.
    Nothing malformed or unknown coming off the network is ever raised.
    """

    def __init__(
        self,
        *,
        transport: DatagramTransport,
        bus: BusAdapter,
        routes: RouteTable | None = None,
        recorder: McapRecorder | None = None,
    ) -> None:
        self._transport = transport
        self._bus = bus
        self._routes = routes if routes is not None else RouteTable.default()
        self._recorder = recorder

        self._stats_lock = threading.Lock()
        self._stats = BridgeStats()

        self._stopped = threading.Event()
        self._stop_reason: str | None = None
        self._started = False

    @property
    def routes(self) -> RouteTable:
        return self._routes

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    def start(self) -> None:
        if self._started:
            raise RuntimeError("bridge already started")
        self._started = True

        for topic in self._routes.subscribed_topics():
            self._bus.subscribe(topic, functools.partial(self.on_bus_message, topic))
            logger.info("subscribed to bus topic %s", topic)

        self._transport.start(on_datagram=self.on_datagram, on_fatal=self._on_transport_fatal)

    def request_stop(self, reason: str = STOP_REQUESTED) -> None:
        if self._stop_reason is None:
            self._stop_reason = str(reason)
        self._stopped.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    def close(self) -> None:
        self.request_stop()
        self._transport.close()

    def stats(self) -> BridgeStats:
        with self._stats_lock:
            return BridgeStats(**self._stats.to_dict())

    def on_datagram(self, data: bytes, addr: SocketAddress | None = None) -> None:
        with self._stats_lock:
            self._stats.datagrams += 1

        try:
            env = decode(data)
        except DecodeError as e:
            with self._stats_lock:
                self._stats.malformed += 1
            logger.debug("dropping malformed datagram (%d bytes): %s", len(data), e)
            self._record_rx(addr, data, OUTCOME_MALFORMED)
            return

        route = self._routes.match_inbound(env)
        if route is None:
            with self._stats_lock:
                self._stats.unroutable += 1
            logger.debug("dropping unroutable envelope op=%s topic=%s type=%s", env.op, env.topic, env.type)
            self._record_rx(addr, data, OUTCOME_UNROUTABLE)
            return

        logger.info("received: [%s]", env.data)
        try:
            self._bus.publish(route.bus_topic, env.data)
        except Exception as e:
            with self._stats_lock:
                self._stats.publish_failures += 1
            logger.warning("bus publish failed (topic=%s): %s", route.bus_topic, e)
            self._record_rx(addr, data, OUTCOME_PUBLISH_FAILED)
            return

        with self._stats_lock:
            self._stats.published += 1
        self._record_rx(addr, data, OUTCOME_PUBLISHED)
        if self._recorder is not None:
            self._recorder.log_bus_publish(route.bus_topic, env.data)

    def on_bus_message(self, topic: str, data: str) -> None:
        with self._stats_lock:
            self._stats.bus_messages += 1

        route = self._routes.outbound_for(topic)
        if route is None:
            with self._stats_lock:
                self._stats.bus_unrouted += 1
            logger.debug("no outbound route for bus topic %s", topic)
            return

        logger.info("heard: [%s]", data)
        payload = encode(route.wire_topic, route.wire_type, data)
        peer = self._transport.send(payload)
        if peer is None:
            with self._stats_lock:
                self._stats.send_dropped += 1
            return

        with self._stats_lock:
            self._stats.sent += 1
        if self._recorder is not None:
            self._recorder.log_udp_tx(peer, payload)

    def _record_rx(self, addr: SocketAddress | None, data: bytes, outcome: str) -> None:
        if self._recorder is not None:
            self._recorder.log_udp_rx(addr, data, outcome)

    def _on_transport_fatal(self, exc: BaseException) -> None:
        logger.error("udp transport stopped: %s", exc)
        self.request_stop(STOP_TRANSPORT_ERROR)


@dataclass(frozen=True, slots=True)
class BridgeRunResult:
    run_id: str
    stop_reason: str
    bus_backend: str
    stats: dict[str, Any] = field(default_factory=dict)


def _open_bus(config: BridgeConfig) -> tuple[BusAdapter, str, Callable[[], None] | None]:
    """Return (bus, backend name, closer). Falls back to an in-process bus."""
    if config.enable_dds:
        try:
            from udp_bridge.dds.bus import DdsBusConfig, DdsStringBus  # local import to keep DDS optional

            dds_bus = DdsStringBus(config=DdsBusConfig(domain_id=int(config.dds_domain_id)))
            dds_bus.start()
            return dds_bus, "dds", dds_bus.stop
        except Exception as e:
            # Allow local-only runs if the DDS backend is unavailable.
            logger.error("DDS enabled but could not be initialized (using local bus): %s", e)

    return LocalBus(), "local", None


def run_bridge(
    config: BridgeConfig,
    *,
    bus: BusAdapter | None = None,
    routes: RouteTable | None = None,
    stop: threading.Event | None = None,
) -> BridgeRunResult:
    """Run the bridge until stopped.

    Stops on `stop` being set, KeyboardInterrupt, or a fatal socket error.
    A host that already owns a bus passes it as `bus`; otherwise DDS (or the
    in-process fallback) is used.
    """
    run_id = str(config.run_id) if config.run_id not in (None, "") else str(uuid.uuid4())

    bus_closer: Callable[[], None] | None = None
    recorder: McapRecorder | None = None
    manifest: dict[str, Any] | None = None
    manifest_path = Path(config.runs_dir) / run_id / "manifest.yaml"
    transport: UdpTransport | None = None
    bridge: TopicBridge | None = None
    routes = routes if routes is not None else RouteTable.default()

    try:
        if bus is not None:
            bus_backend = "external"
        else:
            bus, bus_backend, bus_closer = _open_bus(config)

        if config.record:
            recorder = McapRecorder.create(runs_dir=config.runs_dir, run_id=run_id)
            logger.info("run_id=%s | writing mcap=%s", run_id, recorder.path)
            manifest = build_manifest_start(
                run_id=run_id,
                start_wall_ns=int(time.time_ns()),
                ip=config.ip,
                port=int(config.port),
                max_datagram_size=int(config.max_datagram_size),
                bus_backend=bus_backend,
                routes={
                    "inbound": [
                        {"wire_topic": r.wire_topic, "wire_type": r.wire_type, "bus_topic": r.bus_topic}
                        for r in routes.inbound
                    ],
                    "outbound": [
                        {"bus_topic": o.bus_topic, "wire_topic": o.wire_topic, "wire_type": o.wire_type}
                        for o in routes.outbound
                    ],
                },
                config=config.to_dict(),
            )
            write_manifest(manifest_path, manifest)
            logger.info("run_id=%s | wrote manifest=%s", run_id, manifest_path)

        transport = UdpTransport(
            ip=config.ip,
            port=int(config.port),
            max_datagram_size=int(config.max_datagram_size),
        )
        bridge = TopicBridge(transport=transport, bus=bus, routes=routes, recorder=recorder)
        bridge.start()
        logger.info("bridge running (run_id=%s bus=%s)", run_id, bus_backend)
        try:
            while not bridge.wait(0.2):
                if stop is not None and stop.is_set():
                    bridge.request_stop(STOP_REQUESTED)
        except KeyboardInterrupt:
            bridge.request_stop(STOP_INTERRUPTED)
    finally:
        # Teardown runs in reverse order of setup, whichever step failed.
        try:
            if bridge is not None:
                bridge.close()
            elif transport is not None:
                transport.close()
            if bridge is not None and transport is not None and manifest is not None:
                final = finalize_manifest(
                    manifest,
                    end_wall_ns=int(time.time_ns()),
                    stats={
                        "bridge": bridge.stats().to_dict(),
                        "transport": transport.stats().to_dict(),
                    },
                    stop_reason=bridge.stop_reason or STOP_REQUESTED,
                )
                write_manifest(manifest_path, final)
        finally:
            try:
                if recorder is not None:
                    recorder.close()
            finally:
                if bus_closer is not None:
                    bus_closer()

    assert bridge is not None and transport is not None
    stats: dict[str, Any] = {
        "bridge": bridge.stats().to_dict(),
        "transport": transport.stats().to_dict(),
    }
    stop_reason = bridge.stop_reason or STOP_REQUESTED
    logger.info("bridge stopped (run_id=%s reason=%s)", run_id, stop_reason)
    return BridgeRunResult(run_id=run_id, stop_reason=stop_reason, bus_backend=bus_backend, stats=stats)
