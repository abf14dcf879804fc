from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Protocol, Self, cast

CHANNEL_UDP_RX = "udp/rx"
CHANNEL_UDP_TX = "udp/tx"
CHANNEL_BUS_PUBLISH = "bus/publish"

# Outcomes recorded for each inbound datagram.
OUTCOME_PUBLISHED = "published"
OUTCOME_MALFORMED = "malformed"
OUTCOME_UNROUTABLE = "unroutable"
OUTCOME_PUBLISH_FAILED = "publish_failed"

_DATAGRAM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "peer": {"type": "string"},
        "size": {"type": "integer"},
        "text": {"type": "string"},
        "outcome": {"type": "string"},
    },
    "required": ["peer", "size", "text"],
}

_BUS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "topic": {"type": "string"},
        "data": {"type": "string"},
    },
    "required": ["topic", "data"],
}


class _McapWriter(Protocol):
    def start(self) -> None: ...
    def finish(self) -> None: ...

    def register_schema(self, *, name: str, encoding: object, data: bytes) -> int: ...

    def register_channel(
        self,
        *,
        topic: str,
        message_encoding: object,
        schema_id: int,
        metadata: dict[str, str],
    ) -> int: ...

    def add_message(
        self,
        channel_id: int,
        *,
        log_time: int,
        publish_time: int,
        data: bytes,
        sequence: int,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class _ChannelIds:
    udp_rx: int
    udp_tx: int
    bus_publish: int


def _format_peer(peer: tuple[str, int] | None) -> str:
    if peer is None:
        return ""
    return f"{peer[0]}:{peer[1]}"


class McapRecorder:
    """Record bridge traffic to an MCAP file as JSON messages.

    Datagram payloads are stored as text (invalid UTF-8 replaced) so malformed
    input is still inspectable.
    """

    _path: Path
    _writer: _McapWriter
    _file: BinaryIO
    _channels: _ChannelIds
    _sequences: dict[int, int]
    _closed: bool

    def __init__(self, *, path: Path, writer: _McapWriter, file: BinaryIO, channels: _ChannelIds) -> None:
        self._path = path
        self._writer = writer
        self._file = file
        self._channels = channels
        self._sequences = {}
        self._lock = threading.Lock()
        self._closed = False

        # Wall-clock-like timestamps that never go backward.
        self._wall0 = int(time.time_ns())
        self._mono0 = int(time.monotonic_ns())

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    def create(cls, *, runs_dir: str | Path, run_id: str, name: str = "bridge") -> Self:
        # mcap does not ship with type hints today; keep the boundary here and cast to a local Protocol.
        from mcap.well_known import MessageEncoding, SchemaEncoding  # type: ignore[import-untyped]
        from mcap.writer import Writer  # type: ignore[import-untyped]

        logs_dir = Path(runs_dir) / run_id / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        path = logs_dir / f"{name}.mcap"
        file = open(path, "wb")

        writer: _McapWriter = cast(_McapWriter, Writer(file))
        writer.start()

        datagram_schema_id = writer.register_schema(
            name="udp_bridge.Datagram",
            encoding=SchemaEncoding.JSONSchema,
            data=json.dumps(_DATAGRAM_SCHEMA).encode("utf-8"),
        )
        bus_schema_id = writer.register_schema(
            name="udp_bridge.BusMessage",
            encoding=SchemaEncoding.JSONSchema,
            data=json.dumps(_BUS_SCHEMA).encode("utf-8"),
        )

        metadata = {"run_id": str(run_id)}
        channels = _ChannelIds(
            udp_rx=writer.register_channel(
                topic=CHANNEL_UDP_RX,
                message_encoding=MessageEncoding.JSON,
                schema_id=datagram_schema_id,
                metadata=metadata,
            ),
            udp_tx=writer.register_channel(
                topic=CHANNEL_UDP_TX,
                message_encoding=MessageEncoding.JSON,
                schema_id=datagram_schema_id,
                metadata=metadata,
            ),
            bus_publish=writer.register_channel(
                topic=CHANNEL_BUS_PUBLISH,
                message_encoding=MessageEncoding.JSON,
                schema_id=bus_schema_id,
                metadata=metadata,
            ),
        )
        return cls(path=path, writer=writer, file=file, channels=channels)

    def now_wall_ns(self) -> int:
        return int(self._wall0 + (int(time.monotonic_ns()) - self._mono0))

    def log_udp_rx(self, peer: tuple[str, int] | None, payload: bytes, outcome: str) -> None:
        self._add(
            self._channels.udp_rx,
            {
                "peer": _format_peer(peer),
                "size": len(payload),
                "text": bytes(payload).decode("utf-8", errors="replace"),
                "outcome": str(outcome),
            },
        )

    def log_udp_tx(self, peer: tuple[str, int] | None, payload: bytes) -> None:
        self._add(
            self._channels.udp_tx,
            {
                "peer": _format_peer(peer),
                "size": len(payload),
                "text": bytes(payload).decode("utf-8", errors="replace"),
            },
        )

    def log_bus_publish(self, topic: str, data: str) -> None:
        self._add(self._channels.bus_publish, {"topic": str(topic), "data": str(data)})

    def _add(self, channel_id: int, record: dict[str, Any]) -> None:
        data = json.dumps(record, ensure_ascii=False).encode("utf-8")
        with self._lock:
            if self._closed:
                return
            seq = (self._sequences.get(channel_id, 0) + 1) & 0xFFFFFFFF
            self._sequences[channel_id] = seq
            now = self.now_wall_ns()
            self._writer.add_message(
                channel_id,
                log_time=now,
                publish_time=now,
                data=data,
                sequence=seq,
            )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            try:
                self._writer.finish()
            finally:
                try:
                    self._file.close()
                finally:
                    self._closed = True

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass
