from __future__ import annotations

from dataclasses import dataclass

from cyclonedds.core import Policy, Qos  # type: ignore[import-not-found]
from cyclonedds.util import duration  # type: ignore[import-not-found]

# KeepLast depth shared by publishers and subscribers.
DEFAULT_DEPTH = 10


@dataclass(frozen=True)
class TopicQos:
    writer: Qos
    reader: Qos


def _writer_qos_reliable(*, keep_last: int, max_block_s: float) -> Qos:
    return Qos(
        Policy.Reliability.Reliable(max_blocking_time=duration(seconds=max_block_s)),
        Policy.History.KeepLast(depth=int(keep_last)),
        Policy.Durability.Volatile,
    )


def _reader_qos_from_writer(writer_qos: Qos) -> Qos:
    """Derive a reader QoS from the writer QoS.

    IgnoreLocal keeps the bridge from hearing its own samples when a route
    publishes and subscribes the same topic. Not every CycloneDDS version
    exposes it.
    """
    ignore_local = getattr(getattr(Policy, "IgnoreLocal", None), "Participant", None)
    if ignore_local is None:
        return Qos(base=writer_qos)
    return Qos(ignore_local, base=writer_qos)


def string_topic_qos(*, keep_last: int = DEFAULT_DEPTH, max_block_s: float = 0.1) -> TopicQos:
    """Reliable keep-last QoS matching the ROS 2 default profile."""
    writer = _writer_qos_reliable(keep_last=keep_last, max_block_s=max_block_s)
    return TopicQos(writer=writer, reader=_reader_qos_from_writer(writer))
