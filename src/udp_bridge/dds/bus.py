from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from cyclonedds.domain import DomainParticipant  # type: ignore[import-not-found]
from cyclonedds.pub import DataWriter  # type: ignore[import-not-found]
from cyclonedds.sub import DataReader  # type: ignore[import-not-found]
from cyclonedds.topic import Topic  # type: ignore[import-not-found]
from cyclonedds.util import duration  # type: ignore[import-not-found]

from udp_bridge.ipc.bus import BusHandler

from .qos import DEFAULT_DEPTH, string_topic_qos
from .types import StringMsg, dds_topic_name

logger = logging.getLogger(__name__)


@dataclass
class DdsBusConfig:
    domain_id: int = 0
    keep_last: int = DEFAULT_DEPTH


class DdsStringBus:
    """String pub/sub over CycloneDDS, interoperable with ROS 2 std_msgs/String.

    Satisfies the bridge's BusAdapter contract. Each subscription gets its own
    reader thread; handlers run on that thread.
    """

    def __init__(self, *, config: DdsBusConfig) -> None:
        self._cfg = config
        self._participant: DomainParticipant | None = None
        self._topics: dict[str, Topic] = {}
        self._writers: dict[str, DataWriter[StringMsg]] = {}
        self._readers: dict[str, DataReader[StringMsg]] = {}
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._lock = threading.Lock()

    @property
    def domain_id(self) -> int:
        return int(self._cfg.domain_id)

    def start(self) -> None:
        if self._participant is not None:
            raise RuntimeError("DDS bus already started")
        self._stop.clear()
        self._participant = DomainParticipant(int(self._cfg.domain_id))
        logger.info("DDS participant created (domain_id=%d)", int(self._cfg.domain_id))

    def stop(self) -> None:
        self._stop.set()
        for th in self._threads:
            th.join(timeout=1.5)

        # Let DDS entities be GC'd; CycloneDDS cleans up in __del__.
        self._threads.clear()
        self._writers.clear()
        self._readers.clear()
        self._topics.clear()
        self._participant = None

    def publish(self, topic_name: str, data: str) -> None:
        if self._participant is None:
            raise RuntimeError("DDS bus not started")

        with self._lock:
            writer = self._writers.get(topic_name)
            if writer is None:
                writer = self._create_writer(topic_name)
                self._writers[topic_name] = writer

        writer.write(StringMsg(data=str(data)))

    def subscribe(self, topic_name: str, handler: BusHandler) -> None:
        if self._participant is None:
            raise RuntimeError("DDS bus not started")

        with self._lock:
            if topic_name in self._readers:
                raise ValueError(f"already subscribed to {topic_name}")
            qos = string_topic_qos(keep_last=int(self._cfg.keep_last)).reader
            reader: DataReader[StringMsg] = DataReader(self._participant, self._topic(topic_name), qos=qos)
            self._readers[topic_name] = reader

        th = threading.Thread(
            target=self._reader_loop,
            name=f"dds-rx-{topic_name}",
            args=(topic_name, reader, handler),
            daemon=True,
        )
        th.start()
        self._threads.append(th)

    def _topic(self, topic_name: str) -> Topic:
        assert self._participant is not None
        topic = self._topics.get(topic_name)
        if topic is None:
            topic = Topic(self._participant, dds_topic_name(topic_name), StringMsg)
            self._topics[topic_name] = topic
        return topic

    def _create_writer(self, topic_name: str) -> DataWriter[StringMsg]:
        assert self._participant is not None
        qos = string_topic_qos(keep_last=int(self._cfg.keep_last)).writer
        return DataWriter(self._participant, self._topic(topic_name), qos=qos)

    def _reader_loop(self, topic_name: str, reader: DataReader[StringMsg], handler: BusHandler) -> None:
        # `take_iter` stops once timeout expires; each received sample resets it.
        while not self._stop.is_set():
            try:
                for sample in reader.take_iter(timeout=duration(seconds=1)):  # type: ignore[attr-defined]
                    if self._stop.is_set():
                        return
                    try:
                        handler(str(sample.data))
                    except Exception:
                        logger.exception("bus handler failed (topic=%s)", topic_name)
            except Exception:
                # If DDS errors, back off a bit.
                logger.debug("DDS take failed on %s", topic_name, exc_info=True)
                time.sleep(0.2)
