import json

import pytest
from mcap.reader import make_reader

from udp_bridge.daemon.bridge import STOP_TRANSPORT_ERROR, TopicBridge
from udp_bridge.ipc.envelope import decode
from udp_bridge.log.mcap_recorder import (
    CHANNEL_UDP_RX,
    CHANNEL_UDP_TX,
    OUTCOME_PUBLISH_FAILED,
    OUTCOME_PUBLISHED,
    McapRecorder,
)

PEER_A = ("10.0.0.1", 5000)
PEER_B = ("10.0.0.2", 6000)


def _recorded(path, topic):
    with open(path, "rb") as f:
        return [json.loads(m.data) for _, _, m in make_reader(f).iter_messages(topics=[topic])]


def _datagram(op="publish", topic="/chatter", data="hello", type_="std_msgs/String"):
    return json.dumps({"op": op, "topic": topic, "msg": {"data": data}, "type": type_}).encode("utf-8")


@pytest.fixture
def bridge(fake_transport, local_bus):
    b = TopicBridge(transport=fake_transport, bus=local_bus)
    b.start()
    return b


def test_chatter_envelope_is_published(bridge, fake_transport, bus_tap):
    chatter = bus_tap("/chatter")

    fake_transport.deliver(
        b'{"op":"publish","topic":"/chatter","msg":{"data":"hello"},"type":"std_msgs/String"}', PEER_A
    )

    assert chatter.messages == ["hello"]
    assert bridge.stats().published == 1


def test_listener_message_goes_to_last_peer(bridge, fake_transport, local_bus):
    fake_transport.deliver(b"not json", PEER_A)

    local_bus.publish("/listener", "world")

    assert len(fake_transport.sent) == 1
    payload, peer = fake_transport.sent[0]
    assert peer == PEER_A
    assert json.loads(payload) == {
        "op": "publish",
        "topic": "/listener",
        "msg": {"data": "world"},
        "type": "std_msgs/String",
    }


def test_other_topic_is_not_published(bridge, fake_transport, bus_tap):
    chatter = bus_tap("/chatter")
    other = bus_tap("/other")

    fake_transport.deliver(_datagram(topic="/other", data="x"), PEER_A)

    assert chatter.messages == []
    assert other.messages == []
    assert bridge.stats().unroutable == 1


def test_non_json_is_dropped_and_later_datagrams_still_work(bridge, fake_transport, bus_tap):
    chatter = bus_tap("/chatter")

    fake_transport.deliver(b"not json", PEER_A)
    fake_transport.deliver(_datagram(data="after"), PEER_A)

    assert chatter.messages == ["after"]
    stats = bridge.stats()
    assert stats.malformed == 1
    assert stats.datagrams == 2


def test_wrong_op_is_dropped(bridge, fake_transport, bus_tap):
    chatter = bus_tap("/chatter")

    fake_transport.deliver(_datagram(op="delete"), PEER_A)

    assert chatter.messages == []


@pytest.mark.parametrize(
    "payload",
    [
        b'{"op":"publish","topic":"/chatter","type":"std_msgs/String"}',
        b'{"op":"publish","topic":"/chatter","msg":{"data":1},"type":"std_msgs/String"}',
        b"[1,2,3]",
        b"",
        b"\x00\x01\x02",
        b'{"op":"publish","topic":"/chatter","msg":{"data":"\\ud800"},"type":"std_msgs/String"}',
    ],
)
def test_malformed_input_never_publishes(bridge, fake_transport, bus_tap, payload):
    chatter = bus_tap("/chatter")

    fake_transport.deliver(payload, PEER_A)

    assert chatter.messages == []
    assert bridge.stats().malformed == 1


def test_replies_follow_the_most_recent_sender(bridge, fake_transport, local_bus):
    fake_transport.deliver(_datagram(), PEER_A)
    local_bus.publish("/listener", "one")
    fake_transport.deliver(b"garbage", PEER_B)
    local_bus.publish("/listener", "two")

    assert [peer for _, peer in fake_transport.sent] == [PEER_A, PEER_B]
    assert [decode(p).data for p, _ in fake_transport.sent] == ["one", "two"]


def test_bus_message_before_any_peer_is_dropped(bridge, fake_transport, local_bus):
    local_bus.publish("/listener", "early")

    assert fake_transport.sent == []
    stats = bridge.stats()
    assert stats.send_dropped == 1
    assert stats.sent == 0


def test_chatter_publish_does_not_echo_to_peer(bridge, fake_transport):
    fake_transport.deliver(_datagram(), PEER_A)
    assert fake_transport.sent == []


def test_unrouted_bus_topic_is_ignored(bridge, fake_transport):
    fake_transport.deliver(_datagram(), PEER_A)
    bridge.on_bus_message("/nowhere", "x")

    assert fake_transport.sent == []
    assert bridge.stats().bus_unrouted == 1


class BrokenBus:
    def subscribe(self, topic_name, handler):
        pass

    def publish(self, topic_name, data):
        raise RuntimeError("bus down")


def test_bus_publish_failure_is_contained(fake_transport):
    bridge = TopicBridge(transport=fake_transport, bus=BrokenBus())
    bridge.start()

    fake_transport.deliver(_datagram(), PEER_A)

    stats = bridge.stats()
    assert stats.publish_failures == 1
    assert stats.published == 0


def test_failed_publish_is_recorded_as_failed(fake_transport, tmp_path):
    recorder = McapRecorder.create(runs_dir=tmp_path, run_id="run")
    bridge = TopicBridge(transport=fake_transport, bus=BrokenBus(), recorder=recorder)
    bridge.start()

    fake_transport.deliver(_datagram(), PEER_A)
    recorder.close()

    assert [r["outcome"] for r in _recorded(recorder.path, CHANNEL_UDP_RX)] == [OUTCOME_PUBLISH_FAILED]


def test_successful_publish_is_recorded_as_published(fake_transport, local_bus, tmp_path):
    recorder = McapRecorder.create(runs_dir=tmp_path, run_id="run")
    bridge = TopicBridge(transport=fake_transport, bus=local_bus, recorder=recorder)
    bridge.start()

    fake_transport.deliver(_datagram(), PEER_A)
    recorder.close()

    assert [r["outcome"] for r in _recorded(recorder.path, CHANNEL_UDP_RX)] == [OUTCOME_PUBLISHED]


def test_sent_datagram_is_recorded_with_the_peer_it_was_queued_for(fake_transport, local_bus, tmp_path):
    class RacingTransport(type(fake_transport)):
        """A new sender shows up right after the reply is queued."""

        def send(self, payload):
            peer = super().send(payload)
            self.peer = PEER_B
            return peer

    transport = RacingTransport()
    recorder = McapRecorder.create(runs_dir=tmp_path, run_id="run")
    bridge = TopicBridge(transport=transport, bus=local_bus, recorder=recorder)
    bridge.start()

    transport.deliver(_datagram(), PEER_A)
    local_bus.publish("/listener", "reply")
    recorder.close()

    assert [peer for _, peer in transport.sent] == [PEER_A]
    assert [r["peer"] for r in _recorded(recorder.path, CHANNEL_UDP_TX)] == ["10.0.0.1:5000"]


def test_fatal_transport_error_stops_bridge(bridge, fake_transport):
    fake_transport.on_fatal(OSError("socket closed"))

    assert bridge.wait(0)
    assert bridge.stop_reason == STOP_TRANSPORT_ERROR


def test_start_twice_is_rejected(bridge):
    with pytest.raises(RuntimeError):
        bridge.start()


def test_close_closes_transport(bridge, fake_transport):
    bridge.close()
    assert fake_transport.closed
    assert bridge.wait(0)
