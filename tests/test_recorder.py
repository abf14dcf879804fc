import json

from mcap.reader import make_reader

from udp_bridge.log.mcap_recorder import (
    CHANNEL_BUS_PUBLISH,
    CHANNEL_UDP_RX,
    CHANNEL_UDP_TX,
    OUTCOME_MALFORMED,
    OUTCOME_PUBLISHED,
    McapRecorder,
)


def _read(path):
    out = []
    with open(path, "rb") as f:
        for schema, channel, message in make_reader(f).iter_messages():
            out.append((channel.topic, schema.encoding, channel.message_encoding, json.loads(message.data)))
    return out


def test_records_traffic_as_json(tmp_path):
    rec = McapRecorder.create(runs_dir=tmp_path, run_id="run-1")
    rec.log_udp_rx(("127.0.0.1", 5000), b"\xffbad", OUTCOME_MALFORMED)
    rec.log_udp_rx(("127.0.0.1", 5000), b'{"op":"publish"}', OUTCOME_PUBLISHED)
    rec.log_bus_publish("/chatter", "hello")
    rec.log_udp_tx(("127.0.0.1", 5000), b"reply")
    rec.close()

    assert rec.path == tmp_path / "run-1" / "logs" / "bridge.mcap"
    messages = _read(rec.path)
    assert [m[0] for m in messages] == [CHANNEL_UDP_RX, CHANNEL_UDP_RX, CHANNEL_BUS_PUBLISH, CHANNEL_UDP_TX]
    assert all(m[1] == "jsonschema" and m[2] == "json" for m in messages)

    bad = messages[0][3]
    assert bad["peer"] == "127.0.0.1:5000"
    assert bad["size"] == 4
    assert bad["outcome"] == OUTCOME_MALFORMED
    assert bad["text"].endswith("bad")

    assert messages[2][3] == {"topic": "/chatter", "data": "hello"}
    assert messages[3][3]["text"] == "reply"


def test_close_is_idempotent_and_drops_late_records(tmp_path):
    rec = McapRecorder.create(runs_dir=tmp_path, run_id="run-2")
    rec.close()
    rec.close()
    rec.log_bus_publish("/chatter", "late")

    assert _read(rec.path) == []
