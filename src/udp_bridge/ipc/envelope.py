from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, cast

OP_PUBLISH = "publish"
TYPE_STRING = "std_msgs/String"

# Wire key holding the payload mapping.
_PAYLOAD_KEY = "msg"


class DecodeError(ValueError):
    """A datagram could not be turned into an Envelope."""


class MalformedJson(DecodeError):
    pass


class MissingField(DecodeError):
    def __init__(self, field: str) -> None:
        super().__init__(f"missing {field}")
        self.field = field


@dataclass(frozen=True, slots=True)
class Envelope:
    op: str
    topic: str
    type: str
    data: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "topic": self.topic,
            _PAYLOAD_KEY: {"data": self.data},
            "type": self.type,
        }


def encode(topic: str, type_: str, data: str) -> bytes:
    """Serialize a publish envelope as compact UTF-8 JSON."""
    env = Envelope(op=OP_PUBLISH, topic=str(topic), type=str(type_), data=str(data))
    return encode_envelope(env)


def encode_envelope(env: Envelope) -> bytes:
    wire = env.to_wire()
    text = json.dumps(wire, separators=(",", ":"), ensure_ascii=False)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError:
        # Lone surrogates have no UTF-8 form; JSON \u escapes still carry them.
        return json.dumps(wire, separators=(",", ":")).encode("ascii")


def decode(payload: bytes) -> Envelope:
    """Parse one datagram into an Envelope.

    Raises:
      - MalformedJson if the bytes are not UTF-8 JSON text, or a field holds
        escaped lone surrogates
      - MissingField if a required field is absent or has the wrong JSON type
    """
    try:
        text = bytes(payload).decode("utf-8")
        parsed: Any = json.loads(text)
    except ValueError as e:
        # UnicodeDecodeError, JSONDecodeError and int digit limits all land here.
        raise MalformedJson(f"not valid JSON: {e}") from e
    except RecursionError as e:
        raise MalformedJson("JSON nesting too deep") from e

    if not isinstance(parsed, dict):
        raise MissingField("op")
    obj = cast(Mapping[str, object], parsed)

    op = _as_str(obj, "op")
    topic = _as_str(obj, "topic")
    type_ = _as_str(obj, "type")

    payload_obj = obj.get(_PAYLOAD_KEY)
    if not isinstance(payload_obj, dict):
        raise MissingField(_PAYLOAD_KEY)
    data = _as_str(cast(Mapping[str, object], payload_obj), "data", prefix=f"{_PAYLOAD_KEY}.")

    return Envelope(op=op, topic=topic, type=type_, data=data)


def _as_str(obj: Mapping[str, object], key: str, *, prefix: str = "") -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise MissingField(prefix + key)
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise MalformedJson(f"{prefix}{key} is not valid unicode text") from e
    return value
