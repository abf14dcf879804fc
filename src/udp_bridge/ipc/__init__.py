from .bus import BusAdapter, BusHandler, LocalBus
from .envelope import (
    OP_PUBLISH,
    TYPE_STRING,
    DecodeError,
    Envelope,
    MalformedJson,
    MissingField,
    decode,
    encode,
    encode_envelope,
)
from .routes import TOPIC_CHATTER, TOPIC_LISTENER, InboundRoute, OutboundRoute, RouteTable

__all__ = [
    "BusAdapter",
    "BusHandler",
    "LocalBus",
    "OP_PUBLISH",
    "TYPE_STRING",
    "DecodeError",
    "Envelope",
    "MalformedJson",
    "MissingField",
    "decode",
    "encode",
    "encode_envelope",
    "TOPIC_CHATTER",
    "TOPIC_LISTENER",
    "InboundRoute",
    "OutboundRoute",
    "RouteTable",
]
