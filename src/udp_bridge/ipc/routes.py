from __future__ import annotations

from dataclasses import dataclass, field

from .envelope import OP_PUBLISH, TYPE_STRING, Envelope

TOPIC_CHATTER = "/chatter"
TOPIC_LISTENER = "/listener"


@dataclass(frozen=True, slots=True)
class InboundRoute:
    """Wire (topic, type) accepted from the peer -> bus topic to publish on."""

    wire_topic: str
    wire_type: str
    bus_topic: str


@dataclass(frozen=True, slots=True)
class OutboundRoute:
    """Bus topic subscribed to -> wire (topic, type) sent to the peer."""

    bus_topic: str
    wire_topic: str
    wire_type: str


@dataclass(frozen=True)
class RouteTable:
    inbound: tuple[InboundRoute, ...] = ()
    outbound: tuple[OutboundRoute, ...] = ()
    _by_wire: dict[tuple[str, str], InboundRoute] = field(init=False, repr=False, compare=False)
    _by_bus: dict[str, OutboundRoute] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_wire: dict[tuple[str, str], InboundRoute] = {}
        for r in self.inbound:
            key = (str(r.wire_topic), str(r.wire_type))
            if key in by_wire:
                raise ValueError(f"duplicate inbound route: topic={key[0]} type={key[1]}")
            by_wire[key] = r

        by_bus: dict[str, OutboundRoute] = {}
        for o in self.outbound:
            if o.bus_topic in by_bus:
                raise ValueError(f"duplicate outbound route: bus_topic={o.bus_topic}")
            by_bus[str(o.bus_topic)] = o

        object.__setattr__(self, "_by_wire", by_wire)
        object.__setattr__(self, "_by_bus", by_bus)

    @classmethod
    def default(cls) -> RouteTable:
        return cls(
            inbound=(InboundRoute(wire_topic=TOPIC_CHATTER, wire_type=TYPE_STRING, bus_topic=TOPIC_CHATTER),),
            outbound=(OutboundRoute(bus_topic=TOPIC_LISTENER, wire_topic=TOPIC_LISTENER, wire_type=TYPE_STRING),),
        )

    def match_inbound(self, env: Envelope) -> InboundRoute | None:
        """Exact match on op, topic and type. Anything else is not ours."""
        if env.op != OP_PUBLISH:
            return None
        return self._by_wire.get((env.topic, env.type))

    def outbound_for(self, bus_topic: str) -> OutboundRoute | None:
        return self._by_bus.get(str(bus_topic))

    def subscribed_topics(self) -> list[str]:
        return [o.bus_topic for o in self.outbound]

    def published_topics(self) -> list[str]:
        return sorted({r.bus_topic for r in self.inbound})
