from dataclasses import dataclass

from cyclonedds.idl import IdlStruct  # type: ignore[import-not-found]

# ROS 2 names DDS topics "rt/<name>" and types "<pkg>::msg::dds_::<Type>_".
ROS_TOPIC_PREFIX = "rt"
STRING_TYPENAME = "std_msgs::msg::dds_::String_"


@dataclass
class StringMsg(IdlStruct, typename=STRING_TYPENAME):
    """Wire-compatible with ROS 2 std_msgs/msg/String."""
    # IMPORTANT: no `from __future__ import annotations` in this file.
    # CycloneDDS needs the actual typing objects here, not stringified annotations.
    data: str


def dds_topic_name(bus_topic: str) -> str:
    """Map a ROS-style topic ("/chatter") to its DDS topic name ("rt/chatter")."""
    name = str(bus_topic).strip("/")
    if not name:
        raise ValueError(f"invalid bus topic: {bus_topic!r}")
    return f"{ROS_TOPIC_PREFIX}/{name}"
