from .manifest import (
    build_manifest_start,
    finalize_manifest,
    wall_ns_to_iso8601,
    write_manifest,
)

__all__ = [
    "wall_ns_to_iso8601",
    "write_manifest",
    "build_manifest_start",
    "finalize_manifest",
]
