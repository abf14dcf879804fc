from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping


def wall_ns_to_iso8601(wall_ns: int) -> str:
    dt = datetime.fromtimestamp(int(wall_ns) / 1_000_000_000, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def write_manifest(path: Path, data: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = _dump_yaml(data)
    path.write_text(text, encoding="utf-8")


def _dump_yaml(obj: Any, *, indent: int = 0) -> str:
    """Small YAML emitter for bridge run manifests.

    Manifests stay dependency-free (no PyYAML). Supported values:
    dict / list / str / int / float / bool / None. Keys are sorted.
    """
    pad = "  " * indent

    if obj is None:
        return "null\n" if indent == 0 else "null"
    if isinstance(obj, bool):
        return ("true\n" if obj else "false\n") if indent == 0 else ("true" if obj else "false")
    if isinstance(obj, int):
        return f"{obj}\n" if indent == 0 else str(obj)
    if isinstance(obj, float):
        return f"{obj}\n" if indent == 0 else repr(obj)
    if isinstance(obj, str):
        return (f"{_quote_yaml_str(obj)}\n" if indent == 0 else _quote_yaml_str(obj))

    if isinstance(obj, list):
        if not obj:
            return "[]\n" if indent == 0 else "[]"
        lines: list[str] = []
        for item in obj:
            if _is_scalar(item):
                lines.append(f"{pad}- {_dump_yaml(item, indent=indent + 1).rstrip()}\n")
            else:
                lines.append(f"{pad}-\n")
                lines.append(_dump_yaml(item, indent=indent + 1))
        return "".join(lines)

    if isinstance(obj, dict):
        if not obj:
            return "{}\n" if indent == 0 else "{}"
        lines = []
        for k in sorted(obj.keys(), key=str):
            key = str(k)
            val = obj[k]
            if _is_scalar(val):
                lines.append(f"{pad}{key}: {_dump_yaml(val, indent=indent + 1).rstrip()}\n")
            else:
                lines.append(f"{pad}{key}:\n")
                lines.append(_dump_yaml(val, indent=indent + 1))
        return "".join(lines)

    raise TypeError(f"unsupported type for YAML manifest: {type(obj)!r}")


def _is_scalar(x: Any) -> bool:
    # Empty containers are written inline as [] / {}.
    if isinstance(x, (list, dict)):
        return not x
    return x is None or isinstance(x, (str, int, float, bool))


def _quote_yaml_str(s: str) -> str:
    # Conservative: always single-quote, escape single quotes by doubling.
    return "'" + s.replace("'", "''") + "'"


def build_manifest_start(
    *,
    run_id: str,
    start_wall_ns: int,
    ip: str,
    port: int,
    max_datagram_size: int,
    bus_backend: str,
    routes: Mapping[str, Any],
    config: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "run_id": str(run_id),
        "transport": "udp_json",
        "start_wall_ns": int(start_wall_ns),
        "start_wall": wall_ns_to_iso8601(start_wall_ns),
        "end_wall_ns": None,
        "end_wall": None,
        "ip": str(ip),
        "port": int(port),
        "max_datagram_size": int(max_datagram_size),
        "bus_backend": str(bus_backend),
        "routes": dict(routes),
        "config": dict(config) if config is not None else None,
        "stats": None,
        "stop_reason": None,
    }


def finalize_manifest(
    manifest: Mapping[str, Any],
    *,
    end_wall_ns: int,
    stats: Mapping[str, Any] | None,
    stop_reason: str,
) -> dict[str, Any]:
    out = dict(manifest)
    out["end_wall_ns"] = int(end_wall_ns)
    out["end_wall"] = wall_ns_to_iso8601(end_wall_ns)
    out["stats"] = dict(stats) if stats is not None else None
    out["stop_reason"] = str(stop_reason)
    return out
