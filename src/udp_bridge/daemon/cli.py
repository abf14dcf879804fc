from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path
from typing import Any

from .bridge import STOP_TRANSPORT_ERROR, BridgeConfig, run_bridge
from .transport import DEFAULT_MAX_DATAGRAM

_LOG_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udp-bridge",
        description="Relay JSON envelopes between a UDP peer and pub/sub topics.",
    )
    parser.add_argument("--ip", default="127.0.0.1", help="Bind address.")
    parser.add_argument("--port", type=int, default=9090, help="Bind port.")
    parser.add_argument(
        "--max-datagram",
        type=int,
        default=DEFAULT_MAX_DATAGRAM,
        help="Receive buffer size in bytes; longer datagrams are truncated and dropped.",
    )

    parser.add_argument(
        "--no-dds",
        action="store_true",
        help="Disable the DDS bus (in-process bus + logging only).",
    )
    parser.add_argument(
        "--dds-domain-id",
        type=int,
        default=0,
        help="DDS domain id (CycloneDDS).",
    )

    parser.add_argument(
        "--record",
        action="store_true",
        help="Record traffic to runs/<run_id>/logs/bridge.mcap and write a run manifest.",
    )
    parser.add_argument("--runs-dir", default="runs")
    parser.add_argument(
        "--run-id",
        default=None,
        help="Explicit run id to use (otherwise generated).",
    )
    parser.add_argument("--log-level", default="INFO", choices=sorted(_LOG_LEVELS.keys()))
    return parser


def config_from_args(args: argparse.Namespace) -> BridgeConfig:
    if not 0 <= int(args.port) <= 65535:
        raise ValueError(f"port out of range: {args.port}")
    return BridgeConfig(
        ip=str(args.ip),
        port=int(args.port),
        max_datagram_size=int(args.max_datagram),
        enable_dds=not bool(args.no_dds),
        dds_domain_id=int(args.dds_domain_id),
        record=bool(args.record),
        runs_dir=Path(str(args.runs_dir)),
        run_id=str(args.run_id) if args.run_id not in (None, "") else None,
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=_LOG_LEVELS[str(args.log_level)],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    stop = threading.Event()

    def _on_signal(signum: int, frame: Any) -> None:
        logging.getLogger(__name__).info("received signal %d, stopping", signum)
        stop.set()

    previous = signal.signal(signal.SIGTERM, _on_signal)
    try:
        result = run_bridge(config, stop=stop)
    except OSError as e:
        logging.getLogger(__name__).error("could not start bridge on %s:%d: %s", config.ip, config.port, e)
        raise SystemExit(1) from e
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    if result.stop_reason == STOP_TRANSPORT_ERROR:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
