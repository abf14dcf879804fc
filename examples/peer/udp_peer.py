"""Remote peer for the bridge: publish on /chatter, print what comes back on /listener.

    udp-bridge --no-dds &
    python examples/peer/udp_peer.py --count 3 "hello"
"""

from __future__ import annotations

import argparse
import socket
import threading
import time

from udp_bridge.ipc import DecodeError, decode, encode


def _print_replies(sock: socket.socket, stop: threading.Event) -> None:
    while not stop.is_set():
        try:
            data, addr = sock.recvfrom(65535)
        except TimeoutError:
            continue
        except OSError:
            return
        try:
            env = decode(data)
        except DecodeError as e:
            print(f"[{addr[0]}:{addr[1]}] undecodable reply: {e}")
            continue
        print(f"[{addr[0]}:{addr[1]}] {env.topic} ({env.type}): {env.data}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("text", nargs="?", default="hello")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=9090)
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--period", type=float, default=0.5)
    parser.add_argument("--linger", type=float, default=2.0, help="Seconds to wait for replies after sending.")
    args = parser.parse_args(argv)

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("", 0))
    sock.settimeout(0.2)
    stop = threading.Event()
    rx = threading.Thread(target=_print_replies, args=(sock, stop), name="peer-rx", daemon=True)
    rx.start()

    target = (str(args.host), int(args.port))
    try:
        for i in range(int(args.count)):
            text = str(args.text) if int(args.count) == 1 else f"{args.text} {i}"
            sock.sendto(encode("/chatter", "std_msgs/String", text), target)
            time.sleep(float(args.period))
        time.sleep(float(args.linger))
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        rx.join(timeout=1.0)
        sock.close()


if __name__ == "__main__":
    main()
