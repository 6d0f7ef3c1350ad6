"""
Sends the knock sequence to a host running the daemon, then optionally
checks whether the protected port became reachable.

Knocks are plain TCP connection attempts by default. With --raw each knock
is a single SYN built with scapy (needs root / CAP_NET_RAW), which leaves
no half-open sockets behind and is what the LOG rule sees either way.
"""

from __future__ import annotations

import argparse
import socket
import time
from typing import Sequence

from scapy.all import IP, TCP, send

from .config import DEFAULT_KNOCK_SEQUENCE, DEFAULT_PROTECTED_PORT
from .ports import parse_sequence

DEFAULT_DELAY = 0.3


def send_knock(target: str, port: int, timeout: float = 0.5) -> None:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect((target, port))
    except OSError:
        # We only care that a connection attempt happened.
        pass
    finally:
        sock.close()


def send_raw_knock(target: str, port: int) -> None:
    send(IP(dst=target) / TCP(dport=port, flags="S"), verbose=False)


def perform_knock_sequence(target: str, sequence: Sequence[int], delay: float, raw: bool = False) -> None:
    for p in sequence:
        if raw:
            send_raw_knock(target, p)
        else:
            send_knock(target, p)
        time.sleep(delay)


def check_protected_port(target: str, protected_port: int) -> bool:
    try:
        with socket.create_connection((target, protected_port), timeout=2.0):
            print(f"[+] Connected to protected port {protected_port}")
            return True
    except OSError:
        print(f"[-] Could not connect to protected port {protected_port}")
        return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Port knocking client")
    parser.add_argument("--target", required=True, help="Target host or IP")
    parser.add_argument(
        "--sequence",
        default=",".join(str(port) for port in DEFAULT_KNOCK_SEQUENCE),
        help="Comma-separated knock ports",
    )
    parser.add_argument("--protected-port", type=int, default=DEFAULT_PROTECTED_PORT)
    parser.add_argument("--delay", type=float, default=DEFAULT_DELAY)
    parser.add_argument("--raw", action="store_true", help="Send bare SYN packets with scapy")
    parser.add_argument("--check", action="store_true")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        sequence = parse_sequence(args.sequence)
    except ValueError as e:
        parser.error(str(e))

    perform_knock_sequence(args.target, sequence, args.delay, raw=args.raw)

    if args.check:
        return 0 if check_protected_port(args.target, args.protected_port) else 1
    return 0
