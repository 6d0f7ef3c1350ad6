from __future__ import annotations

import argparse
import logging
import os
import sys

from .config import (
    DEFAULT_GRACE,
    DEFAULT_KNOCK_PORTS,
    DEFAULT_KNOCK_SEQUENCE,
    DEFAULT_LOG_PREFIX,
    DEFAULT_PROTECTED_PORT,
    DEFAULT_PROTOCOL,
    DEFAULT_WATCH_FILE,
    KnockConfig,
)
from .daemon import KnockDaemon
from .dispatcher import DEFAULT_MAX_WORKERS, DEFAULT_RETRIES
from .firewall import CHAIN, FirewallError
from .logger import setup_logging
from .ports import parse_ports, parse_sequence
from .tail import DEFAULT_POLL_INTERVAL


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Port knocking daemon: opens a port for hosts that knock the right sequence, "
                    "using iptables LOG entries as the knock source",
    )
    p.add_argument("trusted", nargs="*", help="Addresses/CIDRs allowed to the protected port from the start")
    p.add_argument("--protected-port", type=int, default=DEFAULT_PROTECTED_PORT,
                   help=f"Port to unlock (default: {DEFAULT_PROTECTED_PORT})")
    p.add_argument("--protocol", choices=["tcp", "udp"], default=DEFAULT_PROTOCOL)
    p.add_argument("--knock-ports", default=DEFAULT_KNOCK_PORTS,
                   help=f"Ports to log: 2000-2010 or 2000,2001 or mixed (default: {DEFAULT_KNOCK_PORTS})")
    p.add_argument("--sequence", default=",".join(str(x) for x in DEFAULT_KNOCK_SEQUENCE),
                   help="Comma-separated knock ports, in order")
    p.add_argument("--watch", default=DEFAULT_WATCH_FILE,
                   help=f"Log file receiving the iptables LOG entries (default: {DEFAULT_WATCH_FILE})")
    p.add_argument("--log-prefix", default=DEFAULT_LOG_PREFIX, help="iptables LOG prefix to look for")
    p.add_argument("--chain", default=CHAIN, help=f"Name of the dedicated chain (default: {CHAIN})")
    p.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS,
                   help=f"Knocks evaluated concurrently (default: {DEFAULT_MAX_WORKERS})")
    p.add_argument("--grace", type=float, default=DEFAULT_GRACE,
                   help="Seconds workers get to finish on shutdown")
    p.add_argument("--window", type=float, default=None,
                   help="Seconds allowed to complete a sequence (default: no limit)")
    p.add_argument("--retries", type=int, default=DEFAULT_RETRIES, help="Attempts per allow rule")
    p.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL)
    p.add_argument("--log-file", help="Also write the daemon's own log here")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def config_from_args(args: argparse.Namespace) -> KnockConfig:
    return KnockConfig(
        sequence=tuple(parse_sequence(args.sequence)),
        knock_ports=tuple(parse_ports(args.knock_ports)),
        protected_port=args.protected_port,
        protocol=args.protocol,
        watch_file=args.watch,
        log_prefix=args.log_prefix,
        chain=args.chain,
        max_workers=args.max_workers,
        grace=args.grace,
        window=args.window,
        retries=args.retries,
        poll_interval=args.poll_interval,
        trusted=tuple(args.trusted),
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    if hasattr(os, "geteuid") and os.geteuid() != 0:
        logging.warning("Not running as root; iptables calls will likely fail")

    daemon = KnockDaemon(cfg)
    try:
        daemon.start()
    except FirewallError as e:
        print(f"Unable to install firewall rules: {e}", file=sys.stderr)
        return 1
    # chain left behind: exit, but not cleanly
    return 0 if daemon.chain_removed else 2
