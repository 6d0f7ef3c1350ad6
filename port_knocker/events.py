"""
Turns iptables LOG lines into knock events.

A kernel log entry for a logged knock looks like:

    Oct 18 20:17:30 host kernel: PortKnocker IN=eth0 OUT= MAC=...
        SRC=10.0.0.5 DST=10.0.0.1 LEN=60 ... PROTO=TCP SPT=51515 DPT=2000 WINDOW=...

Most lines in the watched file are unrelated and are skipped silently.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from typing import Optional

from .models import KnockEvent

logger = logging.getLogger("Events")

KNOCK_RE = re.compile(r"\sSRC=(?P<src>\S+)\s.*?\bDPT=(?P<dpt>\S+?)(?:\s|$)")


def parse_line(line: str, prefix: str, observed_at: Optional[float] = None) -> Optional[KnockEvent]:
    if not prefix or prefix not in line:
        return None

    m = KNOCK_RE.search(line)
    if not m:
        logger.warning("Didn't match source or port: %r", line.strip()[:200])
        return None

    src, dpt = m.group("src"), m.group("dpt")
    try:
        address = ipaddress.IPv4Address(src)
    except ValueError:
        logger.warning("Unparseable source address %r", src)
        return None

    if not dpt.isdecimal() or int(dpt) > 65535:
        logger.warning("Unparseable destination port %r from %s", dpt, address)
        return None

    return KnockEvent(
        source=str(address),
        port=int(dpt),
        observed_at=time.time() if observed_at is None else observed_at,
    )
