from __future__ import annotations

from typing import Iterable, List

# iptables multiport accepts at most 15 entries, a range counts as two
MULTIPORT_MAX_ENTRIES = 15


def _check_port(p: int) -> int:
    if p < 1 or p > 65535:
        raise ValueError(f"Invalid port: {p}")
    return p


def parse_ports(spec: str) -> List[int]:
    """
    Parses a port specification string into a list of ports.
    Supports:
    - Single ports: "22"
    - Ranges: "2000-2010"
    - Comma-separated: "2000,2001,2002"
    - Mixed: "2000-2010,3000"
    """
    spec = spec.strip()
    if not spec:
        raise ValueError("Empty port spec")

    ports: List[int] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_s, end_s = part.split("-", 1)
            start = int(start_s)
            end = int(end_s)
            if start < 1 or end > 65535 or start > end:
                raise ValueError(f"Invalid port range: {part}")
            ports.extend(range(start, end + 1))
        else:
            ports.append(_check_port(int(part)))

    # De-dupe, keep sorted
    return sorted(set(ports))


def parse_sequence(spec: str) -> List[int]:
    """Ordered knock sequence; unlike parse_ports, order is kept and duplicates rejected."""
    try:
        sequence = [_check_port(int(x.strip())) for x in spec.split(",") if x.strip()]
    except ValueError as e:
        raise ValueError(f"Invalid sequence '{spec}': {e}") from e
    if not sequence:
        raise ValueError("Empty knock sequence")
    if len(set(sequence)) != len(sequence):
        raise ValueError(f"Knock sequence ports must be distinct: {spec}")
    return sequence


def multiport_spec(ports: Iterable[int]) -> str:
    """
    Render ports for `-m multiport --dports`, folding contiguous runs
    into first:last so large knock ranges stay under the 15 entry limit.
    """
    ordered = sorted(set(ports))
    if not ordered:
        raise ValueError("No ports for multiport match")

    parts: List[str] = []
    entries = 0
    start = prev = ordered[0]
    for p in ordered[1:] + [None]:
        if p is not None and p == prev + 1:
            prev = p
            continue
        if start == prev:
            parts.append(str(start))
            entries += 1
        else:
            parts.append(f"{start}:{prev}")
            entries += 2
        if p is not None:
            start = prev = p

    if entries > MULTIPORT_MAX_ENTRIES:
        raise ValueError(
            f"Too many ports for a multiport match ({entries} > {MULTIPORT_MAX_ENTRIES}): {','.join(parts)}"
        )
    return ",".join(parts)
