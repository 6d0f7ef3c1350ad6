from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .dispatcher import DEFAULT_MAX_WORKERS, DEFAULT_RETRIES
from .firewall import CHAIN
from .models import ProtectedEndpoint
from .ports import multiport_spec
from .tail import DEFAULT_POLL_INTERVAL

DEFAULT_PROTECTED_PORT = 22
DEFAULT_PROTOCOL = "tcp"
DEFAULT_KNOCK_PORTS = "2000-2010"
DEFAULT_KNOCK_SEQUENCE = [2000, 2001, 2002]
DEFAULT_WATCH_FILE = "/var/log/messages"
DEFAULT_LOG_PREFIX = "PortKnocker "
DEFAULT_GRACE = 1.0

# kernel limit for the LOG target prefix
LOG_PREFIX_MAX = 29


@dataclass(frozen=True)
class KnockConfig:
    sequence: Tuple[int, ...] = tuple(DEFAULT_KNOCK_SEQUENCE)
    knock_ports: Tuple[int, ...] = tuple(range(2000, 2011))
    protected_port: int = DEFAULT_PROTECTED_PORT
    protocol: str = DEFAULT_PROTOCOL
    watch_file: str = DEFAULT_WATCH_FILE
    log_prefix: str = DEFAULT_LOG_PREFIX
    chain: str = CHAIN
    max_workers: int = DEFAULT_MAX_WORKERS
    grace: float = DEFAULT_GRACE
    window: Optional[float] = None
    retries: int = DEFAULT_RETRIES
    poll_interval: float = DEFAULT_POLL_INTERVAL
    trusted: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # normalise lists coming from argparse
        object.__setattr__(self, "sequence", tuple(self.sequence))
        object.__setattr__(self, "knock_ports", tuple(sorted(set(self.knock_ports))))
        object.__setattr__(self, "trusted", tuple(self._normalise_host(h) for h in self.trusted))

        if not self.sequence:
            raise ValueError("Knock sequence must not be empty")
        if len(set(self.sequence)) != len(self.sequence):
            raise ValueError("Knock sequence ports must be distinct")
        for p in (*self.sequence, *self.knock_ports, self.protected_port):
            if p < 1 or p > 65535:
                raise ValueError(f"Invalid port: {p}")
        missing = [p for p in self.sequence if p not in self.knock_ports]
        if missing:
            raise ValueError(f"Sequence ports {missing} are not among the logged knock ports")
        if self.protected_port in self.sequence:
            raise ValueError("The protected port cannot be part of the knock sequence")
        if self.protocol not in ("tcp", "udp"):
            raise ValueError(f"Unsupported protocol: {self.protocol}")
        if not self.log_prefix or len(self.log_prefix) > LOG_PREFIX_MAX:
            raise ValueError(f"Log prefix must be 1-{LOG_PREFIX_MAX} characters")
        if not self.chain or len(self.chain) > 28 or " " in self.chain:
            raise ValueError(f"Invalid chain name: {self.chain!r}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.retries < 1:
            raise ValueError("retries must be >= 1")
        if self.grace < 0:
            raise ValueError("grace must be >= 0")
        if self.window is not None and self.window <= 0:
            raise ValueError("window must be > 0")
        multiport_spec(set(self.knock_ports) | {self.protected_port})

    @staticmethod
    def _normalise_host(host: str) -> str:
        host = host.strip()
        try:
            return str(ipaddress.ip_address(host))
        except ValueError:
            pass
        try:
            return str(ipaddress.ip_network(host, strict=False))
        except ValueError:
            raise ValueError(f"Invalid trusted address: {host!r}") from None

    @property
    def endpoint(self) -> ProtectedEndpoint:
        return ProtectedEndpoint(port=self.protected_port, protocol=self.protocol)
