from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Transition(str, Enum):
    RESET = "reset"
    ADVANCED = "advanced"
    COMPLETED = "completed"
    # host already completed the sequence; nothing changes
    IGNORED = "ignored"


@dataclass(frozen=True)
class KnockEvent:
    source: str
    port: int
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ProtectedEndpoint:
    port: int
    protocol: str = "tcp"


@dataclass
class KnockState:
    index: int = 0
    start_ts: Optional[float] = None
