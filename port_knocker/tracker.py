from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

from .models import KnockState, Transition

logger = logging.getLogger("Tracker")

DEFAULT_STRIPES = 16


class KnockTracker:
    """
    Per-source progress through the knock sequence.

    Rules for a knock on `port` from `address` with progress i:
    - i == len(sequence): already granted, IGNORED
    - port == sequence[i]: advance; COMPLETED when the last port is reached
    - anything else: RESET to 0, even if port == sequence[0]

    Progress lives in lock stripes keyed by address, so the read-modify-write
    for one address is atomic while different addresses rarely contend.
    """

    def __init__(
        self,
        sequence: Sequence[int],
        window_seconds: Optional[float] = None,
        stripes: int = DEFAULT_STRIPES,
    ):
        if not sequence:
            raise ValueError("Knock sequence must not be empty")
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self.sequence: Tuple[int, ...] = tuple(sequence)
        self.window = window_seconds
        self._stripes: List[Tuple[threading.Lock, Dict[str, KnockState]]] = [
            (threading.Lock(), {}) for _ in range(stripes)
        ]

    def _stripe(self, address: str) -> Tuple[threading.Lock, Dict[str, KnockState]]:
        return self._stripes[hash(address) % len(self._stripes)]

    def _is_expired(self, state: KnockState, now: float) -> bool:
        return (
            self.window is not None
            and 0 < state.index < len(self.sequence)
            and state.start_ts is not None
            and (now - state.start_ts) > self.window
        )

    def on_knock(self, address: str, port: int, now: Optional[float] = None) -> Transition:
        now = time.time() if now is None else now
        total = len(self.sequence)
        lock, hosts = self._stripe(address)

        with lock:
            state = hosts.get(address)
            if state is None:
                state = hosts[address] = KnockState()

            if state.index == total:
                logger.debug("[granted] %s already completed, knock on %d ignored", address, port)
                return Transition.IGNORED

            if self._is_expired(state, now):
                logger.info("[reset] %s sequence window expired", address)
                state.index, state.start_ts = 0, None

            expected = self.sequence[state.index]
            if port != expected:
                if state.index:
                    logger.info("[reset] %s wrong knock (got=%d expected=%d)", address, port, expected)
                state.index, state.start_ts = 0, None
                return Transition.RESET

            if state.index == 0:
                state.start_ts = now
            state.index += 1
            logger.info("[knock] %s step %d/%d (port=%d)", address, state.index, total, port)

            if state.index == total:
                return Transition.COMPLETED
            return Transition.ADVANCED

    def progress(self, address: str) -> int:
        lock, hosts = self._stripe(address)
        with lock:
            state = hosts.get(address)
            return state.index if state else 0

    def grant(self, address: str) -> None:
        """Mark a host as completed without knocking (pre-trusted hosts)."""
        lock, hosts = self._stripe(address)
        with lock:
            hosts[address] = KnockState(index=len(self.sequence))

    def forget(self, address: str) -> None:
        """Send a host back to the start, e.g. when its allow rule could not be installed."""
        lock, hosts = self._stripe(address)
        with lock:
            hosts[address] = KnockState()

    def __len__(self) -> int:
        total = 0
        for lock, hosts in self._stripes:
            with lock:
                total += len(hosts)
        return total
