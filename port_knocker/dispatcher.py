from __future__ import annotations

import functools
import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, Optional, Set

from .firewall import FirewallError
from .logger import log_event
from .models import KnockEvent, ProtectedEndpoint, Transition
from .tracker import KnockTracker

logger = logging.getLogger("Dispatcher")

DEFAULT_MAX_WORKERS = 10
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.5


class Dispatcher:
    """
    Bounded worker pool between the log reader and the tracker.

    At most `max_workers` events are in flight; submit() blocks the reader
    once that many are outstanding. Events from one source address form a
    lane that a single worker drains in arrival order, so a host's knocks are
    never evaluated out of order. Lanes of different hosts run in parallel.
    """

    def __init__(
        self,
        tracker: KnockTracker,
        gateway,
        endpoint: ProtectedEndpoint,
        max_workers: int = DEFAULT_MAX_WORKERS,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.tracker = tracker
        self.gateway = gateway
        self.endpoint = endpoint
        self.max_workers = max_workers
        self.retries = max(1, retries)
        self.retry_delay = retry_delay

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="knock")
        self._slots = threading.BoundedSemaphore(max_workers)
        self._lock = threading.Lock()
        self._lanes: Dict[str, Deque[KnockEvent]] = {}
        self._futures: Set[Future] = set()
        self._closed = threading.Event()
        self._cancelled = threading.Event()

        self.processed = 0
        self.granted = 0
        self.failed = 0

    # ---- intake side ----

    def submit(self, event: KnockEvent, poll: float = 0.25) -> bool:
        """
        Hand an event to the pool, blocking while all slots are taken.
        Returns False only once the dispatcher is closed.
        """
        warned = False
        while not self._slots.acquire(timeout=poll):
            if self._closed.is_set():
                return False
            if not warned:
                logger.warning("Too many knocks in flight (%d), intake paused", self.max_workers)
                warned = True

        if self._closed.is_set():
            self._slots.release()
            return False

        with self._lock:
            lane = self._lanes.get(event.source)
            if lane is not None:
                lane.append(event)
                return True
            self._lanes[event.source] = deque([event])

            try:
                fut = self._pool.submit(self._drain_lane, event.source)
            except RuntimeError:
                # pool already shut down
                del self._lanes[event.source]
                self._slots.release()
                return False
            self._futures.add(fut)

        fut.add_done_callback(functools.partial(self._lane_finished, event.source))
        return True

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(len(lane) for lane in self._lanes.values())

    # ---- worker side ----

    def _drain_lane(self, address: str) -> None:
        while True:
            with self._lock:
                lane = self._lanes[address]
                if self._cancelled.is_set():
                    dropped = len(lane)
                    del self._lanes[address]
                    self._release(dropped)
                    if dropped:
                        logger.warning("Cancelled %d pending knock(s) from %s", dropped, address)
                    return
                if not lane:
                    del self._lanes[address]
                    return
                event = lane[0]

            try:
                self._evaluate(event)
            except Exception:
                logger.exception("Knock evaluation failed for %s:%d", event.source, event.port)
            finally:
                with self._lock:
                    lane.popleft()
                    self.processed += 1
                self._slots.release()

    def _evaluate(self, event: KnockEvent) -> Transition:
        transition = self.tracker.on_knock(event.source, event.port, now=event.observed_at)
        if transition is Transition.COMPLETED:
            logger.info("[success] %s completed sequence -> opening %s/%d",
                        event.source, self.endpoint.protocol, self.endpoint.port)
            self._grant(event.source)
        return transition

    def _grant(self, address: str) -> bool:
        port = self.endpoint.port
        for attempt in range(1, self.retries + 1):
            if self._cancelled.is_set():
                break
            try:
                self.gateway.insert_allow(address, port)
            except FirewallError as e:
                logger.warning("Allow rule for %s failed (attempt %d/%d): %s", address, attempt, self.retries, e)
                if attempt < self.retries:
                    self._cancelled.wait(self.retry_delay * attempt)
                continue
            with self._lock:
                self.granted += 1
            log_event(logger, "granted", {"ip": address, "port": port, "protocol": self.endpoint.protocol})
            return True

        # do not leave the host marked complete without a rule behind it
        self.tracker.forget(address)
        with self._lock:
            self.failed += 1
        log_event(logger, "grant_failed", {"ip": address, "port": port}, level=logging.ERROR)
        return False

    def _release(self, n: int) -> None:
        for _ in range(n):
            self._slots.release()

    def _lane_finished(self, address: str, fut: Future) -> None:
        with self._lock:
            self._futures.discard(fut)
            if not fut.cancelled():
                return
            # never started: its queued events still hold slots
            lane = self._lanes.pop(address, None)
            dropped = len(lane) if lane else 0
            self._release(dropped)
        if dropped:
            logger.warning("Cancelled %d pending knock(s) from %s", dropped, address)

    # ---- shutdown ----

    def close(self) -> None:
        self._closed.set()

    def drain(self, grace: float) -> int:
        """
        Stop intake, give running workers `grace` seconds, then cancel
        whatever is left. Returns how many workers did not finish in time.
        """
        self.close()
        with self._lock:
            pending = set(self._futures)

        _, not_done = wait(pending, timeout=grace)
        if not_done:
            logger.warning("%d worker(s) still running after %.1fs, cancelling", len(not_done), grace)
            self._cancelled.set()
        self._pool.shutdown(wait=False, cancel_futures=True)
        return len(not_done)
