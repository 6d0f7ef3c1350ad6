from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Dict, Iterable, Optional

from .config import KnockConfig
from .dispatcher import Dispatcher
from .events import parse_line
from .firewall import FirewallError, IptablesGateway
from .tail import tail_follow
from .tracker import KnockTracker

logger = logging.getLogger("PortKnocker")

LineSource = Callable[[threading.Event], Iterable[str]]


class KnockDaemon:
    """
    Owns the daemon's lifetime:
      - build the firewall chain and trust the pre-trusted hosts
      - feed log lines to the dispatcher until stopped
      - on SIGINT/SIGTERM: stop intake, drain workers, tear the chain down once
    """

    def __init__(
        self,
        cfg: KnockConfig,
        gateway: Optional[IptablesGateway] = None,
        source: Optional[LineSource] = None,
        tracker: Optional[KnockTracker] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.cfg = cfg
        self.gateway = gateway or IptablesGateway(chain=cfg.chain)
        self.tracker = tracker or KnockTracker(cfg.sequence, window_seconds=cfg.window)
        self.dispatcher = dispatcher or Dispatcher(
            self.tracker,
            self.gateway,
            cfg.endpoint,
            max_workers=cfg.max_workers,
            retries=cfg.retries,
        )
        self._source = source or (lambda stop: tail_follow(cfg.watch_file, cfg.poll_interval, stop))

        self.stopping = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        self._previous_handlers: Dict[int, object] = {}
        self.chain_removed: Optional[bool] = None

    # ---- lifecycle ----

    def start(self, install_signals: bool = True) -> None:
        """Run until the line source ends or a stop is requested. Raises FirewallError on a failed startup."""
        if install_signals:
            self._install_signal_handlers()
        try:
            self._startup()
            logger.info("Knock sequence: %s | protected port: %s/%d | watching %s",
                        list(self.cfg.sequence), self.cfg.protocol, self.cfg.protected_port, self.cfg.watch_file)
            self._intake()
        finally:
            self.shutdown()
            if install_signals:
                self._restore_signal_handlers()

    def _startup(self) -> None:
        try:
            self.gateway.install_base_chain(self.cfg.endpoint, self.cfg.knock_ports, self.cfg.log_prefix)
            for host in self.cfg.trusted:
                self.gateway.insert_allow(host, self.cfg.protected_port)
                self.tracker.grant(host)
                logger.info("Trusted host %s allowed to port %d", host, self.cfg.protected_port)
        except FirewallError as e:
            logger.critical("Unable to set up iptables: %s", e)
            raise

    def _intake(self) -> None:
        for line in self._source(self.stopping):
            if self.stopping.is_set():
                break
            event = parse_line(line, self.cfg.log_prefix)
            if event is None:
                continue
            if not self.dispatcher.submit(event):
                break

    def request_stop(self) -> None:
        if self.stopping.is_set():
            logger.warning("Already shutting down, ignoring repeated stop request")
            return
        logger.info("Stop requested, shutting down...")
        self.stopping.set()
        self.dispatcher.close()

    def shutdown(self) -> None:
        """Drain the workers and remove the chain. Runs once; later calls do nothing."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self.stopping.set()
        abandoned = self.dispatcher.drain(self.cfg.grace)
        if abandoned:
            logger.warning("%d worker(s) cancelled during shutdown", abandoned)

        self.chain_removed = self.gateway.teardown_chain()
        if self.chain_removed:
            logger.info("Firewall rules reverted, quitting")
        else:
            logger.error("Chain %s could not be removed; check iptables manually", self.cfg.chain)

    # ---- signals ----

    def _signal_stop(self, signum, frame):
        logger.info("Received %s", signal.Signals(signum).name)
        self.request_stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers left alone")
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.signal(sig, self._signal_stop)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
