"""
iptables side of the knocker.

Everything this daemon adds lives in one dedicated chain plus a single jump
rule in INPUT:

    INPUT:       -p tcp -m multiport --dports 22,2000:2010 -j PortKnocker
    PortKnocker: -s <granted host> --dport 22 -j ACCEPT     (one per grant, inserted on top)
                 -m state --state RELATED,ESTABLISHED -j ACCEPT
                 -j LOG --log-prefix "PortKnocker "
                 -p tcp --dport 22 -j REJECT

Removing a chain requires removing every reference to it first, which
iptables has no single command for. teardown_chain() does it by saving the
filter table, dropping every line that touches the chain and restoring the
result in one iptables-restore commit.
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from typing import Callable, Iterable, List, Optional, Sequence

from .models import ProtectedEndpoint
from .ports import multiport_spec

logger = logging.getLogger("Firewall")

CHAIN = "PortKnocker"
IPTABLES = "iptables"
IPTABLES_SAVE = "iptables-save"
IPTABLES_RESTORE = "iptables-restore"
DEFAULT_LOCK_WAIT = 2          # seconds to wait for the xtables lock
DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_TEARDOWN_ATTEMPTS = 3

Runner = Callable[..., subprocess.CompletedProcess]

_NOT_FOUND = ("No chain/target/match by that name", "does not exist")
_IN_USE = ("Too many links", "Device or resource busy", "Directory not empty")


class FirewallError(RuntimeError):
    def __init__(self, message: str, cmd: Optional[Sequence[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.cmd = list(cmd or [])
        self.returncode = returncode
        self.stderr = stderr


class ChainNotFound(FirewallError):
    pass


class ChainInUse(FirewallError):
    pass


def _classify(cmd: Sequence[str], res: subprocess.CompletedProcess) -> FirewallError:
    stderr = (res.stderr or "").strip()
    msg = f"{' '.join(cmd)} => {res.returncode} {stderr}".rstrip()
    if any(m in stderr for m in _NOT_FOUND):
        return ChainNotFound(msg, cmd, res.returncode, stderr)
    if any(m in stderr for m in _IN_USE):
        return ChainInUse(msg, cmd, res.returncode, stderr)
    return FirewallError(msg, cmd, res.returncode, stderr)


class IptablesGateway:
    """
    Serialized access to the host's iptables for one dedicated chain.

    `runner` has the signature of subprocess.run and is only replaced in tests.
    """

    def __init__(
        self,
        chain: str = CHAIN,
        comment: Optional[str] = None,
        runner: Runner = subprocess.run,
        lock_wait: int = DEFAULT_LOCK_WAIT,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        teardown_attempts: int = DEFAULT_TEARDOWN_ATTEMPTS,
    ):
        self.chain = chain
        self.comment = comment or chain
        self.protocol = "tcp"
        self.lock_wait = lock_wait
        self.timeout = timeout
        self.teardown_attempts = max(1, teardown_attempts)
        self._runner = runner
        self._lock = threading.RLock()
        self._declared = re.compile(rf"^:{re.escape(chain)}\s", re.M)
        self._reference = re.compile(rf"^-A\s+{re.escape(chain)}\s|\s-[jg]\s+{re.escape(chain)}(\s|$)")

    # ---- command plumbing ----

    def _exec(self, cmd: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        logger.debug("RUN: %s", " ".join(cmd))
        try:
            res = self._runner(cmd, input=input, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise FirewallError(f"{cmd[0]} not found", cmd) from e
        except subprocess.TimeoutExpired as e:
            raise FirewallError(f"{' '.join(cmd)} timed out after {self.timeout}s", cmd) from e
        if res.returncode != 0:
            raise _classify(cmd, res)
        return res

    def _iptables(self, *args: str) -> subprocess.CompletedProcess:
        # -w waits for the xtables lock instead of failing on contention
        return self._exec([IPTABLES, "-w", str(self.lock_wait), *args])

    def _rule_exists(self, chain: str, rule: Sequence[str]) -> bool:
        try:
            self._iptables("-C", chain, *rule)
        except FirewallError:
            return False
        return True

    # ---- lifecycle ----

    def install_base_chain(
        self,
        endpoint: ProtectedEndpoint,
        knock_ports: Iterable[int],
        log_prefix: str,
    ) -> None:
        """
        Build the chain from scratch. Any stale chain of the same name is
        removed first; any step failing raises FirewallError.
        """
        ports = multiport_spec(set(knock_ports) | {endpoint.port})
        proto = endpoint.protocol

        with self._lock:
            if not self.teardown_chain():
                raise FirewallError(f"Stale chain {self.chain} could not be removed")

            self.protocol = proto
            steps = [
                ["-N", self.chain],
                ["-I", "INPUT", "-p", proto, "-m", "multiport", "--dports", ports,
                 "-m", "comment", "--comment", self.comment, "-j", self.chain],
                ["-A", self.chain, "-m", "state", "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"],
                ["-A", self.chain, "-j", "LOG", "--log-prefix", log_prefix],
                ["-A", self.chain, "-p", proto, "--dport", str(endpoint.port), "-j", "REJECT"],
            ]
            for step in steps:
                self._iptables(*step)

        logger.info("[iptables] chain %s installed (ports=%s, protected=%s/%d)",
                    self.chain, ports, proto, endpoint.port)

    def insert_allow(self, address: str, port: int) -> bool:
        """Put an ACCEPT for address -> port on top of the chain. Returns False if it was already there."""
        rule = ["-p", self.protocol, "-s", address, "--dport", str(port), "-j", "ACCEPT"]
        with self._lock:
            if self._rule_exists(self.chain, rule):
                logger.info("[iptables] Rule already exists for %s on port %d", address, port)
                return False
            self._iptables("-I", self.chain, *rule)
        logger.info("[iptables] Allowing access from %s to %s/%d", address, self.protocol, port)
        return True

    def _purge_references(self) -> Optional[bool]:
        """
        Save the filter table, drop every rule in or jumping to the chain and
        restore the rest in one commit. Returns whether the chain was declared,
        or None if the table could not be read.
        """
        try:
            saved = self._exec([IPTABLES_SAVE, "-t", "filter"]).stdout
        except FirewallError as e:
            logger.warning("Unable to get iptables rules: %s", e)
            return None

        if not self._declared.search(saved):
            return False

        kept = [line for line in saved.splitlines(keepends=True) if not self._reference.search(line)]
        dropped = len(saved.splitlines()) - len(kept)
        if dropped:
            try:
                self._exec([IPTABLES_RESTORE, "-w", str(self.lock_wait)], input="".join(kept))
                logger.debug("Dropped %d rule(s) referencing %s", dropped, self.chain)
            except FirewallError as e:
                logger.error("Unable to restore filtered rules: %s", e)
        return True

    def teardown_chain(self) -> bool:
        """
        Remove the jump rule, every rule in the chain, and the chain itself.
        An absent chain counts as success. Returns False if the chain survived.
        """
        with self._lock:
            for attempt in range(1, self.teardown_attempts + 1):
                if self._purge_references() is False:
                    return True

                try:
                    self._iptables("-F", self.chain)
                except ChainNotFound:
                    return True
                except FirewallError as e:
                    logger.warning("Flushing chain %s failed: %s", self.chain, e)

                try:
                    self._iptables("-X", self.chain)
                except ChainNotFound:
                    return True
                except ChainInUse as e:
                    logger.warning("Chain %s still referenced (attempt %d/%d): %s",
                                   self.chain, attempt, self.teardown_attempts, e)
                    continue
                except FirewallError as e:
                    logger.error("Deleting chain %s failed: %s", self.chain, e)
                    return False

                logger.info("[iptables] chain %s removed", self.chain)
                return True

        logger.error("Chain %s still present after %d attempts, residual firewall state left behind",
                     self.chain, self.teardown_attempts)
        return False
