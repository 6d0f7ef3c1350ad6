import shlex
import subprocess
import threading

import pytest

from port_knocker.firewall import IptablesGateway

BUILTIN_CHAINS = ("INPUT", "FORWARD", "OUTPUT")
TARGETS = ("ACCEPT", "DROP", "REJECT", "LOG", "RETURN")

NO_CHAIN = "iptables: No chain/target/match by that name."


class FakeIptables:
    """
    In-memory filter table answering iptables, iptables-save and
    iptables-restore calls the way the real tools do. Passed to
    IptablesGateway as its `runner`.
    """

    def __init__(self):
        self.chains = {c: [] for c in BUILTIN_CHAINS}
        self.calls = []
        self._failures = []
        self._lock = threading.Lock()

    def fail_when(self, predicate, stderr="iptables: Resource temporarily unavailable.", times=1, returncode=1):
        """Make the next `times` commands matching `predicate` fail (times=None: always)."""
        self._failures.append([predicate, stderr, times, returncode])

    def __call__(self, cmd, input=None, capture_output=True, text=True, timeout=None):
        with self._lock:
            self.calls.append(list(cmd))
            for failure in self._failures:
                predicate, stderr, times, rc = failure
                if (times is None or times > 0) and predicate(cmd):
                    if times is not None:
                        failure[2] -= 1
                    return self._result(cmd, rc, stderr=stderr)

            if cmd[0] == "iptables-save":
                return self._result(cmd, 0, stdout=self.save())
            if cmd[0] == "iptables-restore":
                self.restore(input or "")
                return self._result(cmd, 0)
            if cmd[0] == "iptables":
                args = cmd[1:]
                if args[0] == "-w":
                    args = args[2:]
                return self._iptables(cmd, args)
            raise FileNotFoundError(cmd[0])

    @staticmethod
    def _result(cmd, rc, stdout="", stderr=""):
        return subprocess.CompletedProcess(args=cmd, returncode=rc, stdout=stdout, stderr=stderr)

    def _iptables(self, cmd, args):
        op, chain, rule = args[0], args[1], list(args[2:])

        if op == "-N":
            if chain in self.chains:
                return self._result(cmd, 1, stderr="iptables: Chain already exists.")
            self.chains[chain] = []
            return self._result(cmd, 0)

        if chain not in self.chains:
            return self._result(cmd, 1, stderr=NO_CHAIN)

        if op == "-X":
            if self.references(chain):
                return self._result(cmd, 1, stderr="iptables: Too many links.")
            if self.chains[chain]:
                return self._result(cmd, 1, stderr="iptables: Directory not empty.")
            del self.chains[chain]
        elif op == "-F":
            self.chains[chain] = []
        elif op in ("-A", "-I"):
            if "-j" in rule:
                target = rule[rule.index("-j") + 1]
                if target not in TARGETS and target not in self.chains:
                    return self._result(cmd, 2, stderr=f"Couldn't load target `{target}'")
            if op == "-A":
                self.chains[chain].append(rule)
            elif rule and rule[0].isdigit():
                self.chains[chain].insert(int(rule[0]) - 1, rule[1:])
            else:
                self.chains[chain].insert(0, rule)
        elif op == "-C":
            if rule not in self.chains[chain]:
                return self._result(cmd, 1, stderr="iptables: Bad rule (does a matching rule exist in that chain?).")
        elif op == "-D":
            if rule not in self.chains[chain]:
                return self._result(cmd, 1, stderr="iptables: Bad rule (does a matching rule exist in that chain?).")
            self.chains[chain].remove(rule)
        else:
            return self._result(cmd, 2, stderr=f"unknown option {op}")
        return self._result(cmd, 0)

    def references(self, chain):
        return [
            (c, r)
            for c, rules in self.chains.items()
            for r in rules
            if "-j" in r and r[r.index("-j") + 1] == chain
        ]

    def save(self):
        lines = ["# Generated by fake iptables-save", "*filter"]
        for c in self.chains:
            policy = "ACCEPT" if c in BUILTIN_CHAINS else "-"
            lines.append(f":{c} {policy} [0:0]")
        for c, rules in self.chains.items():
            for r in rules:
                lines.append(shlex.join(["-A", c, *r]))
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    def restore(self, text):
        chains = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith(("#", "*")) or line == "COMMIT":
                continue
            if line.startswith(":"):
                chains[line[1:].split()[0]] = []
            elif line.startswith("-A"):
                tokens = shlex.split(line)
                chains[tokens[1]].append(tokens[2:])
        for c in BUILTIN_CHAINS:
            chains.setdefault(c, [])
        self.chains = chains

    def commands(self, tool="iptables"):
        return [c for c in self.calls if c[0] == tool]


@pytest.fixture
def fake_iptables():
    return FakeIptables()


@pytest.fixture
def gateway(fake_iptables):
    return IptablesGateway(runner=fake_iptables)
