import logging
import signal
import threading

import pytest

from port_knocker.config import KnockConfig
from port_knocker.daemon import KnockDaemon
from port_knocker.firewall import FirewallError, IptablesGateway

LOG = (
    "Oct 18 20:17:30 gw kernel: PortKnocker IN=eth0 OUT= SRC={src} DST=10.0.0.1 LEN=60 "
    "PROTO=TCP SPT=40000 DPT={port} WINDOW=64240 SYN URGP=0"
)


def knock_line(src, port):
    return LOG.format(src=src, port=port)


def allow_rule(host, port=22):
    return ["-p", "tcp", "-s", host, "--dport", str(port), "-j", "ACCEPT"]


def inserted_allows(fake):
    return [c[5:] for c in fake.commands() if c[3:5] == ["-I", "PortKnocker"]]


@pytest.fixture
def cfg():
    return KnockConfig(
        sequence=(2000, 2001, 2002),
        knock_ports=tuple(range(2000, 2011)),
        protected_port=22,
        grace=5.0,
        trusted=("10.0.0.9",),
    )


def test_knock_sequence_end_to_end(cfg, fake_iptables):
    seen_at_first_line = {}

    def source(stop):
        seen_at_first_line["chain"] = [list(r) for r in fake_iptables.chains.get("PortKnocker", [])]
        yield "Oct 18 20:17:29 gw sshd[99]: Connection closed by 10.0.0.7"
        for port in (2000, 2001, 2000, 2001, 2002):
            yield knock_line("10.0.0.5", port)
        yield knock_line("10.0.0.6", 2000)
        for port in (2000, 2001, 2002):
            yield knock_line("10.0.0.5", port)
        yield knock_line("10.0.0.5", 2002)

    daemon = KnockDaemon(cfg, gateway=IptablesGateway(runner=fake_iptables), source=source)
    daemon.start(install_signals=False)

    # trusted host is in place before any log line is read
    assert seen_at_first_line["chain"][0] == allow_rule("10.0.0.9")
    assert seen_at_first_line["chain"][-1][-1] == "REJECT"

    assert inserted_allows(fake_iptables) == [allow_rule("10.0.0.9"), allow_rule("10.0.0.5")]
    assert daemon.dispatcher.granted == 1
    assert daemon.tracker.progress("10.0.0.6") == 1

    # torn down on exit
    assert daemon.chain_removed is True
    assert "PortKnocker" not in fake_iptables.chains
    assert fake_iptables.references("PortKnocker") == []


def test_startup_failure_is_fatal_and_cleaned_up(cfg, fake_iptables):
    fake_iptables.fail_when(lambda cmd: "REJECT" in cmd, stderr="iptables: unknown error", times=None)
    lines_read = []

    def source(stop):
        lines_read.append(True)
        yield knock_line("10.0.0.5", 2000)

    daemon = KnockDaemon(cfg, gateway=IptablesGateway(runner=fake_iptables), source=source)
    with pytest.raises(FirewallError):
        daemon.start(install_signals=False)

    assert lines_read == []
    assert "PortKnocker" not in fake_iptables.chains
    assert fake_iptables.chains["INPUT"] == []


def test_stop_request_interrupts_intake_and_tears_down_once(cfg, fake_iptables, caplog):
    started = threading.Event()

    def source(stop):
        yield knock_line("10.0.0.5", 2000)
        started.set()
        while not stop.wait(0.05):
            pass
        # a real tail returns once stop is set; nothing more is read
        yield knock_line("10.0.0.5", 2001)

    daemon = KnockDaemon(cfg, gateway=IptablesGateway(runner=fake_iptables), source=source)
    runner = threading.Thread(target=daemon.start, kwargs={"install_signals": False})
    runner.start()
    assert started.wait(5)

    with caplog.at_level(logging.WARNING, logger="PortKnocker"):
        daemon._signal_stop(signal.SIGTERM, None)
        daemon.request_stop()
    runner.join(10)
    assert not runner.is_alive()
    assert "Already shutting down" in caplog.text

    assert daemon.tracker.progress("10.0.0.5") == 1
    deletes = [c for c in fake_iptables.commands() if "-X" in c]
    daemon.shutdown()
    assert [c for c in fake_iptables.commands() if "-X" in c] == deletes
    assert "PortKnocker" not in fake_iptables.chains


def test_signal_handlers_are_restored(cfg, fake_iptables):
    before = signal.getsignal(signal.SIGTERM)
    seen = {}

    def source(stop):
        seen["handler"] = signal.getsignal(signal.SIGTERM)
        return iter(())

    daemon = KnockDaemon(cfg, gateway=IptablesGateway(runner=fake_iptables), source=source)
    daemon.start()

    assert seen["handler"] == daemon._signal_stop
    assert signal.getsignal(signal.SIGTERM) == before
