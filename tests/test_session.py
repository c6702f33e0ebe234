import io
import logging
import os
import signal
import sys
import threading

import pytest

from p2pfwd.session import Session
from p2pfwd.state import SessionPhase

from conftest import CancelSpy


@pytest.fixture
def journal(forwarder):
    return forwarder.journal


@pytest.fixture
def session(forwarder, journal):
    return Session(forwarder, global_cancel=CancelSpy("global", journal))


def _run_in_thread(session):
    thread = threading.Thread(target=session.run, daemon=True)
    thread.start()
    return thread


def test_initialize_opens_preconfigured_resources(session, caplog):
    caplog.set_level(logging.INFO)
    session.initialize(tcp_ports=[80], udp_ports=[53], connect_ids=["peerA"])

    assert session.phase is SessionPhase.RUNNING
    assert session.registry.snapshot() == {"tcp": [80], "udp": [53], "connections": ["peerA"]}
    messages = [r.getMessage() for r in caplog.records]
    assert "Seu id: me@test" in messages
    assert "connect [ID]" in messages


def test_initialize_skips_failures(session, forwarder):
    forwarder.failing_ports.add(("tcp", 81))
    forwarder.failing_peers.add("ghost")

    session.initialize(tcp_ports=[80, 81], connect_ids=["ghost", "peerA"])

    assert session.registry.snapshot() == {"tcp": [80], "udp": [], "connections": ["peerA"]}
    assert session.phase is SessionPhase.RUNNING


def test_shutdown_cancels_everything_once_global_first(session, forwarder, journal):
    session.initialize(tcp_ports=[80], udp_ports=[53], connect_ids=["peerA"])

    session.request_shutdown()
    session.run()

    assert journal == ["global", "peer:peerA", "tcp:80", "udp:53"]
    assert all(spy.calls == 1 for spy in forwarder.cancels.values())
    assert session.phase is SessionPhase.TERMINATED
    assert len(session.registry) == 0


def test_submitted_commands_run_in_order_before_shutdown(session, forwarder, journal):
    session.initialize()
    session.submit("open tcp 8080")
    session.submit("close tcp 8080")
    session.submit("connect peerB")
    session.request_shutdown()

    session.run()

    assert forwarder.cancels["tcp:8080"].calls == 1
    assert journal == ["tcp:8080", "global", "peer:peerB"]


def test_reader_feeds_lines_from_stream(session, forwarder):
    session.initialize()
    session.start_reader(io.StringIO("open udp 5353\r\nconnect peerC\n"))
    thread = _run_in_thread(session)

    for _ in range(200):
        if len(session.registry) == 2:
            break
        threading.Event().wait(0.01)
    session.request_shutdown()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert ("open", "udp", 5353) in forwarder.calls
    assert ("connect", "peerC") in forwarder.calls
    assert forwarder.cancels["udp:5353"].calls == 1


class _FlakyStream:
    def __init__(self, lines):
        self._items = list(lines)

    def readline(self):
        item = self._items.pop(0) if self._items else ""
        if isinstance(item, Exception):
            raise item
        return item


def test_reader_skips_read_errors(session, forwarder, caplog):
    session.initialize()
    session.start_reader(_FlakyStream([OSError("EIO"), "open tcp 22\n"]))
    thread = _run_in_thread(session)

    for _ in range(200):
        if 22 in session.registry.tcp_ports:
            break
        threading.Event().wait(0.01)
    session.request_shutdown()
    thread.join(timeout=5)

    assert forwarder.cancels["tcp:22"].calls == 1
    assert any("EIO" in r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR)


def test_failing_cancel_does_not_stop_teardown(forwarder, journal, caplog):
    def broken_global():
        raise OSError("already gone")

    session = Session(forwarder, global_cancel=broken_global)
    session.initialize(tcp_ports=[80], udp_ports=[53])
    session.shutdown()

    assert journal == ["tcp:80", "udp:53"]
    assert any(r.levelno >= logging.ERROR for r in caplog.records)


def test_shutdown_is_idempotent(session, journal):
    session.initialize(tcp_ports=[80])
    session.shutdown()
    session.shutdown()
    assert journal == ["global", "tcp:80"]


def test_sessions_are_independent(forwarder):
    first = Session(forwarder)
    second = Session(forwarder)
    first.initialize(tcp_ports=[80])
    assert len(second.registry) == 0


@pytest.fixture
def restore_signal_handlers():
    saved = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


@pytest.mark.skipif(sys.platform == "win32", reason="os.kill com SIGTERM encerra o processo no Windows")
def test_sigterm_triggers_ordered_shutdown(session, forwarder, journal, restore_signal_handlers):
    session.install_signal_handlers()
    session.initialize(tcp_ports=[80], udp_ports=[53], connect_ids=["peerA"])

    timer = threading.Timer(0.2, os.kill, (os.getpid(), signal.SIGTERM))
    timer.start()
    try:
        session.run()
    finally:
        timer.cancel()

    assert journal == ["global", "peer:peerA", "tcp:80", "udp:53"]
    assert all(spy.calls == 1 for spy in forwarder.cancels.values())
    assert session.phase is SessionPhase.TERMINATED


def test_repeated_sigint_shuts_down_once(session, journal, restore_signal_handlers):
    session.install_signal_handlers()
    session.initialize(tcp_ports=[80])

    signal.raise_signal(signal.SIGINT)
    signal.raise_signal(signal.SIGINT)
    session.run()

    assert journal == ["global", "tcp:80"]
    assert session.phase is SessionPhase.TERMINATED
