import os
import signal

import pytest

from stalink import control, registry
from stalink.control import ControlChannel, ControlKind


def test_channel_delivers_in_order():
    ch = ControlChannel()
    assert ch.wait(timeout=0.01) is None
    assert not ch.stop_requested

    ch.request_stop("user")
    ch.report_fatal("haveged_start_failed")
    assert ch.stop_requested

    first = ch.wait(timeout=0.1)
    second = ch.wait(timeout=0.1)
    assert (first.kind, first.reason) == (ControlKind.STOP, "user")
    assert (second.kind, second.reason) == (ControlKind.FATAL, "haveged_start_failed")


@pytest.mark.parametrize("sig", [signal.SIGUSR1, signal.SIGINT, signal.SIGTERM, signal.SIGHUP])
def test_stop_signals_post_stop(sig):
    ch = ControlChannel()
    previous = control.install_signal_handlers(ch)
    try:
        os.kill(os.getpid(), sig)
        msg = ch.wait(timeout=2.0)
    finally:
        control.restore_signal_handlers(previous)
    assert msg.kind is ControlKind.STOP
    assert msg.reason == f"signal:{signal.Signals(sig).name}"


def test_fatal_signal_posts_fatal():
    ch = ControlChannel()
    previous = control.install_signal_handlers(ch)
    try:
        os.kill(os.getpid(), signal.SIGUSR2)
        msg = ch.wait(timeout=2.0)
    finally:
        control.restore_signal_handlers(previous)
    assert msg.kind is ControlKind.FATAL
    assert msg.reason == "external_fatal_signal"


def test_restore_puts_back_previous_handler():
    before = signal.getsignal(signal.SIGUSR1)
    previous = control.install_signal_handlers(ControlChannel())
    control.restore_signal_handlers(previous)
    assert signal.getsignal(signal.SIGUSR1) == before


def test_stop_by_interface_signals_right_pid(tmp_path, monkeypatch):
    for pid, iface in ((100, "wlan0"), (101, "wlan1")):
        d = tmp_path / f"stalink.{iface}.conf.T{pid}"
        d.mkdir()
        (d / "pid").write_text(f"{pid}\n")
        (d / "wifi_iface").write_text(f"{iface}\n")
    monkeypatch.setattr(registry, "pid_running", lambda pid: True)

    sent = []
    monkeypatch.setattr(control.os, "kill", lambda pid, sig: sent.append((pid, sig)))

    inst = control.stop_instance(tmp_path, "wlan1")
    assert inst.pid == 101
    assert sent == [(101, signal.SIGUSR1)]

    inst = control.stop_instance(tmp_path, "100")
    assert inst.actual_iface == "wlan0"
    assert sent[-1] == (100, signal.SIGUSR1)


def test_stop_unknown_target(tmp_path, monkeypatch):
    monkeypatch.setattr(control.os, "kill", lambda pid, sig: pytest.fail("must not signal"))
    assert control.stop_instance(tmp_path, "wlan7") is None


def test_send_stop_to_vanished_pid(monkeypatch):
    def _gone(pid, sig):
        raise ProcessLookupError()

    monkeypatch.setattr(control.os, "kill", _gone)
    assert control.send_stop(12345) is False
