import subprocess

from stalink import watchdog as wd
from stalink.config import load_settings
from stalink.control import ControlChannel, ControlKind
from stalink.lock import GlobalLock


def _watchdog(tmp_path, monkeypatch, entropy: str, owner_pid: int):
    monkeypatch.setenv("STALINK_CONFIG", str(tmp_path / "missing.json"))
    entropy_file = tmp_path / "entropy_avail"
    entropy_file.write_text(entropy)
    settings = load_settings({
        "tmp_root": str(tmp_path),
        "entropy_avail_path": str(entropy_file),
        "entropy_threshold": 1000,
        "watchdog_interval_s": 0.01,
    })
    channel = ControlChannel()
    lock = GlobalLock(tmp_path, owner_pid=owner_pid)
    return wd.EntropyWatchdog(settings, lock, channel), channel, lock


def test_enough_entropy_does_nothing(tmp_path, monkeypatch):
    dog, channel, _ = _watchdog(tmp_path, monkeypatch, "3000\n", 43001)
    monkeypatch.setattr(wd.subprocess, "run", lambda *a, **kw: (_ for _ in ()).throw(AssertionError))
    assert dog.check_once() is True
    assert channel.wait(timeout=0.01) is None


def test_low_entropy_without_haveged_warns_once(tmp_path, monkeypatch, caplog):
    dog, channel, _ = _watchdog(tmp_path, monkeypatch, "100\n", 43002)
    monkeypatch.setattr(wd.shutil, "which", lambda name: None)
    assert dog.check_once() is True
    assert dog.check_once() is True
    assert sum("low_entropy_no_haveged" in r.getMessage() for r in caplog.records) == 1
    assert channel.wait(timeout=0.01) is None


def test_low_entropy_starts_haveged(tmp_path, monkeypatch):
    dog, channel, _ = _watchdog(tmp_path, monkeypatch, "100\n", 43003)
    monkeypatch.setattr(wd.shutil, "which", lambda name: "/usr/sbin/haveged")
    monkeypatch.setattr(wd, "haveged_running", lambda pidfile=None: False)
    calls = []

    def _run(cmd, **kw):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(wd.subprocess, "run", _run)
    assert dog.check_once() is True
    assert calls == [["/usr/sbin/haveged", "-w", "1024", "-p", str(tmp_path / wd.HAVEGED_PIDFILE)]]


def test_haveged_start_failure_posts_fatal(tmp_path, monkeypatch):
    dog, channel, lock = _watchdog(tmp_path, monkeypatch, "100\n", 43004)
    monkeypatch.setattr(wd.shutil, "which", lambda name: "/usr/sbin/haveged")
    monkeypatch.setattr(wd, "haveged_running", lambda pidfile=None: False)
    monkeypatch.setattr(wd.subprocess, "run", lambda cmd, **kw: subprocess.CompletedProcess(cmd, 1))

    dog.start()
    msg = channel.wait(timeout=2.0)
    dog.stop()
    assert msg.kind is ControlKind.FATAL
    assert msg.reason == "haveged_start_failed"
    assert not lock.locked()


def test_unexpected_error_posts_fatal(tmp_path, monkeypatch):
    dog, channel, _ = _watchdog(tmp_path, monkeypatch, "100\n", 43005)

    def _boom():
        raise OSError("disk gone")

    monkeypatch.setattr(dog, "check_once", _boom)
    dog.start()
    msg = channel.wait(timeout=2.0)
    dog.stop()
    assert msg.kind is ControlKind.FATAL
    assert msg.reason == "watchdog_failed:OSError"


def test_unreadable_entropy_is_ignored(tmp_path):
    assert wd.read_entropy_avail(tmp_path / "nope") is None
