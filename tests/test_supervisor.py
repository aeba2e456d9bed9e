import os

import pytest

from stalink.engine import supervisor as sup
from stalink.engine.commands import build_dhclient_cmd, build_haveged_cmd, build_supplicant_cmd
from stalink.errors import DependencyError


def test_spawn_reports_early_exit_with_output(tmp_path):
    ps = sup.ProcessSupervisor(tmp_path)
    res = ps.spawn("wpa_supplicant", ["sh", "-c", "echo bad config; exit 3"], early_fail_window_s=2.0)
    assert res.ok is False
    assert res.exit_code == 3
    assert res.error == "wpa_supplicant_exited_early: rc=3"
    assert "bad config" in res.output_tail
    assert not ps.pid_file("wpa_supplicant").exists()


def test_spawn_records_pid_and_stop_all_kills(tmp_path):
    ps = sup.ProcessSupervisor(tmp_path)
    res = ps.spawn("dhclient", ["sleep", "30"], early_fail_window_s=0.2)
    assert res.ok is True
    assert ps.is_alive("dhclient")
    assert ps.recorded_pids() == {"dhclient": res.pid}

    killed = ps.stop_all(timeout_s=2.0)
    assert killed == [res.pid]
    assert not ps.is_alive("dhclient")
    # Second call finds nothing left to do.
    assert ps.stop_all(timeout_s=0.5) == []


def test_stop_all_uses_recorded_pid_files(tmp_path, monkeypatch):
    (tmp_path / "dhclient.pid").write_text("4242\n")
    (tmp_path / "wpa_supplicant.pid").write_text("4343\n")
    monkeypatch.setattr(sup, "pid_running", lambda pid: pid == 4242)
    killed = []
    monkeypatch.setattr(sup, "kill_pid", lambda pid, timeout_s=3.0: killed.append(pid))

    ps = sup.ProcessSupervisor(tmp_path)
    assert ps.stop_all() == [4242]
    assert killed == [4242]


def test_stop_all_never_kills_self(tmp_path, monkeypatch):
    (tmp_path / "pid").write_text(f"{os.getpid()}\n")
    (tmp_path / "odd.pid").write_text(f"{os.getpid()}\n")
    monkeypatch.setattr(sup, "kill_pid", lambda pid, timeout_s=3.0: pytest.fail("killed self"))
    assert sup.ProcessSupervisor(tmp_path).stop_all() == []


def test_stop_all_on_missing_dir(tmp_path):
    assert sup.ProcessSupervisor(tmp_path / "gone").stop_all() == []


def test_resolve_binary_missing(monkeypatch):
    monkeypatch.setattr(sup.shutil, "which", lambda name: None)
    monkeypatch.setattr(sup.os.path, "isfile", lambda p: False)
    with pytest.raises(DependencyError) as exc:
        sup.resolve_binary("wpa_supplicant")
    assert exc.value.code == "wpa_supplicant_not_found"
    assert exc.value.tool == "wpa_supplicant"


def test_resolve_binary_env_override(tmp_path, monkeypatch):
    fake = tmp_path / "wpa_supplicant"
    fake.write_text("#!/bin/sh\n")
    fake.chmod(0o755)
    monkeypatch.setenv("STALINK_WPA_SUPPLICANT", str(fake))
    assert sup.resolve_binary("wpa_supplicant", "STALINK_WPA_SUPPLICANT") == str(fake)


def test_resolv_backup_and_restore(tmp_path):
    resolv = tmp_path / "resolv.conf"
    resolv.write_text("nameserver 1.1.1.1\n")
    conf_dir = tmp_path / "inst"
    conf_dir.mkdir()

    assert sup.backup_resolv(resolv, conf_dir) == conf_dir / sup.RESOLV_BACKUP
    resolv.write_text("nameserver 10.0.0.1\n")

    assert sup.restore_resolv(resolv, conf_dir) is True
    assert resolv.read_text() == "nameserver 1.1.1.1\n"
    assert sup.restore_resolv(resolv, conf_dir) is False


def test_command_builders(tmp_path):
    assert build_supplicant_cmd(
        binary="/sbin/wpa_supplicant", ifname="wlan0", driver="nl80211", conf_path="/x/w.conf"
    ) == ["/sbin/wpa_supplicant", "-i", "wlan0", "-D", "nl80211", "-c", "/x/w.conf"]
    assert build_dhclient_cmd(binary="dhclient", ifname="wlan0", conf_dir=tmp_path) == [
        "dhclient", "-d", "-pf", str(tmp_path / "dhclient.pid"),
        "-lf", str(tmp_path / "dhclient.leases"), "wlan0",
    ]
    assert build_haveged_cmd(binary="haveged", pidfile=tmp_path / "h.pid") == [
        "haveged", "-w", "1024", "-p", str(tmp_path / "h.pid"),
    ]
