import atexit
import enum
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from stalink import netif, nm, preflight, registry
from stalink.config import StationConfig
from stalink.control import (
    ControlChannel,
    ControlKind,
    ControlMessage,
    install_signal_handlers,
    restore_signal_handlers,
)
from stalink.engine.commands import build_dhclient_cmd, build_supplicant_cmd
from stalink.engine.supervisor import (
    ProcessSupervisor,
    backup_resolv,
    resolve_binary,
    restore_resolv,
)
from stalink.engine.supplicant_conf import write_supplicant_conf
from stalink.errors import EXIT_FAILURE, EXIT_OK, FatalError, StalinkError
from stalink.lock import GlobalLock
from stalink.state import update_state
from stalink.watchdog import EntropyWatchdog

log = logging.getLogger("stalink.lifecycle")

SUPPLICANT_CONF = "wpa_supplicant.conf"
CTRL_DIR = "wpa_supplicant"

# How often the foreground wait looks at wpa_supplicant between messages.
_CHILD_POLL_S = 1.0
_TAIL_LINES_LOGGED = 20


class Phase(enum.Enum):
    INIT = "init"
    LOCK_ACQUIRED = "lock_acquired"
    DIR_ALLOCATED = "dir_allocated"
    INTERFACE_PREPARED = "interface_prepared"
    ASSOCIATING = "associating"
    RUNNING = "running"
    CLEANING_UP = "cleaning_up"
    TERMINATED = "terminated"


@dataclass
class Instance:
    pid: int
    requested_iface: str
    wifi_iface: str
    conf_dir: Optional[Path] = None
    original_mac: Optional[str] = None
    mac_changed: bool = False
    dhcp: bool = True
    daemonized: bool = False


class Controller:
    """
    Drives one instance from INIT to TERMINATED.

    Every exit path (normal return, STOP, FATAL, KeyboardInterrupt, an
    exception, interpreter exit) funnels into cleanup(), which runs once.
    """

    def __init__(
        self,
        cfg: StationConfig,
        *,
        lock: Optional[GlobalLock] = None,
        channel: Optional[ControlChannel] = None,
        supervisor_factory: Callable[[Path], ProcessSupervisor] = ProcessSupervisor,
        install_signals: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.settings = cfg.settings
        self.lock = lock or GlobalLock(self.settings.tmp_root)
        self.channel = channel or ControlChannel()
        self.instance = Instance(
            pid=os.getpid(),
            requested_iface=cfg.wifi_iface,
            wifi_iface=cfg.wifi_iface,
            dhcp=cfg.dhcp,
            daemonized=cfg.daemonize,
        )
        self.nm = nm.UnmanagedTracker(self.settings.nm_conf_path, self.lock)
        self.watchdog = EntropyWatchdog(self.settings, self.lock, self.channel)
        self.supervisor: Optional[ProcessSupervisor] = None
        self._supervisor_factory = supervisor_factory
        self._install_signals = install_signals
        self._sleep = sleep
        self._phase = Phase.INIT
        self._cleanup_guard = threading.Lock()
        self._cleaned = False

    @property
    def phase(self) -> Phase:
        return self._phase

    def _set_phase(self, phase: Phase) -> None:
        self._phase = phase
        log.info(
            "phase:%s", phase.value,
            extra={"phase": phase.value, "iface": self.instance.wifi_iface, "pid": self.instance.pid},
        )
        if self.instance.conf_dir is not None:
            update_state(self.instance.conf_dir, phase=phase.value)

    def _stop_pending(self) -> bool:
        if self.channel.stop_requested:
            log.info("start_interrupted phase=%s", self._phase.value)
            return True
        return False

    # ---- start ----

    def _allocate(self) -> None:
        inst = self.instance
        inst.conf_dir = registry.allocate(self.settings.tmp_root, inst.requested_iface, pid=inst.pid)
        self.supervisor = self._supervisor_factory(inst.conf_dir)
        mode = self.cfg.security_mode
        update_state(
            inst.conf_dir,
            pid=inst.pid,
            requested_iface=inst.requested_iface,
            wifi_iface=inst.wifi_iface,
            ssid=self.cfg.ssid,
            security_mode=mode.value if mode else "config_file",
            dhcp=inst.dhcp,
            daemonized=inst.daemonized,
        )

    def _prepare_interface(self) -> None:
        iface = self.instance.wifi_iface
        if nm.is_running():
            if self.nm.add(iface):
                nm.wait_until_unmanaged(
                    iface,
                    attempts=self.settings.nm_unmanaged_poll_attempts,
                    poll_s=self.settings.nm_unmanaged_poll_s,
                    sleep=self._sleep,
                )

        netif.iface_down(iface, check=True)
        netif.flush_ip(iface, check=True)

        if self.cfg.mac:
            # Recorded before the change so a crash mid-way can still be undone.
            self.instance.original_mac = netif.get_macaddr(iface)
            update_state(self.instance.conf_dir, original_mac=self.instance.original_mac)
            netif.set_macaddr(iface, self.cfg.mac)
            self.instance.mac_changed = True
            update_state(self.instance.conf_dir, mac_changed=True)

    def _supplicant_conf_path(self) -> str:
        if self.cfg.config_file:
            return self.cfg.config_file
        conf_dir = self.instance.conf_dir
        path = conf_dir / SUPPLICANT_CONF
        write_supplicant_conf(
            str(path),
            self.cfg.security_mode,
            ctrl_dir=str(conf_dir / CTRL_DIR),
            ssid=self.cfg.ssid or "",
            passphrase=self.cfg.passphrase,
            hidden=self.cfg.hidden,
            wpa_version=self.cfg.wpa_version,
            pairwise=self.cfg.pairwise,
            group=self.cfg.group,
            use_psk=self.cfg.use_psk,
        )
        return str(path)

    def _spawn(self, name: str, cmd, fail_code: str) -> None:
        res = self.supervisor.spawn(name, cmd, early_fail_window_s=self.settings.supplicant_early_fail_s)
        if not res.ok:
            for line in res.output_tail[-_TAIL_LINES_LOGGED:]:
                log.error("%s: %s", name, line)
            raise FatalError(fail_code, res.error)
        update_state(self.instance.conf_dir, children={name: res.pid})

    def _associate(self) -> None:
        iface = self.instance.wifi_iface
        conf_path = self._supplicant_conf_path()
        netif.iface_up(iface, check=True)
        cmd = build_supplicant_cmd(
            binary=resolve_binary("wpa_supplicant"),
            ifname=iface,
            driver=self.cfg.driver,
            conf_path=conf_path,
        )
        self._spawn("wpa_supplicant", cmd, "wpa_supplicant_start_failed")

    def _start_services(self) -> None:
        conf_dir = self.instance.conf_dir
        if self.cfg.dhcp:
            backup_resolv(self.settings.resolv_conf_path, conf_dir)
            cmd = build_dhclient_cmd(
                binary=resolve_binary("dhclient"),
                ifname=self.instance.wifi_iface,
                conf_dir=conf_dir,
            )
            self._spawn("dhclient", cmd, "dhclient_start_failed")
        self.watchdog.start()

    def _start(self) -> None:
        with self.lock.held():
            self._set_phase(Phase.LOCK_ACQUIRED)
            self._allocate()
            self._set_phase(Phase.DIR_ALLOCATED)
            if self._stop_pending():
                return
            self._prepare_interface()
        self._set_phase(Phase.INTERFACE_PREPARED)
        if self._stop_pending():
            return

        self._set_phase(Phase.ASSOCIATING)
        self._associate()
        if self._stop_pending():
            return

        self._start_services()
        self._set_phase(Phase.RUNNING)

    def _wait(self) -> ControlMessage:
        while True:
            msg = self.channel.wait(timeout=_CHILD_POLL_S)
            if msg is not None:
                return msg
            if self.cfg.daemonize or self.supervisor is None:
                continue
            if not self.supervisor.is_alive("wpa_supplicant"):
                rc = self.supervisor.exit_code("wpa_supplicant")
                for line in self.supervisor.tail("wpa_supplicant")[-_TAIL_LINES_LOGGED:]:
                    log.error("wpa_supplicant: %s", line)
                log.error("wpa_supplicant_exited rc=%s", rc, extra={"code": "wpa_supplicant_exited"})
                return ControlMessage(ControlKind.FATAL, "wpa_supplicant_exited")

    def run(self) -> int:
        """
        Pre-flight, start, wait for STOP/FATAL, clean up. Returns the exit code.
        """
        try:
            preflight.enforce(self.cfg, lock=self.lock)
        except StalinkError as exc:
            log.error("%s (%s)", exc, exc.remediation, extra={"code": exc.code})
            return exc.exit_code

        self._set_phase(Phase.INIT)
        previous = install_signal_handlers(self.channel) if self._install_signals else {}
        atexit.register(self.cleanup)
        exit_code = EXIT_FAILURE
        try:
            self._start()
            msg = self._wait()
            if msg.kind is ControlKind.STOP:
                log.info("stop_received reason=%s", msg.reason)
                exit_code = EXIT_OK
            else:
                log.error("fatal_received reason=%s", msg.reason, extra={"code": msg.reason})
                self._record_error(msg.reason)
        except KeyboardInterrupt:
            log.info("stop_received reason=keyboard_interrupt")
            exit_code = EXIT_OK
        except StalinkError as exc:
            log.error("%s (%s)", exc, exc.remediation, extra={"code": exc.code})
            self._record_error(exc.code)
            exit_code = exc.exit_code
        except Exception:
            log.exception("unexpected_error")
            self._record_error("unexpected_error")
        finally:
            self.cleanup()
            atexit.unregister(self.cleanup)
            restore_signal_handlers(previous)
        return exit_code

    def _record_error(self, code: str) -> None:
        if self.instance.conf_dir is not None:
            update_state(self.instance.conf_dir, last_error=code)

    # ---- cleanup ----

    def _step(self, name: str, fn: Callable[[], object]) -> None:
        try:
            fn()
        except Exception:
            # Keep going: a failed step must not leave the later ones undone.
            log.exception("cleanup_step_failed step=%s", name)

    def _remove_conf_dir(self) -> None:
        conf_dir = self.instance.conf_dir
        if conf_dir is None or not conf_dir.exists():
            return
        shutil.rmtree(conf_dir)
        log.info("instance_dir_removed conf_dir=%s", conf_dir, extra={"conf_dir": str(conf_dir)})

    def _restore_mac(self) -> None:
        inst = self.instance
        if not inst.mac_changed or not inst.original_mac:
            return
        netif.iface_down(inst.wifi_iface)
        netif.set_macaddr(inst.wifi_iface, inst.original_mac)
        inst.mac_changed = False

    def _reset_link(self) -> None:
        if not netif.iface_exists(self.instance.wifi_iface):
            return
        netif.iface_down(self.instance.wifi_iface)
        netif.iface_up(self.instance.wifi_iface)

    def _release_lock(self) -> None:
        self.lock.release_all()
        self.lock.discard_counter()
        others = registry.has_other_instances(self.settings.tmp_root, exclude=self.instance.conf_dir)
        self.lock.remove_lock_file_if_idle(others)

    def cleanup(self) -> None:
        """
        Undo everything this instance changed. Safe to call repeatedly and
        from any exit path; only the first call does work.
        """
        with self._cleanup_guard:
            if self._cleaned:
                return
            self._cleaned = True

        self._set_phase(Phase.CLEANING_UP)
        conf_dir = self.instance.conf_dir

        self._step("watchdog", lambda: self.watchdog.stop(timeout_s=self.settings.kill_timeout_s))
        if self.supervisor is not None:
            self._step("children", lambda: self.supervisor.stop_all(timeout_s=self.settings.kill_timeout_s))
        if conf_dir is not None:
            self._step("resolv", lambda: restore_resolv(self.settings.resolv_conf_path, conf_dir))
        self._step("conf_dir", self._remove_conf_dir)
        self._step("mac", self._restore_mac)
        self._step("nm_unmanaged", self.nm.remove_all)
        self._step("link", self._reset_link)
        self._step("lock", self._release_lock)

        # The instance dir is gone; later phases are only logged.
        self.instance.conf_dir = None
        self._set_phase(Phase.TERMINATED)
