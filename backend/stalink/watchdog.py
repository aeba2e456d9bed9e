import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Optional

from stalink.config import Settings
from stalink.control import ControlChannel
from stalink.engine.commands import build_haveged_cmd
from stalink.lock import GlobalLock
from stalink.registry import pid_running, read_pid_file

log = logging.getLogger("stalink.watchdog")

HAVEGED_PIDFILE = "stalink.haveged.pid"


def read_entropy_avail(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except Exception:
        return None


def _proc_comm(pid: int) -> str:
    try:
        return Path(f"/proc/{pid}/comm").read_text().strip()
    except Exception:
        return ""


def haveged_running(pidfile: Optional[Path] = None) -> bool:
    if pidfile is not None:
        pid = read_pid_file(pidfile)
        if pid is not None and pid_running(pid):
            return True
    for name in os.listdir("/proc"):
        if name.isdigit() and _proc_comm(int(name)) == "haveged":
            return True
    return False


class EntropyWatchdog:
    """
    Background helper: keeps entropy up for the supplicant's key generation.
    Any unrecoverable problem goes to the controller as FATAL.
    """

    def __init__(self, settings: Settings, lock: GlobalLock, channel: ControlChannel):
        self.entropy_path = settings.entropy_avail_path
        self.threshold = settings.entropy_threshold
        self.interval_s = settings.watchdog_interval_s
        self.pidfile = settings.tmp_root / HAVEGED_PIDFILE
        self.lock = lock
        self.channel = channel
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._warned_missing = False

    def check_once(self) -> bool:
        """
        One watchdog pass. Returns False if a FATAL was reported.
        """
        with self.lock.held():
            entropy = read_entropy_avail(self.entropy_path)
            if entropy is None or entropy >= self.threshold:
                return True

            haveged = shutil.which("haveged")
            if not haveged:
                if not self._warned_missing:
                    log.warning("low_entropy_no_haveged entropy=%s; install haveged", entropy)
                    self._warned_missing = True
                return True

            if haveged_running(self.pidfile):
                return True

            log.info("low_entropy_starting_haveged entropy=%s", entropy)
            try:
                # haveged forks into the background; a captured pipe would stay open
                # in the daemon and block run() until the timeout.
                p = subprocess.run(
                    build_haveged_cmd(binary=haveged, pidfile=self.pidfile),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=5.0,
                )
                rc, err = p.returncode, ""
            except (OSError, subprocess.TimeoutExpired) as exc:
                rc, err = 127, str(exc)
            if rc != 0:
                log.error("haveged_start_failed rc=%s err=%s", rc, err, extra={"code": "haveged_start_failed"})
                self.channel.report_fatal("haveged_start_failed")
                return False
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                if not self.check_once():
                    return
            except Exception as exc:
                log.exception("watchdog_failed")
                self.channel.report_fatal(f"watchdog_failed:{getattr(exc, 'code', type(exc).__name__)}")
                return
            if self._stop.wait(self.interval_s):
                break

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="stalink-entropy-watchdog", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)
        self._thread = None
