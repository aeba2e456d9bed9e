import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, List, Optional

from stalink.errors import DependencyError
from stalink.registry import pid_running, read_pid_file

log = logging.getLogger("stalink.supervisor")

TAIL_MAX_LINES = 200
RESOLV_BACKUP = "resolv.conf.bak"


def resolve_binary(name: str, env_key: Optional[str] = None) -> str:
    override = os.environ.get(env_key) if env_key else None
    if override and os.path.isfile(override) and os.access(override, os.X_OK):
        return override
    p = shutil.which(name)
    if not p:
        for d in ("/usr/sbin", "/sbin"):
            cand = os.path.join(d, name)
            if os.path.isfile(cand) and os.access(cand, os.X_OK):
                return cand
        raise DependencyError(name)
    return p


def _child_env() -> Dict[str, str]:
    # Tool output is parsed in the C locale unless the caller pinned one.
    return dict(os.environ, LC_ALL=os.environ.get("LC_ALL", "C"), LANG=os.environ.get("LANG", "C"))


def _pump_output(stream, tail: Deque[str], label: str) -> None:
    with stream:
        try:
            for line in stream:
                line = line.rstrip("\n")
                tail.append(line)
                log.debug("%s: %s", label, line)
        except (OSError, ValueError):
            tail.append(f"[{label}] output closed unexpectedly")


def kill_process_group(pid: int, sig: int) -> None:
    """
    Signal the whole process group, falling back to the single PID.
    """
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return

    try:
        if pgid != os.getpgrp():
            os.killpg(pgid, sig)
            return
    except ProcessLookupError:
        return
    except PermissionError:
        pass

    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return


def kill_pid(pid: int, timeout_s: float = 3.0) -> None:
    try:
        kill_process_group(pid, signal.SIGTERM)
    except Exception:
        return

    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if not pid_running(pid):
            return
        time.sleep(0.05)

    try:
        kill_process_group(pid, signal.SIGKILL)
    except Exception:
        pass


@dataclass
class SpawnResult:
    ok: bool
    name: str
    pid: Optional[int]
    exit_code: Optional[int]
    output_tail: List[str]
    error: Optional[str]
    cmd: List[str]


class ProcessSupervisor:
    """
    Owns the child processes of one instance and records each PID as
    <conf_dir>/<name>.pid so any cleanup (even a later one) can find them.
    """

    def __init__(self, conf_dir: Path):
        self.conf_dir = Path(conf_dir)
        self._procs: Dict[str, subprocess.Popen] = {}
        self._tails: Dict[str, Deque[str]] = {}

    def pid_file(self, name: str) -> Path:
        return self.conf_dir / f"{name}.pid"

    def spawn(self, name: str, cmd: List[str], early_fail_window_s: float = 1.0) -> SpawnResult:
        tail: Deque[str] = deque(maxlen=TAIL_MAX_LINES)
        self._tails[name] = tail
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                close_fds=True,
                env=_child_env(),
                # Own session/PGID so the whole tree can be killed at once.
                start_new_session=True,
            )
        except Exception as e:
            return SpawnResult(
                ok=False, name=name, pid=None, exit_code=None, output_tail=[],
                error=f"spawn_failed: {e}", cmd=list(cmd),
            )

        self._procs[name] = proc
        # dhclient writes its own pidfile too; ours is written first and the content matches.
        try:
            self.pid_file(name).write_text(f"{proc.pid}\n", encoding="utf-8")
        except OSError as exc:
            log.warning("pidfile_write_failed name=%s err=%s", name, exc)

        reader: Optional[threading.Thread] = None
        if proc.stdout is not None:
            reader = threading.Thread(
                target=_pump_output,
                args=(proc.stdout, tail, name),
                name=f"stalink-{name}-reader",
                daemon=True,
            )
            reader.start()

        deadline = time.time() + early_fail_window_s
        while time.time() < deadline:
            rc = proc.poll()
            if rc is not None:
                # Let the reader drain what the child printed before dying.
                if reader is not None:
                    reader.join(timeout=1.0)
                self._procs.pop(name, None)
                self._remove_pid_file(name)
                return SpawnResult(
                    ok=False, name=name, pid=None, exit_code=rc, output_tail=list(tail),
                    error=f"{name}_exited_early: rc={rc}", cmd=list(cmd),
                )
            time.sleep(0.05)

        log.info("child_started name=%s pid=%s", name, proc.pid, extra={"pid": proc.pid})
        return SpawnResult(
            ok=True, name=name, pid=proc.pid, exit_code=None, output_tail=list(tail),
            error=None, cmd=list(cmd),
        )

    def is_alive(self, name: str) -> bool:
        proc = self._procs.get(name)
        return proc is not None and proc.poll() is None

    def exit_code(self, name: str) -> Optional[int]:
        proc = self._procs.get(name)
        return None if proc is None else proc.poll()

    def tail(self, name: str) -> List[str]:
        return list(self._tails.get(name, ()))

    def _remove_pid_file(self, name: str) -> None:
        try:
            self.pid_file(name).unlink()
        except FileNotFoundError:
            pass

    def recorded_pids(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if not self.conf_dir.is_dir():
            return out
        for path in sorted(self.conf_dir.glob("*.pid")):
            pid = read_pid_file(path)
            if pid is not None:
                out[path.stem] = pid
        return out

    def stop_all(self, timeout_s: float = 3.0) -> List[int]:
        """
        Terminate every child recorded in the instance dir. Idempotent:
        already-dead or missing children are skipped.
        """
        killed: List[int] = []
        # Our own Popen children first: wait() reaps them, /proc polling would not.
        for name, proc in list(self._procs.items()):
            if proc.poll() is None:
                log.info("child_stopping name=%s pid=%s", name, proc.pid, extra={"pid": proc.pid})
                kill_process_group(proc.pid, signal.SIGTERM)
                try:
                    proc.wait(timeout=timeout_s)
                except subprocess.TimeoutExpired:
                    kill_process_group(proc.pid, signal.SIGKILL)
                    try:
                        proc.wait(timeout=1.0)
                    except subprocess.TimeoutExpired:
                        log.error("child_kill_timeout name=%s pid=%s", name, proc.pid)
                killed.append(proc.pid)
            self._procs.pop(name, None)

        own = os.getpid()
        for name, pid in self.recorded_pids().items():
            if pid == own or pid in killed or not pid_running(pid):
                continue
            log.info("child_stopping name=%s pid=%s", name, pid, extra={"pid": pid})
            kill_pid(pid, timeout_s=timeout_s)
            killed.append(pid)
        return killed


def backup_resolv(resolv_path: Path, conf_dir: Path) -> Optional[Path]:
    if not resolv_path.exists():
        return None
    dst = conf_dir / RESOLV_BACKUP
    # Follow a symlinked resolv.conf (systemd-resolved) and keep its content only.
    shutil.copyfile(resolv_path, dst)
    log.info("resolv_backed_up src=%s", resolv_path)
    return dst


def restore_resolv(resolv_path: Path, conf_dir: Path) -> bool:
    backup = conf_dir / RESOLV_BACKUP
    if not backup.exists():
        return False
    shutil.copyfile(backup, resolv_path)
    try:
        backup.unlink()
    except FileNotFoundError:
        pass
    log.info("resolv_restored dst=%s", resolv_path)
    return True
