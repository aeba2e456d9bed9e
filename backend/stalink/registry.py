import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from stalink.lock import GlobalLock

log = logging.getLogger("stalink.registry")

DIR_PREFIX = "stalink."
DIR_INFIX = ".conf."
PID_FILE = "pid"
IFACE_FILE = "wifi_iface"


@dataclass(frozen=True)
class RunningInstance:
    pid: int
    requested_iface: str
    actual_iface: str
    conf_dir: Path

    def describe(self) -> str:
        if self.requested_iface == self.actual_iface:
            return f"{self.pid} {self.requested_iface}"
        return f"{self.pid} {self.requested_iface} ({self.actual_iface})"


def read_pid_file(path: Path) -> Optional[int]:
    if not path.exists():
        return None
    try:
        raw = path.read_text(errors="ignore").strip()
    except Exception:
        return None
    if not raw:
        return None
    try:
        return int(raw.split()[0])
    except Exception:
        return None


def pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    return Path(f"/proc/{pid}").exists()


def _read_first_line(path: Path) -> Optional[str]:
    try:
        raw = path.read_text(errors="ignore").strip()
    except Exception:
        return None
    if not raw:
        return None
    return raw.splitlines()[0].strip() or None


def requested_iface_from_dir(conf_dir: Path) -> Optional[str]:
    name = conf_dir.name
    if not name.startswith(DIR_PREFIX) or DIR_INFIX not in name:
        return None
    return name[len(DIR_PREFIX):].split(DIR_INFIX, 1)[0] or None


def candidate_conf_dirs(root: Path) -> List[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.glob(f"{DIR_PREFIX}*{DIR_INFIX}*") if p.is_dir())


def _write_readonly(path: Path, payload: str) -> None:
    path.write_text(payload, encoding="utf-8")
    os.chmod(path, 0o444)


def allocate(root: Path, requested_iface: str, pid: Optional[int] = None) -> Path:
    """
    Create this run's instance directory. Caller must hold the global lock.
    """
    root.mkdir(parents=True, exist_ok=True)
    conf_dir = Path(
        tempfile.mkdtemp(prefix=f"{DIR_PREFIX}{requested_iface}{DIR_INFIX}", dir=str(root))
    )
    # Readable by everyone so --list-running works unprivileged; writable by root only.
    os.chmod(conf_dir, 0o755)
    _write_readonly(conf_dir / PID_FILE, f"{pid or os.getpid()}\n")
    _write_readonly(conf_dir / IFACE_FILE, f"{requested_iface}\n")
    log.info("instance_dir_allocated conf_dir=%s", conf_dir, extra={"conf_dir": str(conf_dir)})
    return conf_dir


def set_actual_iface(conf_dir: Path, iface: str) -> None:
    path = conf_dir / IFACE_FILE
    try:
        os.chmod(path, 0o644)
    except FileNotFoundError:
        pass
    _write_readonly(path, f"{iface}\n")


def _scan(root: Path) -> List[RunningInstance]:
    out: List[RunningInstance] = []
    for conf_dir in candidate_conf_dirs(root):
        pid = read_pid_file(conf_dir / PID_FILE)
        actual = _read_first_line(conf_dir / IFACE_FILE)
        if pid is None or not actual:
            continue
        if not pid_running(pid):
            # Stale: only the owner's cleanup removes it.
            continue
        requested = requested_iface_from_dir(conf_dir) or actual
        out.append(
            RunningInstance(pid=pid, requested_iface=requested, actual_iface=actual, conf_dir=conf_dir)
        )
    return out


def list_running(root: Path, lock: Optional[GlobalLock] = None) -> List[RunningInstance]:
    if lock is None:
        return _scan(root)
    with lock.held():
        return _scan(root)


def get_pid_from_interface(
    root: Path, iface: str, lock: Optional[GlobalLock] = None
) -> Optional[int]:
    for inst in list_running(root, lock=lock):
        if inst.actual_iface == iface:
            return inst.pid
    return None


def get_interface_from_pid(
    root: Path, pid: int, lock: Optional[GlobalLock] = None
) -> Optional[str]:
    for inst in list_running(root, lock=lock):
        if inst.pid == pid:
            return inst.actual_iface
    return None


def find_instance(
    root: Path, target: str, lock: Optional[GlobalLock] = None
) -> Optional[RunningInstance]:
    """Resolve a PID or interface name to a live instance."""
    running = list_running(root, lock=lock)
    target = str(target).strip()
    if target.isdigit():
        for inst in running:
            if inst.pid == int(target):
                return inst
    for inst in running:
        if inst.actual_iface == target:
            return inst
    for inst in running:
        if inst.requested_iface == target:
            return inst
    return None


def has_other_instances(root: Path, exclude: Optional[Path] = None) -> bool:
    """True if any live instance other than ``exclude`` still owns a directory."""
    for inst in _scan(root):
        if exclude is not None and inst.conf_dir == exclude:
            continue
        return True
    return False
