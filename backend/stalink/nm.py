import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Set

from stalink.lock import GlobalLock

log = logging.getLogger("stalink.nm")

_KEYFILE_SECTION = "[keyfile]"
_UNMANAGED_KEY = "unmanaged-devices"
_CMD_TIMEOUT_S = 5.0


def _nmcli_path() -> Optional[str]:
    return shutil.which("nmcli")


def _run(cmd: List[str], timeout_s: float = _CMD_TIMEOUT_S) -> Optional[subprocess.CompletedProcess]:
    """None when the tool hangs or cannot be started."""
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    except subprocess.TimeoutExpired:
        log.warning("nm_cmd_timeout cmd=%s timeout_s=%s", cmd[:3], timeout_s)
    except OSError as exc:
        log.warning("nm_cmd_failed cmd=%s err=%s", cmd[:3], exc)
    return None


def is_running() -> bool:
    nmcli = _nmcli_path()
    if not nmcli:
        return False
    p = _run([nmcli, "-t", "-f", "RUNNING", "g"], timeout_s=3.0)
    return p is not None and p.returncode == 0 and (p.stdout or "").strip() == "running"


def _token(ifname: str) -> str:
    return f"interface-name:{ifname}"


def _split_values(raw: str) -> List[str]:
    return [v.strip() for v in raw.split(";") if v.strip()]


def _section_bounds(lines: List[str]) -> Optional[tuple]:
    start = None
    for i, line in enumerate(lines):
        s = line.strip()
        if s.lower() == _KEYFILE_SECTION:
            start = i
            continue
        if start is not None and s.startswith("[") and s.endswith("]"):
            return start, i
    if start is None:
        return None
    return start, len(lines)


def unmanaged_entries(conf_path: Path) -> List[str]:
    if not conf_path.exists():
        return []
    lines = conf_path.read_text(errors="ignore").splitlines()
    bounds = _section_bounds(lines)
    if not bounds:
        return []
    for line in lines[bounds[0] + 1:bounds[1]]:
        s = line.strip()
        if s.startswith(_UNMANAGED_KEY) and "=" in s:
            return _split_values(s.split("=", 1)[1])
    return []


def _write_conf(conf_path: Path, lines: List[str]) -> None:
    mode = 0o644
    try:
        mode = conf_path.stat().st_mode & 0o7777
    except FileNotFoundError:
        conf_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = conf_path.with_name(conf_path.name + ".stalink.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(tmp, mode)
    os.replace(tmp, conf_path)


def add_unmanaged_entry(conf_path: Path, ifname: str) -> bool:
    """
    Append interface-name:<ifname> to [keyfile] unmanaged-devices.
    Returns False if the entry was already there (someone else owns it).
    """
    token = _token(ifname)
    lines = conf_path.read_text(errors="ignore").splitlines() if conf_path.exists() else []
    bounds = _section_bounds(lines)
    if bounds is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines += [_KEYFILE_SECTION, f"{_UNMANAGED_KEY}={token}"]
        _write_conf(conf_path, lines)
        return True

    start, end = bounds
    for i in range(start + 1, end):
        s = lines[i].strip()
        if s.startswith(_UNMANAGED_KEY) and "=" in s:
            values = _split_values(s.split("=", 1)[1])
            if token in values:
                return False
            values.append(token)
            lines[i] = f"{_UNMANAGED_KEY}={';'.join(values)}"
            _write_conf(conf_path, lines)
            return True

    lines.insert(start + 1, f"{_UNMANAGED_KEY}={token}")
    _write_conf(conf_path, lines)
    return True


def remove_unmanaged_entry(conf_path: Path, ifname: str) -> bool:
    if not conf_path.exists():
        return False
    token = _token(ifname)
    lines = conf_path.read_text(errors="ignore").splitlines()
    bounds = _section_bounds(lines)
    if not bounds:
        return False
    start, end = bounds
    for i in range(start + 1, end):
        s = lines[i].strip()
        if not (s.startswith(_UNMANAGED_KEY) and "=" in s):
            continue
        values = _split_values(s.split("=", 1)[1])
        if token not in values:
            return False
        values = [v for v in values if v != token]
        if values:
            lines[i] = f"{_UNMANAGED_KEY}={';'.join(values)}"
        else:
            del lines[i]
        _write_conf(conf_path, lines)
        return True
    return False


def reload_config() -> bool:
    nmcli = _nmcli_path()
    if nmcli:
        p = _run([nmcli, "general", "reload"])
        if p is not None and p.returncode == 0:
            return True
    pkill = shutil.which("pkill")
    if not pkill:
        return False
    p = _run([pkill, "-HUP", "-x", "NetworkManager"])
    return p is not None and p.returncode == 0


def iface_is_unmanaged(ifname: str) -> bool:
    nmcli = _nmcli_path()
    if not nmcli:
        return False
    p = _run([nmcli, "-t", "-f", "DEVICE,STATE", "d"])
    if p is None:
        return False
    for raw in (p.stdout or "").splitlines():
        dev, _, state = raw.strip().partition(":")
        if dev == ifname:
            return state.strip().startswith("unmanaged")
    # Unknown to NM means NM leaves it alone.
    return True


def wait_until_unmanaged(
    ifname: str,
    attempts: int = 10,
    poll_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    for attempt in range(attempts):
        if iface_is_unmanaged(ifname):
            return True
        if attempt < attempts - 1:
            sleep(poll_s)
    log.warning("nm_unmanaged_timeout iface=%s attempts=%s", ifname, attempts, extra={"iface": ifname})
    return False


class UnmanagedTracker:
    """
    Remembers which unmanaged-devices entries this instance added, so cleanup
    never removes entries that belong to the user or another instance.
    """

    def __init__(self, conf_path: Path, lock: GlobalLock):
        self.conf_path = Path(conf_path)
        self.lock = lock
        self.added: Set[str] = set()

    def add(self, ifname: str) -> bool:
        with self.lock.held():
            added = add_unmanaged_entry(self.conf_path, ifname)
            if added:
                self.added.add(ifname)
                log.info("nm_unmanaged_added iface=%s", ifname, extra={"iface": ifname})
                reload_config()
        return added

    def remove_all(self) -> List[str]:
        removed: List[str] = []
        if not self.added:
            return removed
        with self.lock.held():
            for ifname in sorted(self.added):
                try:
                    if remove_unmanaged_entry(self.conf_path, ifname):
                        removed.append(ifname)
                        log.info("nm_unmanaged_removed iface=%s", ifname, extra={"iface": ifname})
                except OSError as exc:
                    log.error("nm_unmanaged_remove_failed iface=%s err=%s", ifname, exc)
                self.added.discard(ifname)
            if removed and is_running():
                reload_config()
        return removed
