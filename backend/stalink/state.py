import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping

STATE_FILE = "state.json"

# Guards load-modify-save cycles between the main thread and the watchdog.
_LOCK = threading.Lock()

SCHEMA_VERSION = 1

DEFAULT_STATE: Dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,
    "phase": "init",
    "pid": None,
    "requested_iface": None,
    "wifi_iface": None,
    "ssid": None,
    "security_mode": None,
    "original_mac": None,
    "mac_changed": False,
    "dhcp": False,
    "daemonized": False,
    "children": {},
    "last_error": None,
    "updated_ts": None,
}


def _fresh() -> Dict[str, Any]:
    state = dict(DEFAULT_STATE)
    state["children"] = {}
    return state


def _merge(state: Dict[str, Any], changes: Mapping[str, Any]) -> Dict[str, Any]:
    # "children" accumulates per-process records; every other key is replaced.
    for key, value in changes.items():
        if key == "children" and isinstance(value, dict):
            state["children"].update(value)
        else:
            state[key] = value
    return state


def load_state(conf_dir: Path) -> Dict[str, Any]:
    """Read state.json from an instance dir. Missing or corrupt files yield defaults."""
    try:
        data = json.loads((conf_dir / STATE_FILE).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return _fresh()
    if not isinstance(data, dict):
        return _fresh()
    return _merge(_fresh(), data)


def save_state(conf_dir: Path, state: Dict[str, Any]) -> None:
    state.setdefault("schema_version", SCHEMA_VERSION)
    path = conf_dir / STATE_FILE
    tmp = path.with_name(STATE_FILE + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, sort_keys=True)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass  # tmpfs and some overlay mounts reject fsync
    # Non-secret; readable for --list-running.
    os.chmod(tmp, 0o644)
    os.replace(tmp, path)


def update_state(conf_dir: Path, **kwargs) -> Dict[str, Any]:
    """
    Load-modify-save under a lock. A vanished instance dir (cleanup already
    ran) is not an error; the update is dropped.
    """
    with _LOCK:
        if not conf_dir.is_dir():
            return _fresh()
        state = _merge(load_state(conf_dir), kwargs)
        state["updated_ts"] = int(time.time())
        try:
            save_state(conf_dir, state)
        except FileNotFoundError:
            pass
        return state
