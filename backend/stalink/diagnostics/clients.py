from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from stalink import registry
from stalink.lock import GlobalLock


@dataclass(frozen=True)
class Client:
    mac: str
    ip: Optional[str] = None
    signal_dbm: Optional[int] = None
    tx_bitrate_mbps: Optional[float] = None
    rx_bitrate_mbps: Optional[float] = None
    inactive_ms: Optional[int] = None
    source: str = "unknown"  # iw | neigh

    def describe(self) -> str:
        parts = [self.mac]
        if self.ip:
            parts.append(f"ip={self.ip}")
        if self.signal_dbm is not None:
            parts.append(f"signal={self.signal_dbm}dBm")
        if self.tx_bitrate_mbps is not None:
            parts.append(f"tx={self.tx_bitrate_mbps:g}Mbit/s")
        if self.rx_bitrate_mbps is not None:
            parts.append(f"rx={self.rx_bitrate_mbps:g}Mbit/s")
        return " ".join(parts)


_MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$", re.IGNORECASE)
_NEIGH_STATES = frozenset(
    ("INCOMPLETE", "REACHABLE", "STALE", "DELAY", "PROBE", "FAILED", "NOARP", "PERMANENT")
)

# `iw station dump` field -> (Client attribute, pattern, converter)
_STATION_FIELDS = {
    "inactive time": ("inactive_ms", re.compile(r"(\d+)\s*ms"), int),
    "signal": ("signal_dbm", re.compile(r"(-?\d+)"), int),
    "tx bitrate": ("tx_bitrate_mbps", re.compile(r"([\d.]+)\s*mbit/s"), float),
    "rx bitrate": ("rx_bitrate_mbps", re.compile(r"([\d.]+)\s*mbit/s"), float),
}


def _is_mac(s: str) -> bool:
    return bool(_MAC_RE.match(s.strip()))


def _run(cmd: List[str], timeout_s: float) -> Tuple[int, str, str]:
    """
    Returns (returncode, stdout, stderr); never raises and never blocks past timeout_s.
    """
    env = dict(os.environ, LC_ALL="C", LANG="C")
    try:
        p = subprocess.run(cmd, text=True, capture_output=True, timeout=timeout_s, env=env)
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout if isinstance(exc.stdout, str) else ""
        return 124, partial.strip(), ""
    except OSError as exc:
        return 127, "", f"{type(exc).__name__}: {exc}"
    return p.returncode, (p.stdout or "").strip(), (p.stderr or "").strip()


def _after(tokens: List[str], key: str) -> Optional[str]:
    try:
        return tokens[tokens.index(key) + 1]
    except (ValueError, IndexError):
        return None


def parse_ip_neigh(text: str) -> List[Dict[str, Optional[str]]]:
    """
    Parse `ip neigh` lines such as
    ``192.168.1.1 dev wlan0 lladdr 3c:a9:f4:12:34:56 REACHABLE``.
    """
    entries: List[Dict[str, Optional[str]]] = []
    for raw in text.splitlines():
        tokens = raw.split()
        if not tokens:
            continue
        mac = _after(tokens, "lladdr")
        states = [t for t in tokens[1:] if t in _NEIGH_STATES]
        entries.append({
            "ip": tokens[0],
            "dev": _after(tokens, "dev"),
            "mac": mac.lower() if mac else None,
            "state": states[-1] if states else None,
        })
    return entries


def _ip_neigh(ifname: str) -> Dict[str, str]:
    rc, stdout, _ = _run(["ip", "neigh", "show", "dev", ifname], timeout_s=0.8)
    if rc != 0:
        return {}
    return {
        e["mac"]: e["ip"]
        for e in parse_ip_neigh(stdout)
        if e["mac"] and e["ip"] and _is_mac(e["mac"]) and e["dev"] in (None, ifname)
    }


def parse_station_dump(text: str) -> List[Client]:
    """
    Parse `iw dev <if> station dump`. Blocks start with
    ``Station <mac> (on <if>)``; indented ``key: value`` lines follow.
    """
    blocks: List[Tuple[str, Dict[str, Any]]] = []
    fields: Optional[Dict[str, Any]] = None
    for line in text.splitlines():
        if line.startswith("Station "):
            parts = line.split()
            fields = None
            if len(parts) >= 2 and _is_mac(parts[1]):
                fields = {}
                blocks.append((parts[1].lower(), fields))
            continue
        if fields is None or ":" not in line:
            continue
        key, _, value = line.strip().lower().partition(":")
        field = _STATION_FIELDS.get(key.strip())
        if field is None:
            continue
        attr, pattern, conv = field
        m = pattern.search(value)
        if m:
            fields[attr] = conv(m.group(1))
    return [Client(mac=mac, source="iw", **fields) for mac, fields in blocks]


def _iw_station_dump(ifname: str) -> Tuple[Optional[List[Client]], str]:
    rc, stdout, stderr = _run(["iw", "dev", ifname, "station", "dump"], timeout_s=1.2)
    if rc != 0:
        return None, f"iw_station_dump_failed(rc={rc}):{stderr[:120]}"
    return parse_station_dump(stdout), ""


def get_clients_snapshot(ifname: str) -> Dict[str, Any]:
    """
    Returns {"iface": ..., "clients": [...], "warnings": [...]}.
    Never raises.
    """
    warnings: List[str] = []
    iw_clients, warn = _iw_station_dump(ifname)
    if warn:
        warnings.append(warn)
    mac_to_ip = _ip_neigh(ifname)

    by_mac: Dict[str, Client] = {
        c.mac: replace(c, ip=c.ip or mac_to_ip.get(c.mac)) for c in (iw_clients or [])
    }
    # Neighbours the radio no longer lists (gateway behind the AP, etc.).
    for mac, ip in mac_to_ip.items():
        by_mac.setdefault(mac, Client(mac=mac, ip=ip, source="neigh"))

    return {
        "iface": ifname,
        "clients": [by_mac[k] for k in sorted(by_mac.keys())],
        "warnings": warnings,
    }


def list_clients(
    root: Path, target: str, lock: Optional[GlobalLock] = None
) -> Optional[Dict[str, Any]]:
    """
    Resolve a PID or interface to a running instance and snapshot its peers.
    Returns None if nothing live matched.
    """
    inst = registry.find_instance(root, target, lock=lock)
    if inst is None:
        return None
    snap = get_clients_snapshot(inst.actual_iface)
    snap["pid"] = inst.pid
    return snap
