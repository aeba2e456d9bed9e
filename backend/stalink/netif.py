import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from stalink.errors import FatalError

log = logging.getLogger("stalink.netif")

_CMD_TIMEOUT_S = 4.0
_SYS_NET = Path("/sys/class/net")
_LINK_MAC_RE = re.compile(r"link/(?:ether|ieee802\.11)\s+([0-9a-fA-F:]{17})")
_IW_WIPHY_RE = re.compile(r"^wiphy\s+(\d+)$")

# AKM suite selector for SAE (WPA3-Personal), as printed by `iw phy <phy> info`.
SAE_AKM_SUITE = "00-0f-ac:8"
_SAE_FEATURE_LINE = "supports sae with authenticate command"


def _ip_bin() -> str:
    return shutil.which("ip") or "/usr/sbin/ip"


def _iw_bin() -> str:
    return shutil.which("iw") or "/usr/sbin/iw"


def _run(cmd: List[str], check: bool = True, timeout_s: float = _CMD_TIMEOUT_S) -> Tuple[int, str]:
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    except subprocess.TimeoutExpired as exc:
        out = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
        raise RuntimeError(f"cmd_timeout cmd={' '.join(cmd)} out={out.strip()}") from exc
    except FileNotFoundError as exc:
        if check:
            raise RuntimeError(f"cmd_not_found cmd={cmd[0]}") from exc
        return 127, str(exc)
    out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
    if check and p.returncode != 0:
        raise RuntimeError(f"cmd_failed rc={p.returncode} cmd={' '.join(cmd)} out={out.strip()}")
    return p.returncode, out


def iface_exists(ifname: str) -> bool:
    return (_SYS_NET / ifname).exists()


def is_wifi_interface(ifname: str) -> bool:
    if (_SYS_NET / ifname / "phy80211").exists() or (_SYS_NET / ifname / "wireless").exists():
        return True
    try:
        rc, _ = _run([_iw_bin(), "dev", ifname, "info"], check=False)
    except RuntimeError:
        return False
    return rc == 0


def get_phy(ifname: str) -> Optional[str]:
    name_file = _SYS_NET / ifname / "phy80211" / "name"
    try:
        name = name_file.read_text().strip()
        if name:
            return name
    except Exception:
        pass
    try:
        _, out = _run([_iw_bin(), "dev", ifname, "info"], check=False)
    except RuntimeError:
        return None
    for raw in out.splitlines():
        m = _IW_WIPHY_RE.match(raw.strip())
        if m:
            return f"phy{m.group(1)}"
    return None


def phy_info(phy: str) -> str:
    try:
        _, out = _run([_iw_bin(), "phy", phy, "info"], check=False)
    except RuntimeError:
        return ""
    return out


def phy_supports_sae(iw_text: str) -> bool:
    """
    True if the phy advertises the SAE AKM suite. Only matches inside the
    "Supported AKM suites" list: 00-0f-ac:8 in the cipher list is GCMP-128.
    """
    in_akm = False
    for raw in iw_text.splitlines():
        s = raw.strip()
        if not s:
            continue
        low = s.lower()
        if _SAE_FEATURE_LINE in low:
            return True
        if low.endswith(":") and "akm" in low:
            in_akm = True
            continue
        if in_akm:
            if s.startswith("*"):
                if SAE_AKM_SUITE in low:
                    return True
                continue
            in_akm = False
    return False


def adapter_supports_sae(ifname: str) -> bool:
    phy = get_phy(ifname)
    if not phy:
        return False
    return phy_supports_sae(phy_info(phy))


def parse_link_mac(text: str) -> Optional[str]:
    m = _LINK_MAC_RE.search(text or "")
    return m.group(1).lower() if m else None


def get_macaddr(ifname: str) -> Optional[str]:
    try:
        mac = (_SYS_NET / ifname / "address").read_text().strip().lower()
        if mac:
            return mac
    except Exception:
        pass
    try:
        _, out = _run([_ip_bin(), "link", "show", ifname], check=False)
    except RuntimeError:
        return None
    return parse_link_mac(out)


def set_macaddr(ifname: str, mac: str) -> None:
    try:
        _run([_ip_bin(), "link", "set", "dev", ifname, "address", mac], check=True)
    except RuntimeError as exc:
        raise FatalError("mac_set_failed", str(exc)) from exc
    log.info("mac_set iface=%s mac=%s", ifname, mac, extra={"iface": ifname})


def iface_down(ifname: str, check: bool = False) -> None:
    try:
        _run([_ip_bin(), "link", "set", "down", "dev", ifname], check=check)
    except RuntimeError as exc:
        raise FatalError("iface_down_failed", str(exc)) from exc


def iface_up(ifname: str, check: bool = False) -> None:
    try:
        _run([_ip_bin(), "link", "set", "up", "dev", ifname], check=check)
    except RuntimeError as exc:
        raise FatalError("iface_up_failed", str(exc)) from exc


def flush_ip(ifname: str, check: bool = False) -> None:
    try:
        _run([_ip_bin(), "addr", "flush", "dev", ifname], check=check)
    except RuntimeError as exc:
        raise FatalError("flush_failed", str(exc)) from exc
