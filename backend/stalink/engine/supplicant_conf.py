import enum
import os
from typing import List, Optional, Sequence

from stalink.errors import ValidationError


class SecurityMode(enum.Enum):
    OPEN = "open"
    WEP = "wep"
    WPA_PSK = "wpa_psk"
    SAE = "sae"
    OWE = "owe"


_PROTO_BY_WPA_VERSION = {
    "1": "WPA",
    "2": "RSN",
    "1+2": "WPA RSN",
}


def select_security_mode(
    *,
    has_passphrase: bool,
    wep: bool = False,
    sae: bool = False,
    owe: bool = False,
    psk: bool = False,
) -> SecurityMode:
    """
    Map the requested flags onto exactly one network template.

    Contradictory combinations raise ValidationError rather than silently
    picking one.
    """
    if sum(1 for flag in (wep, sae, owe) if flag) > 1:
        raise ValidationError("conflicting_security_flags", "wep/sae/owe")
    if psk and (sae or owe):
        raise ValidationError("conflicting_security_flags", "psk")

    if has_passphrase:
        if owe:
            raise ValidationError("owe_requires_no_passphrase")
        if wep:
            return SecurityMode.WEP
        if sae:
            return SecurityMode.SAE
        return SecurityMode.WPA_PSK

    if wep or sae or psk:
        raise ValidationError("security_mode_requires_passphrase")
    if owe:
        return SecurityMode.OWE
    return SecurityMode.OPEN


def _quote(value: str) -> str:
    return f'"{value}"'


def _ssid_value(ssid: str) -> str:
    # Unquoted hex is the only safe form for control characters and newlines.
    if ssid.isprintable():
        return _quote(ssid)
    return ssid.encode("utf-8").hex()


def render_network_block(
    mode: SecurityMode,
    *,
    ssid: str,
    passphrase: Optional[str] = None,
    hidden: bool = False,
    wpa_version: str = "1+2",
    pairwise: Sequence[str] = ("CCMP", "TKIP"),
    group: Sequence[str] = ("CCMP", "TKIP"),
    use_psk: bool = False,
) -> List[str]:
    lines = [f"ssid={_ssid_value(ssid)}"]
    if hidden:
        lines.append("scan_ssid=1")

    if mode is SecurityMode.WPA_PSK:
        proto = _PROTO_BY_WPA_VERSION.get(wpa_version)
        if proto is None:
            raise ValidationError("invalid_wpa_version", wpa_version)
        lines += [
            "key_mgmt=WPA-PSK",
            f"proto={proto}",
            f"pairwise={' '.join(pairwise)}",
            f"group={' '.join(group)}",
            f"psk={passphrase if use_psk else _quote(passphrase or '')}",
        ]
    elif mode is SecurityMode.SAE:
        lines += [
            "key_mgmt=SAE",
            "proto=RSN",
            "ieee80211w=2",
            f"psk={_quote(passphrase or '')}",
        ]
    elif mode is SecurityMode.WEP:
        # WEP never carries proto/pairwise/group, whatever the WPA options say.
        lines += [
            "key_mgmt=NONE",
            f"wep_key0={passphrase if use_psk else _quote(passphrase or '')}",
            "wep_tx_keyidx=0",
        ]
    elif mode is SecurityMode.OWE:
        lines += [
            "key_mgmt=OWE",
            "proto=RSN",
            "pairwise=CCMP",
            "ieee80211w=2",
        ]
    else:
        lines.append("key_mgmt=NONE")
    return lines


def render_supplicant_conf(
    mode: SecurityMode,
    *,
    ctrl_dir: Optional[str] = None,
    **network,
) -> str:
    lines: List[str] = []
    if ctrl_dir:
        lines.append(f"ctrl_interface=DIR={ctrl_dir}")
    lines.append("network={")
    lines += [f"    {line}" for line in render_network_block(mode, **network)]
    lines.append("}")
    return "\n".join(lines) + "\n"


def write_supplicant_conf(path: str, mode: SecurityMode, **kwargs) -> None:
    payload = render_supplicant_conf(mode, **kwargs)
    # Holds the passphrase; created 0600 before anything is written.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(payload)
    os.chmod(path, 0o600)
