import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from stalink.errors import ValidationError
from stalink.engine.supplicant_conf import SecurityMode, select_security_mode

CONFIG_PATH = Path("/etc/stalink/config.json")

DEFAULT_CONFIG: Dict[str, Any] = {
    # Shared root for instance dirs, the global lock and counter files.
    "tmp_root": "/tmp",
    "driver": "nl80211",

    # Files owned by other tools that we touch and restore.
    "nm_conf_path": "/etc/NetworkManager/NetworkManager.conf",
    "resolv_conf_path": "/etc/resolv.conf",

    # Entropy watchdog
    "entropy_avail_path": "/proc/sys/kernel/random/entropy_avail",
    "entropy_threshold": 1000,
    "watchdog_interval_s": 2.0,

    # NetworkManager needs a moment to drop an interface after a reload.
    "nm_unmanaged_poll_attempts": 10,
    "nm_unmanaged_poll_s": 1.0,

    "supplicant_early_fail_s": 1.0,
    "kill_timeout_s": 3.0,
}

_ENV_OVERRIDES = {
    "STALINK_TMP_ROOT": "tmp_root",
    "STALINK_NM_CONF": "nm_conf_path",
    "STALINK_RESOLV_CONF": "resolv_conf_path",
}

_MAC_RE = re.compile(r"^[0-9a-fA-F]{2}(:[0-9a-fA-F]{2}){5}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
# wpa_supplicant quotes passphrases verbatim; only printable ASCII is representable.
_PRINTABLE_RE = re.compile(r"[\x20-\x7e]*")
_WPA_VERSIONS = ("1", "2", "1+2")
_CIPHERS = {"CCMP", "TKIP", "GCMP", "GCMP-256", "CCMP-256"}


def _config_path() -> Path:
    override = (os.environ.get("STALINK_CONFIG") or "").strip()
    return Path(override) if override else CONFIG_PATH


def read_config_file() -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    path = _config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def load_config() -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with the on-disk config and environment overrides.
    Unknown keys on disk are ignored.
    """
    cfg = DEFAULT_CONFIG.copy()
    for k, v in read_config_file().items():
        if k in DEFAULT_CONFIG:
            cfg[k] = v
    for env_key, cfg_key in _ENV_OVERRIDES.items():
        val = (os.environ.get(env_key) or "").strip()
        if val:
            cfg[cfg_key] = val
    return cfg


@dataclass(frozen=True)
class Settings:
    tmp_root: Path
    driver: str
    nm_conf_path: Path
    resolv_conf_path: Path
    entropy_avail_path: Path
    entropy_threshold: int
    watchdog_interval_s: float
    nm_unmanaged_poll_attempts: int
    nm_unmanaged_poll_s: float
    supplicant_early_fail_s: float
    kill_timeout_s: float


def _as_float(raw: Any, default: float) -> float:
    try:
        return float(raw)
    except Exception:
        return default


def _as_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except Exception:
        return default


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    cfg = load_config()
    if overrides:
        cfg.update({k: v for k, v in overrides.items() if k in DEFAULT_CONFIG})
    d = DEFAULT_CONFIG
    return Settings(
        tmp_root=Path(str(cfg["tmp_root"])),
        driver=str(cfg["driver"] or d["driver"]),
        nm_conf_path=Path(str(cfg["nm_conf_path"])),
        resolv_conf_path=Path(str(cfg["resolv_conf_path"])),
        entropy_avail_path=Path(str(cfg["entropy_avail_path"])),
        entropy_threshold=_as_int(cfg["entropy_threshold"], d["entropy_threshold"]),
        watchdog_interval_s=_as_float(cfg["watchdog_interval_s"], d["watchdog_interval_s"]),
        nm_unmanaged_poll_attempts=max(
            1, _as_int(cfg["nm_unmanaged_poll_attempts"], d["nm_unmanaged_poll_attempts"])
        ),
        nm_unmanaged_poll_s=_as_float(cfg["nm_unmanaged_poll_s"], d["nm_unmanaged_poll_s"]),
        supplicant_early_fail_s=_as_float(
            cfg["supplicant_early_fail_s"], d["supplicant_early_fail_s"]
        ),
        kill_timeout_s=_as_float(cfg["kill_timeout_s"], d["kill_timeout_s"]),
    )


@dataclass(frozen=True)
class StationConfig:
    wifi_iface: str
    ssid: Optional[str]
    passphrase: Optional[str]
    settings: Settings
    driver: str = "nl80211"
    wpa_version: str = "1+2"
    pairwise: Tuple[str, ...] = ("CCMP", "TKIP")
    group: Tuple[str, ...] = ("CCMP", "TKIP")
    use_psk: bool = False
    wep: bool = False
    sae: bool = False
    owe: bool = False
    mac: Optional[str] = None
    hidden: bool = False
    dhcp: bool = True
    daemonize: bool = False
    pidfile: Optional[str] = None
    logfile: Optional[str] = None
    config_file: Optional[str] = None

    @property
    def security_mode(self) -> Optional[SecurityMode]:
        # A user-supplied config file bypasses generation entirely.
        if self.config_file:
            return None
        return select_security_mode(
            has_passphrase=bool(self.passphrase),
            wep=self.wep,
            sae=self.sae,
            owe=self.owe,
            psk=self.use_psk,
        )


def is_unicast_mac(mac: str) -> bool:
    """Syntactically a 6-octet colon-hex address with the multicast bit clear."""
    if not mac or not _MAC_RE.match(mac):
        return False
    return (int(mac.split(":", 1)[0], 16) & 0x01) == 0


def validate_mac(mac: str) -> str:
    if not is_unicast_mac(mac):
        raise ValidationError("invalid_mac", mac)
    return mac.lower()


def validate_ssid(ssid: Optional[str]) -> str:
    raw = (ssid or "").encode("utf-8")
    if len(raw) < 1 or len(raw) > 32:
        raise ValidationError("invalid_ssid_length", f"len={len(raw)}")
    return ssid or ""


def validate_passphrase(passphrase: str, *, use_psk: bool, wep: bool) -> str:
    n = len(passphrase)
    if not _PRINTABLE_RE.fullmatch(passphrase):
        raise ValidationError("invalid_passphrase_chars", f"len={n}")
    if wep:
        if use_psk:
            if n not in (10, 26) or not _HEX_RE.match(passphrase):
                raise ValidationError("invalid_wep_key", f"len={n}")
        elif n not in (5, 13):
            raise ValidationError("invalid_wep_key", f"len={n}")
        return passphrase
    if use_psk:
        if n != 64:
            raise ValidationError("invalid_psk_length", f"len={n}")
        if not _HEX_RE.match(passphrase):
            raise ValidationError("invalid_psk_hex")
        return passphrase
    if n < 8 or n > 63:
        raise ValidationError("invalid_passphrase_length", f"len={n}")
    return passphrase


def parse_cipher_list(raw: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not raw:
        return default
    items = [t.strip().upper() for t in raw.replace(",", " ").split() if t.strip()]
    bad = [t for t in items if t not in _CIPHERS]
    if not items or bad:
        raise ValidationError("invalid_cipher", ",".join(bad) or raw)
    return tuple(dict.fromkeys(items))


def _abspath(path: Optional[str]) -> Optional[str]:
    return os.path.abspath(path) if path else None


def build_station_config(args: Any, settings: Optional[Settings] = None) -> StationConfig:
    """
    Build the immutable run configuration from parsed CLI args.
    Raises ValidationError; touches nothing on the system.
    """
    settings = settings or load_settings()

    wpa_version = str(getattr(args, "wpa_version", None) or "1+2").strip()
    if wpa_version not in _WPA_VERSIONS:
        raise ValidationError("invalid_wpa_version", wpa_version)

    # Paths are made absolute now; a daemon runs with cwd "/".
    config_file = _abspath(getattr(args, "config", None))
    if config_file and not os.access(config_file, os.R_OK):
        raise ValidationError("config_file_missing", config_file)

    ssid = getattr(args, "ssid", None)
    passphrase = getattr(args, "passphrase", None) or None
    use_psk = bool(getattr(args, "psk", False))
    wep = bool(getattr(args, "wep", False))
    sae = bool(getattr(args, "sae", False))
    owe = bool(getattr(args, "owe", False))

    if not config_file:
        if ssid is None:
            raise ValidationError("ssid_required")
        ssid = validate_ssid(ssid)
        # Rejects contradictory flag combinations before looking at lengths.
        select_security_mode(
            has_passphrase=bool(passphrase), wep=wep, sae=sae, owe=owe, psk=use_psk
        )
        if passphrase:
            passphrase = validate_passphrase(passphrase, use_psk=use_psk, wep=wep)

    mac = getattr(args, "mac", None)
    if mac:
        mac = validate_mac(mac)

    return StationConfig(
        wifi_iface=str(args.wifi_iface),
        ssid=ssid,
        passphrase=passphrase,
        settings=settings,
        driver=str(getattr(args, "driver", None) or settings.driver),
        wpa_version=wpa_version,
        pairwise=parse_cipher_list(getattr(args, "pairwise", None), ("CCMP", "TKIP")),
        group=parse_cipher_list(getattr(args, "group", None), ("CCMP", "TKIP")),
        use_psk=use_psk,
        wep=wep,
        sae=sae,
        owe=owe,
        mac=mac,
        hidden=bool(getattr(args, "hidden", False)),
        dhcp=not bool(getattr(args, "no_dhcp", False)),
        daemonize=bool(getattr(args, "daemon", False)),
        pidfile=_abspath(getattr(args, "pidfile", None)),
        logfile=_abspath(getattr(args, "logfile", None)),
        config_file=config_file,
    )
