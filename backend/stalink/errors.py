from typing import Any, Dict, Optional

EXIT_OK = 0
EXIT_FAILURE = 1

ERROR_REMEDIATIONS: Dict[str, str] = {
    "invalid_mac": (
        "Use a 6-octet colon-separated hex address (aa:bb:cc:dd:ee:ff) whose first octet is even "
        "(unicast)."
    ),
    "invalid_ssid_length": "SSID must be between 1 and 32 characters.",
    "invalid_passphrase_length": "Passphrase must be between 8 and 63 characters.",
    "invalid_passphrase_chars": "Passphrases and ASCII keys may only contain printable ASCII characters.",
    "invalid_psk_length": "With --psk the key must be exactly 64 hexadecimal characters.",
    "invalid_psk_hex": "With --psk the key must contain only hexadecimal characters.",
    "invalid_wep_key": (
        "WEP keys are 5 or 13 ASCII characters, or 10 or 26 hex digits with --psk."
    ),
    "conflicting_security_flags": (
        "Choose at most one of --wep, --sae, --owe; --psk cannot be combined with --sae or --owe."
    ),
    "owe_requires_no_passphrase": "Enhanced open (--owe) networks have no passphrase; drop it.",
    "security_mode_requires_passphrase": "--wep, --sae and --psk need a passphrase or key.",
    "ssid_required": "An SSID is required unless --config is given.",
    "sae_not_supported": (
        "The adapter does not advertise the SAE AKM suite (00-0f-ac:8). Use a WPA3-capable "
        "adapter/driver or connect with WPA2."
    ),
    "not_wifi_interface": "The interface is not a wireless (nl80211) interface; check `iw dev`.",
    "interface_busy": "Another instance already runs on this interface; stop it with --stop first.",
    "invalid_cipher": "Cipher lists accept CCMP, TKIP, GCMP, GCMP-256 and CCMP-256.",
    "invalid_wpa_version": "WPA version must be 1, 2 or 1+2.",
    "config_file_missing": "The file given to --config does not exist or is not readable.",
    "not_root": "Run as root; interface configuration requires CAP_NET_ADMIN.",
    "lock_counter_open_failed": (
        "No free file descriptor to open the lock counter; raise the open-file limit."
    ),
    "iface_down_failed": "Could not bring the interface down; check that it still exists.",
    "iface_up_failed": "Could not bring the interface up; check rfkill and the driver.",
    "flush_failed": "Could not flush interface addresses.",
    "mac_set_failed": "The driver refused the MAC change; try without --mac.",
    "wpa_supplicant_start_failed": "wpa_supplicant failed to start; run it by hand with -dd for details.",
    "wpa_supplicant_exited": "wpa_supplicant exited unexpectedly; check the logs.",
    "dhclient_start_failed": "dhclient failed to start; check that it is installed.",
    "haveged_start_failed": "haveged could not be started while entropy was low.",
}


def build_error_detail(code: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "code": code,
        "remediation": ERROR_REMEDIATIONS.get(code, "Check logs for details."),
        "context": context or {},
    }


class StalinkError(RuntimeError):
    """Base error; ``code`` is a stable snake_case identifier."""

    exit_code = EXIT_FAILURE

    def __init__(self, code: str, detail: Optional[str] = None):
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def remediation(self) -> str:
        return ERROR_REMEDIATIONS.get(self.code, "Check logs for details.")


class ValidationError(StalinkError):
    """Bad user input; raised before any system state is touched."""


class DependencyError(StalinkError):
    """A required external tool is missing."""

    def __init__(self, tool: str):
        super().__init__(f"{tool}_not_found")
        self.tool = tool


class FatalError(StalinkError):
    """Runtime failure after mutation started; triggers full cleanup."""


class LockError(StalinkError):
    pass
