import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from stalink import netif, registry
from stalink.config import StationConfig
from stalink.engine.supervisor import resolve_binary
from stalink.engine.supplicant_conf import SecurityMode
from stalink.errors import DependencyError, ValidationError
from stalink.lock import GlobalLock

log = logging.getLogger("stalink.preflight")

_REQUIRED_TOOLS = ("iw", "ip", "wpa_supplicant")


def _check_root() -> Tuple[List[str], List[str], Dict[str, Any]]:
    errors: List[str] = []
    euid = os.geteuid()
    if euid != 0:
        errors.append("not_root")
    return errors, [], {"euid": euid}


def _check_dependencies(cfg: StationConfig) -> Tuple[List[str], List[str], Dict[str, Any]]:
    errors: List[str] = []
    warnings: List[str] = []
    details: Dict[str, Any] = {}

    tools = list(_REQUIRED_TOOLS)
    if cfg.dhcp:
        tools.append("dhclient")
    for tool in tools:
        try:
            details[tool] = resolve_binary(tool)
        except DependencyError as exc:
            errors.append(exc.code)
            details[tool] = None

    # NetworkManager is optional; without nmcli we cannot mark the iface unmanaged.
    try:
        details["nmcli"] = resolve_binary("nmcli")
    except DependencyError:
        details["nmcli"] = None
        warnings.append("nmcli_not_found")
    return errors, warnings, details


def _check_adapter(
    cfg: StationConfig, lock: Optional[GlobalLock]
) -> Tuple[List[str], List[str], Dict[str, Any]]:
    errors: List[str] = []
    warnings: List[str] = []
    details: Dict[str, Any] = {"iface": cfg.wifi_iface}

    if not netif.is_wifi_interface(cfg.wifi_iface):
        errors.append("not_wifi_interface")
        return errors, warnings, details

    for inst in registry.list_running(cfg.settings.tmp_root, lock=lock):
        if cfg.wifi_iface in (inst.actual_iface, inst.requested_iface):
            details["owner_pid"] = inst.pid
            errors.append("interface_busy")
            break

    if cfg.security_mode is SecurityMode.SAE:
        sae = netif.adapter_supports_sae(cfg.wifi_iface)
        details["sae_supported"] = sae
        if not sae:
            errors.append("sae_not_supported")
    return errors, warnings, details


def run(cfg: StationConfig, *, lock: Optional[GlobalLock] = None) -> Dict[str, Any]:
    """
    Read-only checks before any mutation. Returns
    {"errors": [...], "warnings": [...], "details": {...}}.
    """
    errors: List[str] = []
    warnings: List[str] = []
    details: Dict[str, Any] = {}

    root_err, root_warn, root_details = _check_root()
    errors += root_err
    warnings += root_warn
    details["root"] = root_details

    dep_err, dep_warn, dep_details = _check_dependencies(cfg)
    errors += dep_err
    warnings += dep_warn
    details["dependencies"] = dep_details

    # Adapter checks shell out to iw; skip them when iw itself is missing.
    if "iw_not_found" not in dep_err:
        ad_err, ad_warn, ad_details = _check_adapter(cfg, lock)
        errors += ad_err
        warnings += ad_warn
        details["adapter"] = ad_details
    else:
        details["adapter"] = {"skipped": True}

    return {"errors": errors, "warnings": warnings, "details": details}


def enforce(cfg: StationConfig, *, lock: Optional[GlobalLock] = None) -> Dict[str, Any]:
    """
    Run the checks and raise on the first error. Missing tools raise
    DependencyError, everything else ValidationError.
    """
    report = run(cfg, lock=lock)
    for warning in report["warnings"]:
        log.warning("preflight_warning %s", warning, extra={"iface": cfg.wifi_iface})
    if not report["errors"]:
        return report

    code = report["errors"][0]
    log.error(
        "preflight_failed errors=%s", ",".join(report["errors"]),
        extra={"iface": cfg.wifi_iface, "code": code},
    )
    if code.endswith("_not_found"):
        raise DependencyError(code[: -len("_not_found")])
    raise ValidationError(code, ",".join(report["errors"][1:]) or None)
