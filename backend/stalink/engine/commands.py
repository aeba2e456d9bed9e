from pathlib import Path
from typing import List


def build_supplicant_cmd(
    *,
    binary: str,
    ifname: str,
    driver: str,
    conf_path: str,
    debug: bool = False,
) -> List[str]:
    # Foreground (no -B): the Popen pid is the supplicant itself.
    cmd: List[str] = [binary, "-i", ifname, "-D", driver, "-c", conf_path]
    if debug:
        cmd.append("-dd")
    return cmd


def build_dhclient_cmd(*, binary: str, ifname: str, conf_dir: Path) -> List[str]:
    return [
        binary,
        "-d",
        "-pf",
        str(conf_dir / "dhclient.pid"),
        "-lf",
        str(conf_dir / "dhclient.leases"),
        ifname,
    ]


def build_haveged_cmd(*, binary: str, pidfile: Path) -> List[str]:
    return [binary, "-w", "1024", "-p", str(pidfile)]
