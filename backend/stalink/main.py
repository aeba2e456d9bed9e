import argparse
import logging
import os
import sys
from typing import List, Optional

from stalink import preflight, registry
from stalink.config import build_station_config, load_settings
from stalink.control import stop_instance
from stalink.diagnostics.clients import list_clients
from stalink.errors import EXIT_FAILURE, EXIT_OK, StalinkError
from stalink.lifecycle import Controller
from stalink.lock import GlobalLock
from stalink.logging import setup_logging

__version__ = "0.1.0"

log = logging.getLogger("stalink.main")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="stalink",
        description="Join a WiFi network in station mode and undo every change on exit.",
    )
    p.add_argument("wifi_iface", nargs="?", help="wireless interface")
    p.add_argument("ssid", nargs="?", help="network name")
    p.add_argument("passphrase", nargs="?", help="passphrase or key")

    p.add_argument("-d", "--driver", default=None, help="wpa_supplicant driver (default: nl80211)")
    p.add_argument("-w", dest="wpa_version", choices=("1", "2", "1+2"), default="1+2",
                   help="WPA version for WPA-PSK networks")
    p.add_argument("--pairwise", default=None, help="pairwise ciphers, e.g. 'CCMP TKIP'")
    p.add_argument("--group", default=None, help="group ciphers, e.g. 'CCMP TKIP'")

    sec = p.add_argument_group("security")
    sec.add_argument("--psk", action="store_true", help="passphrase is a raw hex key")
    sec.add_argument("--wep", action="store_true", help="WEP network")
    sec.add_argument("--sae", action="store_true", help="WPA3-Personal (SAE)")
    sec.add_argument("--owe", action="store_true", help="enhanced open (OWE)")

    p.add_argument("--mac", default=None, help="set this MAC address while running")
    p.add_argument("--hidden", action="store_true", help="network does not broadcast its SSID")
    p.add_argument("--no-dhcp", action="store_true", help="do not run dhclient")
    p.add_argument("--config", default=None, metavar="FILE",
                   help="use this wpa_supplicant config instead of generating one")

    p.add_argument("--daemon", action="store_true", help="run in the background")
    p.add_argument("--pidfile", default=None, metavar="FILE")
    p.add_argument("--logfile", default=None, metavar="FILE")

    ops = p.add_mutually_exclusive_group()
    ops.add_argument("--stop", metavar="PID|IFACE", help="stop a running instance")
    ops.add_argument("--list-running", action="store_true", help="list running instances")
    ops.add_argument("--list-clients", metavar="PID|IFACE", help="list peers of a running instance")

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _cmd_list_running(lock: GlobalLock, root) -> int:
    for inst in registry.list_running(root, lock=lock):
        print(inst.describe())
    return EXIT_OK


def _cmd_stop(lock: GlobalLock, root, target: str) -> int:
    inst = stop_instance(root, target, lock=lock)
    if inst is None:
        print(f"stalink: no running instance for {target}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def _cmd_list_clients(lock: GlobalLock, root, target: str) -> int:
    snap = list_clients(root, target, lock=lock)
    if snap is None:
        print(f"stalink: no running instance for {target}", file=sys.stderr)
        return EXIT_FAILURE
    for warning in snap["warnings"]:
        log.warning("list_clients_warning %s", warning, extra={"iface": snap["iface"]})
    for client in snap["clients"]:
        print(client.describe())
    return EXIT_OK


def _write_pidfile(path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{os.getpid()}\n")


def daemonize() -> None:
    """
    Classic double fork: the caller's process exits, the grandchild keeps
    running detached from the terminal in its own session.
    """
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    if os.fork() > 0:
        os._exit(0)
    os.chdir("/")
    sys.stdout.flush()
    sys.stderr.flush()
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logfile=args.logfile)

    settings = load_settings()
    lock = GlobalLock(settings.tmp_root)
    root = settings.tmp_root

    try:
        if args.list_running or args.stop or args.list_clients:
            try:
                if args.list_running:
                    return _cmd_list_running(lock, root)
                if args.stop:
                    return _cmd_stop(lock, root, args.stop)
                return _cmd_list_clients(lock, root, args.list_clients)
            finally:
                lock.discard_counter()

        if not args.wifi_iface:
            build_parser().print_usage(sys.stderr)
            return EXIT_FAILURE

        cfg = build_station_config(args, settings)
    except StalinkError as exc:
        log.error("%s (%s)", exc, exc.remediation, extra={"code": exc.code})
        return exc.exit_code

    if cfg.daemonize:
        # Report pre-flight problems on the terminal, before detaching.
        try:
            preflight.enforce(cfg, lock=lock)
        except StalinkError as exc:
            log.error("%s (%s)", exc, exc.remediation, extra={"code": exc.code})
            return exc.exit_code
        finally:
            lock.discard_counter()
        daemonize()
        # Handlers opened before the fork point at a closed stdout.
        setup_logging(logfile=cfg.logfile)
    if cfg.pidfile:
        _write_pidfile(cfg.pidfile)

    try:
        # Fresh lock: the counter file is keyed by pid, which changed if we forked.
        return Controller(cfg, lock=GlobalLock(root)).run()
    finally:
        if cfg.pidfile:
            try:
                os.unlink(cfg.pidfile)
            except FileNotFoundError:
                pass


if __name__ == "__main__":
    sys.exit(main())
