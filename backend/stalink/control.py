import enum
import logging
import os
import queue
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from stalink import registry
from stalink.lock import GlobalLock

log = logging.getLogger("stalink.control")

# Sent by `stalink --stop`; INT/TERM/HUP are treated the same way.
STOP_SIGNALS = (signal.SIGUSR1, signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
FATAL_SIGNALS = (signal.SIGUSR2,)


class ControlKind(enum.Enum):
    STOP = "stop"
    FATAL = "fatal"


@dataclass(frozen=True)
class ControlMessage:
    kind: ControlKind
    reason: str


class ControlChannel:
    """
    One-way mailbox from signal handlers and helper threads to the
    controller. SimpleQueue.put is reentrant, so posting from a signal
    handler cannot deadlock against a get() on the main thread.
    """

    def __init__(self):
        self._queue: "queue.SimpleQueue[ControlMessage]" = queue.SimpleQueue()
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def post(self, msg: ControlMessage) -> None:
        self._stop_requested = True
        self._queue.put(msg)

    def request_stop(self, reason: str = "stop_requested") -> None:
        self.post(ControlMessage(ControlKind.STOP, reason))

    def report_fatal(self, reason: str) -> None:
        self.post(ControlMessage(ControlKind.FATAL, reason))

    def wait(self, timeout: Optional[float] = None) -> Optional[ControlMessage]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


def install_signal_handlers(channel: ControlChannel) -> Dict[int, Any]:
    def _handler(signum, _frame):
        try:
            sig_name = signal.Signals(signum).name
        except Exception:
            sig_name = str(signum)
        if signum in FATAL_SIGNALS:
            channel.report_fatal("external_fatal_signal")
        else:
            channel.request_stop(f"signal:{sig_name}")

    previous: Dict[int, Any] = {}
    for sig in STOP_SIGNALS + FATAL_SIGNALS:
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        try:
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        except (ValueError, OSError):
            pass


def send_stop(pid: int) -> bool:
    try:
        os.kill(pid, signal.SIGUSR1)
    except ProcessLookupError:
        return False
    log.info("stop_sent pid=%s", pid, extra={"pid": pid})
    return True


def stop_instance(
    root: Path, target: str, lock: Optional[GlobalLock] = None
) -> Optional[registry.RunningInstance]:
    """
    Resolve a PID or interface name and ask that instance to shut down.
    Returns the instance signalled, or None if nothing live matched.
    """
    inst = registry.find_instance(root, target, lock=lock)
    if inst is None:
        log.warning("stop_target_not_running target=%s", target)
        return None
    if not send_stop(inst.pid):
        return None
    return inst
