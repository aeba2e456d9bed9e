"""
Host-wide recursive mutex shared by every stalink instance.

Two files live under the temp root:

  <prefix>.all.lock      the global advisory lock (flock)
  <prefix>.<pid>.lock    the owner's nesting counter, guarded by its own flock

Only the 0->1 and 1->0 transitions of the counter touch the global lock, so a
process (or a helper thread of it) may nest acquire/release pairs freely.
"""

import errno
import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from stalink.errors import LockError

log = logging.getLogger("stalink.lock")

# (lock_path, owner_pid) -> fd holding the global flock. Shared by every
# GlobalLock object of the same owner so the counter stays authoritative.
_HELD: Dict[Tuple[str, int], int] = {}
_HELD_GUARD = threading.Lock()


class GlobalLock:
    def __init__(self, root: Path, prefix: str = "stalink", owner_pid: Optional[int] = None):
        self.root = Path(root)
        self.prefix = prefix
        self.owner_pid = owner_pid or os.getpid()
        self.lock_path = self.root / f"{prefix}.all.lock"

    @property
    def counter_path(self) -> Path:
        return self.root / f"{self.prefix}.{self.owner_pid}.lock"

    @property
    def _key(self) -> Tuple[str, int]:
        return str(self.lock_path), self.owner_pid

    def _open(self, path: Path, mode: int) -> int:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return os.open(path, os.O_RDWR | os.O_CREAT, mode)
        except OSError as exc:
            if exc.errno in (errno.EMFILE, errno.ENFILE):
                log.error("lock_no_free_fd path=%s err=%s", path, exc)
            else:
                log.error("lock_open_failed path=%s err=%s", path, exc)
            raise LockError("lock_counter_open_failed", f"{path}: {exc}") from exc

    @staticmethod
    def _read_counter(fd: int) -> int:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = os.read(fd, 64).decode("ascii", "ignore").strip()
        try:
            return max(0, int(raw))
        except ValueError:
            return 0

    @staticmethod
    def _write_counter(fd: int, value: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, f"{value}\n".encode("ascii"))

    @contextmanager
    def _counter(self) -> Iterator[int]:
        fd = self._open(self.counter_path, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield fd
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def acquire(self, blocking: bool = True) -> bool:
        with self._counter() as cfd:
            counter = self._read_counter(cfd)
            with _HELD_GUARD:
                held_fd = _HELD.get(self._key)
            if counter > 0 and held_fd is None:
                # Left behind by a dead process that had our pid.
                log.warning("lock_counter_stale path=%s counter=%s", self.counter_path, counter)
                counter = 0

            if counter == 0:
                main_fd = self._lock_main(blocking)
                if main_fd is None:
                    return False
                with _HELD_GUARD:
                    _HELD[self._key] = main_fd

            self._write_counter(cfd, counter + 1)
            return True

    def _open_main(self) -> int:
        fd = self._open(self.lock_path, 0o666)
        # Unprivileged --list-running/--stop must be able to open it O_RDWR.
        if os.fstat(fd).st_mode & 0o777 != 0o666:
            try:
                os.fchmod(fd, 0o666)
            except PermissionError:
                log.debug("lock_chmod_skipped path=%s", self.lock_path)
        return fd

    def _is_current(self, fd: int) -> bool:
        try:
            return os.path.samestat(os.fstat(fd), os.stat(self.lock_path))
        except FileNotFoundError:
            return False

    def _lock_main(self, blocking: bool) -> Optional[int]:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        while True:
            fd = self._open_main()
            try:
                fcntl.flock(fd, flags)
            except BlockingIOError:
                os.close(fd)
                return None
            except Exception:
                os.close(fd)
                raise
            if self._is_current(fd):
                return fd
            # The file was unlinked while we waited; lock the one now on disk.
            log.debug("lock_file_replaced path=%s", self.lock_path)
            os.close(fd)

    def release(self) -> bool:
        with self._counter() as cfd:
            counter = self._read_counter(cfd)
            with _HELD_GUARD:
                held_fd = _HELD.get(self._key)
            if counter <= 0 or held_fd is None:
                log.error("lock_release_unbalanced path=%s counter=%s", self.lock_path, counter)
                self._write_counter(cfd, 0)
                return False

            counter -= 1
            if counter == 0:
                with _HELD_GUARD:
                    _HELD.pop(self._key, None)
                try:
                    fcntl.flock(held_fd, fcntl.LOCK_UN)
                finally:
                    os.close(held_fd)
            self._write_counter(cfd, counter)
            return True

    def release_all(self) -> int:
        released = 0
        while self.locked() and self.release():
            released += 1
        return released

    def count(self) -> int:
        if not self.counter_path.exists():
            return 0
        with self._counter() as cfd:
            return self._read_counter(cfd)

    def locked(self) -> bool:
        with _HELD_GUARD:
            return self._key in _HELD

    @contextmanager
    def held(self) -> Iterator["GlobalLock"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def discard_counter(self) -> None:
        try:
            self.counter_path.unlink()
        except FileNotFoundError:
            pass

    def remove_lock_file_if_idle(self, has_other_instances: bool) -> bool:
        """
        Unlink the global lock file, but only while holding it, so a waiter
        that wins the old inode afterwards sees it is stale and retries.
        """
        if has_other_instances or self.locked():
            return False
        try:
            fd = os.open(self.lock_path, os.O_RDWR)
        except FileNotFoundError:
            return False
        except OSError as exc:
            log.warning("lock_file_remove_failed path=%s err=%s", self.lock_path, exc)
            return False
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                # Someone else took it in the meantime.
                return False
            if not self._is_current(fd):
                return False
            os.unlink(self.lock_path)
        finally:
            os.close(fd)
        log.info("lock_file_removed path=%s", self.lock_path)
        return True
