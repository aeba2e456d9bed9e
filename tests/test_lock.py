import errno
import stat
import threading

import pytest

import stalink.lock as lock_mod
from stalink.errors import LockError
from stalink.lock import GlobalLock


def test_nested_acquire_holds_os_lock_until_outermost_release(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41001)
    assert lock.acquire()
    assert lock.acquire()
    assert lock.count() == 2
    assert lock.locked()

    assert lock.release()
    assert lock.count() == 1
    assert lock.locked()

    assert lock.release()
    assert lock.count() == 0
    assert not lock.locked()


def test_second_owner_cannot_acquire_while_first_holds(tmp_path):
    first = GlobalLock(tmp_path, owner_pid=41002)
    second = GlobalLock(tmp_path, owner_pid=41003)

    assert first.acquire()
    assert first.acquire()
    assert second.acquire(blocking=False) is False
    assert second.count() == 0

    first.release()
    assert second.acquire(blocking=False) is False

    first.release()
    assert second.acquire(blocking=False) is True
    second.release()


def test_unbalanced_release_returns_false(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41004)
    assert lock.release() is False
    assert lock.count() == 0


def test_held_releases_on_exception(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41005)
    with pytest.raises(ValueError):
        with lock.held():
            assert lock.locked()
            raise ValueError("boom")
    assert not lock.locked()
    assert lock.count() == 0


def test_objects_of_same_owner_share_the_counter(tmp_path):
    main = GlobalLock(tmp_path, owner_pid=41006)
    helper = GlobalLock(tmp_path, owner_pid=41006)
    with main.held():
        # Reentrant from another object of the same owner (e.g. a helper thread).
        assert helper.acquire(blocking=False)
        assert main.count() == 2
        helper.release()
    assert not helper.locked()


def test_stale_counter_is_reset(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41007)
    lock.counter_path.write_text("3\n")
    assert lock.acquire()
    assert lock.count() == 1
    lock.release()
    assert lock.count() == 0


def test_release_all_and_discard_counter(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41008)
    lock.acquire()
    lock.acquire()
    lock.acquire()
    assert lock.release_all() == 3
    assert not lock.locked()
    lock.discard_counter()
    assert not lock.counter_path.exists()
    # Idempotent.
    lock.discard_counter()


def test_counter_open_failure_raises_lock_error(tmp_path, monkeypatch):
    lock = GlobalLock(tmp_path, owner_pid=41009)

    def _emfile(*_a, **_kw):
        raise OSError(errno.EMFILE, "Too many open files")

    monkeypatch.setattr(lock_mod.os, "open", _emfile)
    with pytest.raises(LockError) as exc:
        lock.acquire()
    assert exc.value.code == "lock_counter_open_failed"


def test_lock_file_removed_only_when_idle(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41010)
    with lock.held():
        pass
    assert lock.lock_path.exists()

    assert lock.remove_lock_file_if_idle(has_other_instances=True) is False
    assert lock.lock_path.exists()

    assert lock.remove_lock_file_if_idle(has_other_instances=False) is True
    assert not lock.lock_path.exists()
    assert lock.remove_lock_file_if_idle(has_other_instances=False) is False


def test_lock_file_is_world_writable(tmp_path):
    lock = GlobalLock(tmp_path, owner_pid=41011)
    with lock.held():
        pass
    assert stat.S_IMODE(lock.lock_path.stat().st_mode) == 0o666


def test_waiter_does_not_share_lock_after_file_removed(tmp_path):
    first = GlobalLock(tmp_path, owner_pid=41012)
    waiter = GlobalLock(tmp_path, owner_pid=41013)
    newcomer = GlobalLock(tmp_path, owner_pid=41014)

    assert first.acquire()
    got = threading.Event()

    def _wait():
        waiter.acquire()
        got.set()

    t = threading.Thread(target=_wait, daemon=True)
    t.start()
    assert not got.wait(0.2)

    first.release()
    first.remove_lock_file_if_idle(has_other_instances=False)
    assert got.wait(5.0)

    assert newcomer.acquire(blocking=False) is False
    waiter.release()
    assert newcomer.acquire(blocking=False) is True
    newcomer.release()
    t.join(timeout=1.0)


def test_lock_file_kept_while_another_owner_holds_it(tmp_path):
    first = GlobalLock(tmp_path, owner_pid=41015)
    other = GlobalLock(tmp_path, owner_pid=41016)
    with other.held():
        assert first.remove_lock_file_if_idle(has_other_instances=False) is False
        assert first.lock_path.exists()
