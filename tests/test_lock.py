import pytest

from voiceinbox.errors import LockHeldError
from voiceinbox.lock import FileLock


def test_second_acquire_fails_immediately(tmp_path):
    path = tmp_path / "state.db.lock"
    with FileLock(path):
        with pytest.raises(LockHeldError):
            FileLock(path).acquire()


def test_lock_released_on_exception(tmp_path):
    path = tmp_path / "state.db.lock"
    with pytest.raises(RuntimeError):
        with FileLock(path):
            raise RuntimeError("boom")

    lock = FileLock(path)
    lock.acquire()
    assert lock.held
    lock.release()
    assert not lock.held


def test_creates_parent_directory(tmp_path):
    path = tmp_path / "nested" / "dir" / "x.lock"
    with FileLock(path) as lock:
        assert lock.held
    assert path.exists()
