"""Tests for Supervisor.lock_manager."""
from __future__ import annotations

from pathlib import Path

import pytest

from Supervisor.exceptions import ScanLockError
from Supervisor.lock_manager import ScanLock


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "supervisor.lock"


class TestScanLock:
    def test_acquire_and_release(self, lock_path: Path) -> None:
        lock = ScanLock(lock_path)
        lock.acquire()
        assert lock.is_acquired
        assert lock_path.read_text(encoding="utf-8").strip().isdigit()
        lock.release()
        assert not lock.is_acquired

    def test_context_manager(self, lock_path: Path) -> None:
        with ScanLock(lock_path) as lock:
            assert lock.is_acquired
        assert not lock.is_acquired

    def test_second_holder_fails_fast(self, lock_path: Path) -> None:
        with ScanLock(lock_path):
            with pytest.raises(ScanLockError):
                ScanLock(lock_path).acquire()

    def test_reacquire_after_release(self, lock_path: Path) -> None:
        with ScanLock(lock_path):
            pass
        with ScanLock(lock_path) as again:
            assert again.is_acquired

    def test_not_reentrant(self, lock_path: Path) -> None:
        lock = ScanLock(lock_path)
        with lock:
            with pytest.raises(ScanLockError):
                lock.acquire()

    def test_release_when_not_held(self, lock_path: Path) -> None:
        ScanLock(lock_path).release()

    def test_released_on_error(self, lock_path: Path) -> None:
        with pytest.raises(RuntimeError):
            with ScanLock(lock_path):
                raise RuntimeError("boom")
        with ScanLock(lock_path) as lock:
            assert lock.is_acquired
