"""Single-flight lock around a supervisor invocation.

``scan`` and ``briefing`` read, modify and rewrite the whole state tree.
Holding an exclusive portalocker lock on ``ops/state/supervisor.lock``
for the full cycle means a second concurrent invocation fails fast with
:class:`ScanLockError` instead of racing on the same files.
"""
from __future__ import annotations

import os
from pathlib import Path
from types import TracebackType

import portalocker

from Supervisor.exceptions import ScanLockError
from Supervisor.logger import get_logger


class ScanLock:
    """Exclusive, non-reentrant file lock. Supports the context manager protocol.

    With ``timeout <= 0`` acquisition is a single non-blocking attempt.
    """

    def __init__(self, lock_path: Path, timeout: float = 0.0, owner: str = "ops-supervisor") -> None:
        self._lock_path = lock_path
        self._timeout = timeout
        self._lock: portalocker.Lock | None = None
        self.log = get_logger(f"{owner}.lock")

    @property
    def is_acquired(self) -> bool:
        return self._lock is not None

    def acquire(self) -> None:
        if self._lock is not None:
            raise ScanLockError(f"Lock already held by this process: {self._lock_path}")
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        non_blocking = self._timeout <= 0
        lock = portalocker.Lock(
            str(self._lock_path),
            mode="a",
            timeout=None if non_blocking else self._timeout,
            fail_when_locked=non_blocking,
            flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
        )
        try:
            fh = lock.acquire()
        except (portalocker.AlreadyLocked, portalocker.LockException) as exc:
            raise ScanLockError(
                f"Another supervisor invocation holds {self._lock_path}"
            ) from exc
        except OSError as exc:
            raise ScanLockError(f"Cannot open lock file {self._lock_path}: {exc}") from exc

        # PID for diagnostics
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._lock = lock
        self.log.info("Lock acquired: %s (pid=%d)", self._lock_path, os.getpid())

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        if self._lock is None:
            return
        self._lock.release()
        self._lock = None
        self.log.info("Lock released: %s", self._lock_path)

    def __enter__(self) -> ScanLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
