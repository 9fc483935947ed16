# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Advisory file lock serializing session registry mutations.

Every launcher invocation is a separate process, so registry writes are
serialized with ``fcntl.flock()`` on a lock file next to the registry.
The kernel releases the lock when the process exits (normally, on a
crash, or when killed), so a dead launcher can never leave the registry
locked.

Usage:
    lock = RegistryLock(project_dir / "sessions.json.lock", timeout=10)
    with lock:  # Raises RegistryLockTimeout if not acquired in time
        mutate_registry()
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType


logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class RegistryLockTimeout(Exception):
    """Raised when the registry lock is not acquired within the timeout."""


class RegistryLock:
    """Exclusive advisory lock on a registry file.

    The lock is released when:
    - release() is called explicitly
    - The context manager exits
    - The process exits (normal, crash, or SIGKILL)
    - The file descriptor is closed

    Thread safety: This class is NOT thread-safe. Each process holds its
    own RegistryLock instance.

    Attributes:
        lock_path: Path to the lock file.
        timeout: Seconds ``__enter__`` waits for the lock.
    """

    def __init__(self, lock_path: Path, timeout: float = 10.0) -> None:
        """Initialize the lock.

        Args:
            lock_path: Path to the lock file. Will be created if it doesn't
                exist.
            timeout: Seconds to wait when entering the context manager.
        """
        self.lock_path = lock_path
        self.timeout = timeout
        self._fd: int | None = None

    def try_acquire(self) -> bool:
        """Try to acquire the lock without blocking.

        Returns:
            True if the lock was acquired, False if it's held by another
            process.

        Raises:
            OSError: If the lock file cannot be created or opened.
        """
        if self._fd is not None:
            return True

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        # O_RDWR for flock compatibility on all filesystems
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._fd = fd
            logger.debug("Acquired registry lock: %s", self.lock_path)
            return True
        except BlockingIOError:
            os.close(fd)
            return False

    def acquire(self, timeout: float | None = None) -> None:
        """Acquire the lock, polling until *timeout* seconds have passed.

        Args:
            timeout: Seconds to wait.  Defaults to ``self.timeout``.

        Raises:
            RegistryLockTimeout: If the lock is still held elsewhere when
                the timeout expires.
        """
        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise RegistryLockTimeout(
                    f"Session registry is locked by another ccbox process "
                    f"({self.lock_path}); gave up after {wait:g}s"
                )
            time.sleep(POLL_INTERVAL)

    def release(self) -> None:
        """Release the lock if held.

        Safe to call even if the lock is not held.
        """
        if self._fd is None:
            return

        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            logger.debug("Released registry lock: %s", self.lock_path)
        finally:
            os.close(self._fd)
            self._fd = None

    def is_held(self) -> bool:
        """Check if this instance is currently holding the lock."""
        return self._fd is not None

    def __enter__(self) -> RegistryLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()
