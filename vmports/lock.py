"""Host-local named process lock for VM-Ports."""

from __future__ import annotations

import errno
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from vmports.constants import LOCK_RETRY_INTERVAL
from vmports.exceptions import EnvironmentLockedError, LockTimeoutError
from vmports.utils import ensure_directory, log


class ProcessLock:
    """Advisory ``flock`` on ``<directory>/<label>.lock``.

    ``max_attempts=None`` retries forever, which is what a plain
    ``vm-ports`` run does; callers that cannot wait indefinitely pass a bound.
    """

    def __init__(
        self,
        directory: Path,
        label: str,
        retry_interval: float = LOCK_RETRY_INTERVAL,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = directory
        self.label = label
        self.path = directory / f"{label}.lock"
        self.retry_interval = retry_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def try_acquire(self) -> None:
        if self._fd is not None:
            raise EnvironmentLockedError(self.label)
        ensure_directory(self.directory)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            if exc.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise EnvironmentLockedError(self.label) from exc
            raise
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def acquire(self) -> None:
        attempts = 0
        while True:
            attempts += 1
            try:
                self.try_acquire()
                return
            except EnvironmentLockedError:
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    raise LockTimeoutError(
                        f"Lock '{self.label}' at {self.path} still held after {attempts} attempts"
                    )
                log("DEBUG", f"Lock '{self.label}' busy; retrying in {self.retry_interval}s")
                self._sleep(self.retry_interval)

    @contextmanager
    def held(self) -> Iterator["ProcessLock"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()
