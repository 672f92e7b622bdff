"""Host-wide advisory lock for ENI attachment.

Concurrent ADD invocations on one host each pick a device index and attach
an ENI to it. Without coordination two of them can pick the same slot, so
index selection and the attach call run under an exclusive flock(2) on a
well-known lock file. The lock is released automatically if the process
dies.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)


@contextmanager
def host_lock(
    lock_path: str | Path,
    timeout: float = 60,
    poll_interval: float = 0.1,
) -> Generator[None, None, None]:
    """Acquire the host-wide attach lock.

    Blocks up to `timeout` seconds. Raises TimeoutError if the lock
    cannot be acquired.

    Args:
        lock_path: Lock file path (created if missing)
        timeout: Seconds to wait for lock acquisition
        poll_interval: Seconds between acquisition attempts
    """
    path = Path(lock_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise TimeoutError(
                        f"Could not acquire host lock {path} within {timeout}s "
                        "(another invocation is attaching)"
                    )
                time.sleep(poll_interval)
        logger.debug(f"Acquired host lock {path}")
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"Released host lock {path}")
    finally:
        os.close(fd)
