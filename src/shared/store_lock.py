"""
Cross-process lock for the store directory.

The sync service is the only writer of an archive; one-shot readers
(listing, search) may run alongside each other but never alongside a
writer.  Both are expressed with ``flock(2)`` on a ``LOCK`` file inside
the store directory: writers take it exclusively, readers shared.  The
kernel drops the lock when the process exits, so a crashed holder never
leaves a stale lock behind.

Usage::

    with acquire_store_lock(store_dir, exclusive=True):
        ...
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger("shared.store_lock")

LOCK_FILE_NAME = "LOCK"
_POLL_INTERVAL = 0.2


class StoreLockedError(RuntimeError):
    """Another process holds an incompatible lock on the store."""

    def __init__(self, store_dir: Path, holder: Optional[dict] = None) -> None:
        self.store_dir = store_dir
        self.holder = holder or {}
        detail = ""
        if self.holder.get("pid"):
            detail = f" (held by pid {self.holder['pid']}, mode={self.holder.get('mode')})"
        super().__init__(f"Store at {store_dir} is locked{detail}")


def _read_holder(lock_path: Path) -> dict:
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


@contextmanager
def acquire_store_lock(
    store_dir: Path,
    exclusive: bool = True,
    timeout: float = 0.0,
) -> Iterator[Path]:
    """Hold the store lock for the duration of the ``with`` block.

    Args:
        store_dir: Store directory (created if missing).
        exclusive: Writer lock when True, shared reader lock otherwise.
        timeout: Seconds to keep retrying before giving up.

    Raises:
        StoreLockedError: If the lock is still unavailable after ``timeout``.
    """
    store_dir.mkdir(parents=True, exist_ok=True)
    lock_path = store_dir / LOCK_FILE_NAME
    mode = "write" if exclusive else "read"
    operation = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB

    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    deadline = time.monotonic() + max(0.0, timeout)
    try:
        while True:
            try:
                fcntl.flock(fd, operation)
                break
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    raise
                if time.monotonic() >= deadline:
                    raise StoreLockedError(store_dir, _read_holder(lock_path)) from None
                time.sleep(_POLL_INTERVAL)

        if exclusive:
            info = {
                "pid": os.getpid(),
                "mode": mode,
                "started_at": datetime.now(timezone.utc).isoformat(),
            }
            os.ftruncate(fd, 0)
            os.pwrite(fd, json.dumps(info).encode("utf-8"), 0)
        logger.debug("Acquired %s lock on %s", mode, store_dir)

        try:
            yield lock_path
        finally:
            if exclusive:
                os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released %s lock on %s", mode, store_dir)
    finally:
        os.close(fd)
