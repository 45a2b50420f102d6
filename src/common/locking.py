"""Advisory per-key file locks for the shared store and cache.

Two processes installing at the same time serialize on a ``<key>.lock``
sidecar using ``fcntl.flock``. Inside one process an ``asyncio.Lock`` per
key serializes coroutines first, so a flock is never contended by the
process that already holds it.
"""
from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import time
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from common.errors import LockTimeoutError
from constants import Constants

logger = logging.getLogger(__name__)

_ASYNC_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _async_lock(key: str) -> asyncio.Lock:
    # asyncio locks are bound to one event loop
    per_loop = _ASYNC_LOCKS.setdefault(asyncio.get_running_loop(), {})
    lock = per_loop.get(key)
    if lock is None:
        lock = per_loop.setdefault(key, asyncio.Lock())
    return lock


async def _acquire_flock(lock_path: str, timeout: float, poll_interval: float) -> int:
    """Open ``lock_path`` and take an exclusive flock, polling until ``timeout``.

    Attempts never block and the wait between them is an ``asyncio.sleep``.
    A cancelled waiter closes its descriptor and never holds the lock.
    """
    os.makedirs(os.path.dirname(lock_path), exist_ok=True)
    fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    start = time.monotonic()
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if time.monotonic() - start >= timeout:
                    raise LockTimeoutError(
                        f"Could not acquire lock {lock_path} within {timeout}s"
                    ) from None
            await asyncio.sleep(poll_interval)
    except BaseException:
        os.close(fd)
        raise


def _release_flock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@asynccontextmanager
async def key_lock(
    lock_path: str,
    timeout: float = Constants.LOCK_TIMEOUT_SEC,
    poll_interval: float = Constants.LOCK_POLL_INTERVAL_SEC,
) -> AsyncIterator[None]:
    """Hold an exclusive advisory lock on ``lock_path`` for the block.

    Waiting polls on the event loop, which keeps serving other downloads
    meanwhile.

    Args:
        lock_path: Sidecar lock file path (created if missing, left in place).
        timeout: Seconds to wait before raising ``LockTimeoutError``.
        poll_interval: Seconds between non-blocking attempts.
    """
    key = os.path.abspath(lock_path)
    async with _async_lock(key):
        fd = await _acquire_flock(key, timeout, poll_interval)
        logger.debug("Acquired store lock %s", key)
        try:
            yield
        finally:
            _release_flock(fd)
