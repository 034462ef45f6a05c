"""
Process-wide exclusive locks backed by flock.

The lock lives as long as the returned file object stays open; the kernel
releases it when the holding process exits, however it exits.
"""

import fcntl
import logging
import os

logger = logging.getLogger(__name__)


def acquire_exclusive_lock(path: str):
    """
    Try to take an exclusive, non-blocking lock on path.

    Returns:
        The open lock file (keep a reference to hold the lock), or None if
        another process holds it
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    handle = open(path, 'a')
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None

    handle.seek(0)
    handle.truncate()
    handle.write(f"{os.getpid()}\n")
    handle.flush()
    logger.debug(f"Acquired lock {path} (pid {os.getpid()})")
    return handle


def release_lock(handle):
    if handle is None or handle.closed:
        return
    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    handle.close()
