# Per-property serialization units backed by Redis, gating the occupancy critical section across processes.
# A second writer on the same property waits for the holder (up to LOCK_WAIT_MS) instead of racing it.
# Correctness still comes from the version compare-and-swap in occupancy.py, so the lock fails open
# when Redis is down.
from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from typing import Iterator
from uuid import uuid4

import redis

from .redis_client import get_redis

logger = logging.getLogger("roomsync.locks")

# Lock lifetime; long enough for one read-validate-commit cycle, short enough to self-heal after a crash
LOCK_TTL_MS = int(os.getenv("LOCK_TTL_MS", "5000"))
# How long a writer queues behind the holder; defaults to the TTL so an orphaned lock is outlived
LOCK_WAIT_MS = int(os.getenv("LOCK_WAIT_MS", str(LOCK_TTL_MS)))
LOCK_POLL_MS = int(os.getenv("LOCK_POLL_MS", "25"))

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _acquire(r, key: str, token: str, ttl_ms: int, wait_ms: int) -> bool:
    deadline = time.monotonic() + max(0, wait_ms) / 1000.0
    while True:
        if r.set(key, token, nx=True, px=ttl_ms):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(LOCK_POLL_MS / 1000.0, remaining))


@contextmanager
def redis_try_lock(key: str, ttl_ms: int = LOCK_TTL_MS, wait_ms: int = LOCK_WAIT_MS) -> Iterator[bool]:
    """
    Distributed lock implemented with Redis SET NX PX, polled until 'wait_ms' elapses.

    Yields:
    - True when the lock is acquired, or when Redis is unavailable (fail-open).
    - False when another holder kept it for the whole wait.

    Release uses a token-checked Lua script so we never delete a lock that expired
    and was re-acquired by someone else.

        with redis_try_lock(serialization_key(prop_id, acc_id)) as locked:
            if not locked:
                ...  # give up with ConflictError
    """
    r = get_redis()
    if r is None:
        yield True
        return

    token = uuid4().hex
    try:
        acquired = _acquire(r, key, token, ttl_ms, wait_ms)
    except redis.RedisError as exc:
        logger.warning("lock.redis_error", extra={"key": key, "error": str(exc)})
        acquired = None

    if acquired is None:
        yield True
        return

    if not acquired:
        logger.warning("lock.wait_timeout", extra={"key": key, "wait_ms": wait_ms})

    try:
        yield acquired
    finally:
        if acquired:
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except redis.RedisError as exc:
                # The lock will expire by TTL
                logger.debug("lock.release_error", extra={"key": key, "error": str(exc)})
