# Shared Redis connection for the occupancy locks and the write-endpoint rate limiter.
# Both callers fail open: when Redis is disabled or unreachable they get None and carry on,
# relying on the version compare-and-swap for correctness. A failed connection is retried
# after REDIS_RETRY_SECONDS so locking resumes once Redis is back.
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

import redis

logger = logging.getLogger("roomsync.redis")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_RETRY_SECONDS = float(os.getenv("REDIS_RETRY_SECONDS", "30"))

_FLAG_ON = {"1", "true", "yes", "on"}

_client: Optional[redis.Redis] = None
_next_attempt_at = 0.0
_connect_lock = threading.Lock()


def is_redis_enabled() -> bool:
    return os.getenv("REDIS_ENABLED", "false").strip().lower() in _FLAG_ON


def _connect() -> Optional[redis.Redis]:
    global _client, _next_attempt_at
    try:
        client = redis.Redis.from_url(
            REDIS_URL,
            socket_timeout=0.25,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
        )
        client.ping()
    except redis.RedisError as exc:
        _next_attempt_at = time.monotonic() + REDIS_RETRY_SECONDS
        logger.warning(
            "redis.unavailable",
            extra={"url": REDIS_URL, "retry_in_s": REDIS_RETRY_SECONDS, "error": str(exc)},
        )
        return None
    _client = client
    logger.info("redis.connected", extra={"url": REDIS_URL})
    return client


def get_redis() -> Optional[redis.Redis]:
    """Connected client, or None while Redis is disabled or inside the reconnect cooldown."""
    if not is_redis_enabled():
        return None
    if _client is not None:
        return _client
    if time.monotonic() < _next_attempt_at:
        return None
    with _connect_lock:
        if _client is not None:
            return _client
        return _connect()


def redis_status() -> str:
    """'disabled', 'ok' or 'unavailable'; reported by /healthz."""
    if not is_redis_enabled():
        return "disabled"
    client = get_redis()
    if client is None:
        return "unavailable"
    try:
        client.ping()
    except redis.RedisError:
        return "unavailable"
    return "ok"
