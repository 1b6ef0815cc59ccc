# Property lock and shared Redis client: waiting for a holder, timing out, token-checked release,
# and fail-open behaviour when Redis is disabled or unreachable.
from __future__ import annotations

import threading
import time

import redis

from roomsync import locks, redis_client
from roomsync.locks import redis_try_lock

KEY = "lock:occupancy:property:1"


def test_lock_fails_open_without_redis():
    # REDIS_ENABLED=false in the test environment
    with redis_try_lock(KEY) as locked:
        assert locked is True


def test_lock_is_released_on_exit(fake_redis):
    with redis_try_lock(KEY) as locked:
        assert locked is True
        assert fake_redis.get(KEY) is not None
    assert fake_redis.get(KEY) is None


def test_waits_for_the_holder_to_release(fake_redis):
    holder_in = threading.Event()

    def holder():
        with redis_try_lock(KEY):
            holder_in.set()
            time.sleep(0.1)

    t = threading.Thread(target=holder)
    t.start()
    holder_in.wait(timeout=5)

    started = time.monotonic()
    with redis_try_lock(KEY, wait_ms=2000) as locked:
        waited = time.monotonic() - started
        assert locked is True
    t.join(timeout=5)
    assert waited >= 0.05


def test_gives_up_after_wait_budget_and_keeps_foreign_lock(fake_redis):
    fake_redis.set(KEY, "other-process", nx=True, px=60_000)
    started = time.monotonic()
    with redis_try_lock(KEY, wait_ms=60) as locked:
        assert locked is False
    assert time.monotonic() - started >= 0.05
    assert fake_redis.get(KEY) == "other-process"


def test_release_does_not_delete_a_lock_reacquired_after_expiry(fake_redis):
    with redis_try_lock(KEY, ttl_ms=20) as locked:
        assert locked is True
        time.sleep(0.05)
        # Our lock expired and another process took it
        assert fake_redis.set(KEY, "next-holder", nx=True, px=60_000)
    assert fake_redis.get(KEY) == "next-holder"


def test_redis_errors_fail_open(monkeypatch):
    class Broken:
        def set(self, *args, **kwargs):
            raise redis.ConnectionError("connection reset")

    monkeypatch.setattr(locks, "get_redis", lambda: Broken())
    with redis_try_lock(KEY) as locked:
        assert locked is True


def test_client_disabled_by_default():
    assert redis_client.get_redis() is None
    assert redis_client.redis_status() == "disabled"


def test_unreachable_redis_is_retried_after_cooldown(monkeypatch):
    monkeypatch.setenv("REDIS_ENABLED", "true")
    monkeypatch.setattr(redis_client, "_client", None)
    monkeypatch.setattr(redis_client, "_next_attempt_at", 0.0)
    attempts = []

    class Healthy:
        def ping(self):
            return True

    def refuse(url, **kwargs):
        attempts.append(url)
        raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(redis_client.redis.Redis, "from_url", refuse)
    assert redis_client.get_redis() is None
    # Inside the cooldown nothing reconnects
    assert redis_client.get_redis() is None
    assert redis_client.redis_status() == "unavailable"
    assert len(attempts) == 1

    # Cooldown over and Redis back: the next call connects
    monkeypatch.setattr(redis_client, "_next_attempt_at", 0.0)
    monkeypatch.setattr(redis_client.redis.Redis, "from_url", lambda url, **kwargs: Healthy())
    client = redis_client.get_redis()
    assert isinstance(client, Healthy)
    assert redis_client.redis_status() == "ok"
