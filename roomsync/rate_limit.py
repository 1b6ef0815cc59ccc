# Redis-backed fixed-window rate limiter for the write endpoints.
# - Per-IP counters, keys rl:v1:ip:{ip}:{scope} with a TTL-based fixed window.
# - Fail-open if Redis is unavailable, so the API remains usable in dev or outages.
import os
import logging
from typing import Callable, Dict, Literal, Optional

from fastapi import Request, HTTPException, status

from .redis_client import get_redis, is_redis_enabled

logger = logging.getLogger("roomsync.rate_limit")

# login/signup guard credentials; submit covers new booking requests; transition covers decide/cancel/release
Scope = Literal["login", "signup", "submit", "transition"]

# Default cap per window for each scope; override with RATE_LIMIT_<SCOPE>_PER_WINDOW
_DEFAULT_LIMITS: Dict[str, int] = {
    "login": 10,
    "signup": 5,
    "submit": 20,
    "transition": 60,
}


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


def _window_seconds() -> int:
    return _to_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60)


def _limit_for_scope(scope: Scope) -> int:
    return _to_int(os.getenv(f"RATE_LIMIT_{scope.upper()}_PER_WINDOW"), _DEFAULT_LIMITS[scope])


def _client_ip(request: Request) -> str:
    # Does not parse X-Forwarded-For; behind a proxy, only trust forwarded headers when properly configured.
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: Scope) -> Callable[[Request], None]:
    """
    FastAPI dependency enforcing a fixed window per client IP and scope.

    On the first hit in a window the TTL is set; later hits share the same expiry.
    Over the limit raises 429 with retry_after taken from the key's remaining TTL.
    """
    window = _window_seconds()
    limit = _limit_for_scope(scope)

    def _dependency(request: Request) -> None:
        if not is_redis_enabled():
            return

        r = get_redis()
        if r is None:
            return

        ip = _client_ip(request)
        key = f"rl:v1:ip:{ip}:{scope}"
        try:
            current = r.incr(key, amount=1)
            if current == 1:
                r.expire(key, window)
            if current > limit:
                ttl = r.ttl(key)
                retry_after = ttl if isinstance(ttl, int) and ttl > 0 else window
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={
                        "error": "rate_limited",
                        "scope": scope,
                        "limit": limit,
                        "window_seconds": window,
                        "retry_after": retry_after,
                    },
                    headers={"Retry-After": str(retry_after)},
                )
        except HTTPException:
            raise
        except Exception as exc:
            # Fail open on Redis errors to avoid blocking requests
            logger.warning("Rate limit fail-open (scope=%s, ip=%s): %s", scope, ip, exc)

    return _dependency
