# Application entrypoint: configures middleware, error mapping, the maintenance sweeper, and API routers.
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import threading
import time

from .db import Base, engine, is_sqlite
from .errors import BookingError, booking_error_handler
from .redis_client import redis_status
from .routes.auth import router as auth_router
from .routes.bookings import router as bookings_router
from .routes.properties import router as properties_router
from .sweepers import sweep_expired_bookings, sweep_outbox

logger = logging.getLogger("roomsync.main")

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))


def sweeper_enabled() -> bool:
    """SWEEPER_ENABLED (default on); tests and one-off workers switch the background thread off."""
    return os.getenv("SWEEPER_ENABLED", "true").strip().lower() not in {"0", "false", "no", "off"}


def _start_sweeper(interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> None:
    """
    Launch a daemon thread that periodically expires stale pending bookings and
    redelivers side effects whose first dispatch failed.

    Errors are logged and the loop keeps going; it will try again on the next interval.
    """
    def _loop() -> None:
        while True:
            try:
                sweep_expired_bookings()
                sweep_outbox()
            except Exception:
                logger.exception("sweeper iteration failed")
            time.sleep(interval_seconds)

    t = threading.Thread(target=_loop, name="roomsync-sweeper", daemon=True)
    t.start()


# Parse CORS origins from a comma-separated env var.
# Note: '*' cannot be used with allow_credentials=True; we fall back to explicit localhost origins for dev.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="roomsync API", version="0.1.0")
allow_list = _parse_cors_origins(os.getenv("CORS_ORIGINS"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BookingError, booking_error_handler)


@app.on_event("startup")
def on_startup() -> None:
    # For local SQLite, auto-create tables; production DBs rely on Alembic migrations.
    if is_sqlite():
        Base.metadata.create_all(bind=engine)
    if sweeper_enabled():
        _start_sweeper()


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok", "redis": redis_status()}


app.include_router(auth_router, prefix="", tags=["auth"])
app.include_router(properties_router, prefix="/api/v1", tags=["properties"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
