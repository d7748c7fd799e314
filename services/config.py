# services/config.py
from __future__ import annotations
import os

# ------------------------------------------------------------------------------
# Helper: get env var with fallback
# ------------------------------------------------------------------------------
def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return v if v is not None and v != "" else default

def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").strip().lower() in ("1", "true", "yes", "on")

# ------------------------------------------------------------------------------
# Database
# ------------------------------------------------------------------------------
DB_URL: str = _env("DB_URL", "sqlite://./db.sqlite3")

TORTOISE_ORM = {
    "connections": {"default": DB_URL},
    "apps": {"models": {"models": ["models"], "default_connection": "default"}},
    "use_tz": True,
    "timezone": "UTC",
}

# ------------------------------------------------------------------------------
# Auth (identity collaborator)
# ------------------------------------------------------------------------------
JWT_SECRET_KEY: str = _env("JWT_SECRET_KEY", "change-me")
JWT_REFRESH_SECRET: str = _env("JWT_REFRESH_SECRET", "change-me-too")
JWT_ALGORITHM: str = _env("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_SECONDS: int = int(_env("ACCESS_TOKEN_SECONDS", str(15 * 60)))
REFRESH_TOKEN_SECONDS: int = int(_env("REFRESH_TOKEN_SECONDS", str(7 * 24 * 3600)))

# ------------------------------------------------------------------------------
# Billing
# ------------------------------------------------------------------------------
BILL_GRACE_DAYS: int = int(_env("BILL_GRACE_DAYS", "15"))

# First billing period start for connections billed against their opening
# baseline, used only when the connection has no connected_at date.
FIRST_PERIOD_LOOKBACK_DAYS: int = int(_env("FIRST_PERIOD_LOOKBACK_DAYS", "30"))

# Empty = no ceiling on the units a single reading may add.
MAX_READING_DELTA: str = _env("MAX_READING_DELTA", "")

# False -> submit_reading only enqueues GENERATE_BILLS jobs.
SYNC_BILLING: bool = _env_bool("SYNC_BILLING", True)

IDEMPOTENCY_TTL_SECONDS: int = int(_env("IDEMPOTENCY_TTL_SECONDS", str(24 * 3600)))

# ------------------------------------------------------------------------------
# Job runner
# ------------------------------------------------------------------------------
JOB_POLL_SECONDS: float = float(_env("JOB_POLL_SECONDS", "5"))
JOB_MAX_ATTEMPTS: int = int(_env("JOB_MAX_ATTEMPTS", "3"))
JOB_TIMEOUT_SECONDS: float = float(_env("JOB_TIMEOUT_SECONDS", "120"))
JOB_BACKOFF_BASE_SECONDS: float = float(_env("JOB_BACKOFF_BASE_SECONDS", "5"))
JOB_BACKOFF_MAX_SECONDS: float = float(_env("JOB_BACKOFF_MAX_SECONDS", "900"))
JOB_STALE_SECONDS: float = float(_env("JOB_STALE_SECONDS", "600"))
JOB_REAP_INTERVAL_SECONDS: int = int(_env("JOB_REAP_INTERVAL_SECONDS", "60"))

RUN_WORKER_IN_APP: bool = _env_bool("RUN_WORKER_IN_APP", True)

# ------------------------------------------------------------------------------
# HTTP
# ------------------------------------------------------------------------------
CORS_ORIGINS: list[str] = [
    o.strip() for o in _env("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()
]

# Admin account created on first start when the users table is empty.
SEED_ADMIN_USERNAME: str = _env("SEED_ADMIN_USERNAME", "admin")
SEED_ADMIN_EMAIL: str = _env("SEED_ADMIN_EMAIL", "admin@example.com")
SEED_ADMIN_PASSWORD: str = _env("SEED_ADMIN_PASSWORD", "password123")
