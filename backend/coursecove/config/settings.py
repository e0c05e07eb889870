"""
Environment-driven service configuration.

All knobs are read once from the environment and cached. Tests call
reset_settings() after patching os.environ.

Environment variables:
- DATABASE_URL: PostgreSQL connection string
- CLERK_ISSUER_URL / CLERK_JWKS_URL: session token verification
- CLERK_WEBHOOK_SECRET: svix signing secret (whsec_...)
- MEMBERSHIP_RETENTION_DAYS: grace window for removed members (default: 30)
- ADMIN_ROLES: comma separated Clerk org roles treated as admin
- WEBHOOK_MAX_ATTEMPTS: outer retry budget per webhook event (default: 5)
- MEMBERSHIP_DEPENDENCY_MAX_ATTEMPTS / MEMBERSHIP_DEPENDENCY_BASE_DELAY:
  wait loop for user/org rows before applying a membership (default: 5 / 1.0s)
- WEBHOOK_PROCESSING_MODE: "queue" (ledger + worker) or "inline"
- RATE_LIMITS_CONFIG: path to rate_limits.yml (default: config/rate_limits.yml)
- RATE_LIMIT_REDIS_URL: shared counter store for multi-instance deployments
  (default: unset, in-process counters)
- MEMBERSHIP_PURGE_CRON / APPOINTMENT_TYPE_PURGE_CRON / LOCATION_PURGE_CRON:
  schedules for the retention cleanup families
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

DEFAULT_ADMIN_ROLES = ("org:admin", "org:super_admin")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    clerk_issuer_url: Optional[str]
    clerk_jwks_url: Optional[str]
    clerk_webhook_secret: Optional[str]
    membership_retention_days: int = 30
    admin_roles: Tuple[str, ...] = DEFAULT_ADMIN_ROLES
    webhook_max_attempts: int = 5
    webhook_retry_base_delay: float = 30.0
    membership_dependency_max_attempts: int = 5
    membership_dependency_base_delay: float = 1.0
    webhook_processing_mode: str = "queue"
    webhook_worker_poll_interval: int = 10
    rate_limit_cleanup_interval: int = 300
    membership_purge_cron: str = "0 2 * * *"
    appointment_type_purge_cron: str = "0 3 * * *"
    location_purge_cron: str = "0 4 * * *"
    rate_limits_path: Optional[str] = None
    rate_limit_redis_url: Optional[str] = None

    @property
    def process_webhooks_inline(self) -> bool:
        return self.webhook_processing_mode == "inline"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    mode = os.getenv("WEBHOOK_PROCESSING_MODE", "queue").strip().lower()
    if mode not in ("queue", "inline"):
        raise ValueError(f"WEBHOOK_PROCESSING_MODE must be 'queue' or 'inline', got {mode!r}")

    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        clerk_issuer_url=os.getenv("CLERK_ISSUER_URL"),
        clerk_jwks_url=os.getenv("CLERK_JWKS_URL"),
        clerk_webhook_secret=os.getenv("CLERK_WEBHOOK_SECRET"),
        membership_retention_days=_env_int("MEMBERSHIP_RETENTION_DAYS", 30),
        admin_roles=_env_list("ADMIN_ROLES", DEFAULT_ADMIN_ROLES),
        webhook_max_attempts=_env_int("WEBHOOK_MAX_ATTEMPTS", 5),
        webhook_retry_base_delay=_env_float("WEBHOOK_RETRY_BASE_DELAY", 30.0),
        membership_dependency_max_attempts=_env_int("MEMBERSHIP_DEPENDENCY_MAX_ATTEMPTS", 5),
        membership_dependency_base_delay=_env_float("MEMBERSHIP_DEPENDENCY_BASE_DELAY", 1.0),
        webhook_processing_mode=mode,
        webhook_worker_poll_interval=_env_int("WEBHOOK_WORKER_POLL_INTERVAL", 10),
        rate_limit_cleanup_interval=_env_int("RATE_LIMIT_CLEANUP_INTERVAL", 300),
        membership_purge_cron=os.getenv("MEMBERSHIP_PURGE_CRON", "0 2 * * *"),
        appointment_type_purge_cron=os.getenv("APPOINTMENT_TYPE_PURGE_CRON", "0 3 * * *"),
        location_purge_cron=os.getenv("LOCATION_PURGE_CRON", "0 4 * * *"),
        rate_limits_path=os.getenv("RATE_LIMITS_CONFIG"),
        rate_limit_redis_url=os.getenv("RATE_LIMIT_REDIS_URL") or None,
    )


def reset_settings() -> None:
    """Clear the cached settings (tests)."""
    get_settings.cache_clear()
