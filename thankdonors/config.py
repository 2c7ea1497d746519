import os
from dataclasses import dataclass
from typing import Optional

HOOKDECK_API_BASE = "https://api.hookdeck.com/2025-07-01"
LOOPS_API_BASE = "https://app.loops.so/api/v1"


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


# ----------------------------
# Config
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_pro_price_id: Optional[str] = None

    hookdeck_api_key: Optional[str] = None
    hookdeck_destination_id: Optional[str] = None
    hookdeck_api_base: str = HOOKDECK_API_BASE

    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    loops_api_key: Optional[str] = None
    loops_api_base: str = LOOPS_API_BASE

    app_origin: str = "http://localhost:8080"

    monitor_queue_backend: str = "pg"  # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    monitor_max_attempts: int = 20
    monitor_delay_seconds: float = 30.0
    monitor_backoff: float = 1.0
    monitor_max_delay_seconds: float = 600.0
    monitor_in_process: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = _env("DATABASE_URL")
        if database_url is None:
            raise RuntimeError("DATABASE_URL is required")

        backend = (_env("MONITOR_QUEUE_BACKEND") or "pg").lower()
        if backend not in ("pg", "redis"):
            raise RuntimeError(
                f"MONITOR_QUEUE_BACKEND must be 'pg' or 'redis', "
                f"got {backend!r}"
            )

        gate_limit = _env("DB_GATE_LIMIT")

        return cls(
            database_url=database_url,
            db_pool_size=int(_env("DB_POOL_SIZE") or "10"),
            db_max_overflow=int(_env("DB_MAX_OVERFLOW") or "10"),
            db_pool_timeout=int(_env("DB_POOL_TIMEOUT") or "30"),
            db_gate_limit=int(gate_limit) if gate_limit else None,
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            stripe_pro_price_id=_env("STRIPE_PRO_PRICE_ID"),
            hookdeck_api_key=_env("HOOKDECK_API_KEY"),
            hookdeck_destination_id=_env("HOOKDECK_DESTINATION_ID"),
            hookdeck_api_base=_env("HOOKDECK_API_BASE") or HOOKDECK_API_BASE,
            supabase_url=_env("SUPABASE_URL"),
            supabase_anon_key=_env("SUPABASE_ANON_KEY"),
            supabase_service_role_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
            loops_api_key=_env("LOOPS_API_KEY"),
            loops_api_base=_env("LOOPS_API_BASE") or LOOPS_API_BASE,
            app_origin=_env("APP_ORIGIN") or "http://localhost:8080",
            monitor_queue_backend=backend,
            redis_url=_env("REDIS_URL") or "redis://127.0.0.1:6379",
            redis_max_conn=int(_env("REDIS_MAX_CONN") or "64"),
            monitor_max_attempts=int(_env("MONITOR_MAX_ATTEMPTS") or "20"),
            monitor_delay_seconds=float(
                _env("MONITOR_DELAY_SECONDS") or "30"
            ),
            monitor_backoff=float(_env("MONITOR_BACKOFF") or "1.0"),
            monitor_max_delay_seconds=float(
                _env("MONITOR_MAX_DELAY_SECONDS") or "600"
            ),
            monitor_in_process=_env_bool("MONITOR_IN_PROCESS", True),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )
