"""
Runtime configuration for the deal-flow service.

Values come from the environment (backend/.env is loaded for local dev).
Store selection (Supabase vs in-memory) is decided by server.py at startup
from these values; nothing in flow/ reads the environment.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "production")

    # Pipedrive
    pipedrive_api_token: str = os.getenv("PIPEDRIVE_API_TOKEN", "")
    pipedrive_base_url: str = os.getenv("PIPEDRIVE_BASE_URL", "https://api.pipedrive.com/v1")

    # Supabase (empty = in-memory stores, dev only)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_service_key: str = os.getenv("SUPABASE_SERVICE_KEY", "")

    # Cron / admin auth
    cron_secret: str = os.getenv("CRON_SECRET", "")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    # Sync defaults
    sync_batch_size: int = _int_env("SYNC_BATCH_SIZE", 40)
    sync_incremental_batch_size: int = _int_env("SYNC_INCREMENTAL_BATCH_SIZE", 20)
    sync_max_retries: int = _int_env("SYNC_MAX_RETRIES", 1)
    sync_concurrency: int = _int_env("SYNC_CONCURRENCY", 5)
    sync_window_hours: int = _int_env("SYNC_WINDOW_HOURS", 6)
    sync_deadline_seconds: int = _int_env("SYNC_DEADLINE_SECONDS", 1500)
    # In-process incremental loop interval; 0 = rely on external cron
    sync_loop_interval_seconds: int = _int_env("SYNC_LOOP_INTERVAL_SECONDS", 0)

    # Metric result cache (seconds)
    metrics_cache_ttl: int = _int_env("METRICS_CACHE_TTL", 300)
    metrics_cache_stale_ttl: int = _int_env("METRICS_CACHE_STALE_TTL", 900)

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


settings = Settings()
