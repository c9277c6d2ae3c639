import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/possync')
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Sync queue tuning. Retries are per queue item; the lease bounds how long a
        # crashed instance can keep other instances away from a store's queue.
        self.sync_max_retries = max(1, _env_int("SYNC_MAX_RETRIES", 3))
        self.sync_batch_limit = max(1, _env_int("SYNC_BATCH_LIMIT", 200))
        self.sync_lease_seconds = max(5, _env_int("SYNC_LEASE_SECONDS", 120))
        self.sync_clear_after_days = max(1, _env_int("SYNC_CLEAR_AFTER_DAYS", 7))

settings = Settings()
