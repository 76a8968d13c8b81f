import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        closing_offset_days: int,
        cache_ttl_secs: float,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.closing_offset_days = closing_offset_days
        self.cache_ttl_secs = cache_ttl_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "America/Sao_Paulo")
    csrf_secret = os.getenv(
        "FINANCE_CSRF_SECRET",
        "5f0c3e0a9d1b7e24c81f6a3d92b04e7c1a5d8f3b6e902c4a7d1f08b3e6c59a21",
    )
    closing_offset_days = int(os.getenv("FINANCE_CLOSING_OFFSET_DAYS", "6"))
    cache_ttl_secs = float(os.getenv("FINANCE_CACHE_TTL_SECS", "300"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        closing_offset_days=closing_offset_days,
        cache_ttl_secs=cache_ttl_secs,
        log_level=log_level,
    )
