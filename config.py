import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        scheduler_enabled: bool,
        reconcile_hour: int,
        reconcile_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = _env_flag("FINANCE_SCHEDULER_ENABLED", "1")
    reconcile_hour = int(os.getenv("FINANCE_RECONCILE_HOUR", "3"))
    reconcile_minute = int(os.getenv("FINANCE_RECONCILE_MINUTE", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
    )
