import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        auto_create_schema: bool,
        budget_refresh_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.auto_create_schema = auto_create_schema
        self.budget_refresh_enabled = budget_refresh_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("MONEY_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "money.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("MONEY_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "MONEY_TOKEN_SECRET",
        "5c0f2d8e9a7b4c1d3e6f8a9b0c2d4e6f1a3b5c7d9e0f2a4b6c8d0e1f3a5b7c9d",
    )
    token_max_age_hours = int(os.getenv("MONEY_TOKEN_MAX_AGE_HOURS", "168"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        auto_create_schema=_env_flag("MONEY_AUTO_CREATE_SCHEMA", "1"),
        budget_refresh_enabled=_env_flag("MONEY_BUDGET_REFRESH_ENABLED", "1"),
        log_level=os.getenv("MONEY_LOG_LEVEL", "INFO").upper(),
    )
