import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_secs: int,
        base_currency: str,
        fx_provider: str,
        fx_timeout_secs: float,
        scheduler_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_secs = token_max_age_secs
        self.base_currency = base_currency
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.scheduler_enabled = scheduler_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINTRACK_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'fintrack.db'}"
    timezone = os.getenv("FINTRACK_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "FINTRACK_SECRET_KEY",
        "3f9c1d7e58a24b6f90e1c2d3a4b5c6d7e8f9a0b1c2d3e4f5a6b7c8d9e0f1a2b3",
    )
    token_max_age_secs = int(os.getenv("FINTRACK_TOKEN_MAX_AGE_SECS", "604800"))
    base_currency = os.getenv("FINTRACK_BASE_CURRENCY", "USD").upper()
    fx_provider = os.getenv("FINTRACK_FX_PROVIDER", "table")
    fx_timeout_secs = float(os.getenv("FINTRACK_FX_TIMEOUT_SECS", "5"))
    scheduler_enabled = _env_flag("FINTRACK_SCHEDULER_ENABLED")
    log_level = os.getenv("FINTRACK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_secs=token_max_age_secs,
        base_currency=base_currency,
        fx_provider=fx_provider,
        fx_timeout_secs=fx_timeout_secs,
        scheduler_enabled=scheduler_enabled,
        log_level=log_level,
    )
