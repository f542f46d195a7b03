import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        base_currency: str,
        fx_provider: str,
        fx_timeout_secs: float,
        fx_cache_hours: int,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.base_currency = base_currency
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_cache_hours = fx_cache_hours
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SMARTBUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "smartbudget.db"
    database_url = os.getenv("SMARTBUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SMARTBUDGET_TIMEZONE", "Europe/Paris")
    base_currency = os.getenv("SMARTBUDGET_BASE_CURRENCY", "EUR").upper()
    fx_provider = os.getenv("SMARTBUDGET_FX_PROVIDER", "exchangerate-api")
    fx_timeout_secs = float(os.getenv("SMARTBUDGET_FX_TIMEOUT_SECS", "5"))
    fx_cache_hours = int(os.getenv("SMARTBUDGET_FX_CACHE_HOURS", "24"))
    log_level = os.getenv("SMARTBUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        base_currency=base_currency,
        fx_provider=fx_provider,
        fx_timeout_secs=fx_timeout_secs,
        fx_cache_hours=fx_cache_hours,
        log_level=log_level,
    )
