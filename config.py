import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fx_provider: str,
        fx_timeout_secs: float,
        purge_after_secs: int,
        purge_interval_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.purge_after_secs = purge_after_secs
        self.purge_interval_secs = purge_interval_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    fx_provider = os.getenv("LEDGER_FX_PROVIDER", "frankfurter")
    fx_timeout_secs = float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5"))
    purge_after_secs = int(os.getenv("LEDGER_PURGE_AFTER_SECS", "10"))
    purge_interval_secs = int(os.getenv("LEDGER_PURGE_INTERVAL_SECS", "60"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        fx_provider=fx_provider,
        fx_timeout_secs=fx_timeout_secs,
        purge_after_secs=purge_after_secs,
        purge_interval_secs=purge_interval_secs,
    )
