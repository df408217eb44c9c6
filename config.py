import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FAIRSPLIT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FAIRSPLIT_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "fairsplit.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("FAIRSPLIT_TIMEZONE", "America/Argentina/Buenos_Aires")
    log_level = os.getenv("FAIRSPLIT_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
    )
