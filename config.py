import os
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        store_secret: str,
        sync_check_interval_secs: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.store_secret = store_secret
        self.sync_check_interval_secs = sync_check_interval_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ENVELOPES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "envelopes.db"
    database_url = os.getenv("ENVELOPES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ENVELOPES_TIMEZONE", "Asia/Seoul")
    store_secret = os.getenv(
        "ENVELOPES_STORE_SECRET",
        "3f0c9a4e5b7d21e86a1f4c0b9d2e7a65c8b1f03d4e6a9c2b7f5e1d8a0c3b6e94",
    )
    sync_check_interval_secs = int(os.getenv("ENVELOPES_SYNC_CHECK_SECS", "300"))
    log_level = os.getenv("ENVELOPES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        store_secret=store_secret,
        sync_check_interval_secs=sync_check_interval_secs,
        log_level=log_level,
    )


def local_now() -> datetime:
    """Current wall-clock time in the configured zone, as a naive datetime."""
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()
