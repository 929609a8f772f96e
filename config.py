import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cursor_secret: str,
        page_size: int,
        max_page_size: int,
        sweep_hour: int,
        sweep_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cursor_secret = cursor_secret
        self.page_size = page_size
        self.max_page_size = max_page_size
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    cursor_secret = os.getenv(
        "LEDGER_CURSOR_SECRET",
        "5d1f0c7e9a2b44c6b8e3a1f07d96c2e4b7a05f3d18c2e9b64a7f0d3c5e8b1a29",
    )
    page_size = int(os.getenv("LEDGER_PAGE_SIZE", "50"))
    max_page_size = int(os.getenv("LEDGER_MAX_PAGE_SIZE", "200"))
    sweep_hour = int(os.getenv("LEDGER_SWEEP_HOUR", "6"))
    sweep_minute = int(os.getenv("LEDGER_SWEEP_MINUTE", "0"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cursor_secret=cursor_secret,
        page_size=page_size,
        max_page_size=max_page_size,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
    )
