"""Configuration settings for monobudget-mcp."""

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_db_path() -> Path:
    env_path = os.getenv("MONOBUDGET_DB_PATH")
    if env_path:
        return Path(env_path)
    return Path.home() / ".cache" / "monobudget-mcp" / "monobudget.db"


class SyncConfig(BaseModel):
    """Synchronization timing against the Monobank API."""

    api_url: str = Field(default_factory=lambda: os.getenv("MONOBANK_API_URL", "https://api.monobank.ua"))
    lookback_months: int = Field(default_factory=lambda: int(os.getenv("MONOBUDGET_LOOKBACK_MONTHS", "12")), ge=1)
    # Monobank allows one statement request per account every 60 seconds
    rate_limit_delay: float = Field(default_factory=lambda: float(os.getenv("MONOBUDGET_RATE_LIMIT_DELAY", "61")))
    rate_limit_cooldown: float = Field(
        default_factory=lambda: float(os.getenv("MONOBUDGET_RATE_LIMIT_COOLDOWN", "61"))
    )
    account_delay: float = 0.5
    stale_after_days: int = 30
    request_timeout: float = 60.0


class RefreshConfig(BaseModel):
    """Background revalidation schedule."""

    interval: float = Field(default_factory=lambda: float(os.getenv("MONOBUDGET_REFRESH_INTERVAL", "300")))
    jitter: float = Field(default_factory=lambda: float(os.getenv("MONOBUDGET_REFRESH_JITTER", "30")))


class AppConfig(BaseModel):
    """Application configuration."""

    sync: SyncConfig = Field(default_factory=SyncConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)

    db_path: Path = Field(default_factory=_default_db_path)
    log_level: str = Field(default_factory=lambda: os.getenv("MONOBUDGET_LOG_LEVEL", "INFO"))

    def ensure_dirs(self) -> None:
        """Create the directory holding the database file."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
