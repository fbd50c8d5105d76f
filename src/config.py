"""
config.py

Application settings and logging setup.

Settings are read from environment variables prefixed ``RATEDESK_`` or from
a ``.env`` file in the working directory, e.g.

    RATEDESK_LOG_LEVEL=DEBUG
    RATEDESK_EXPIRY_SWEEP_INTERVAL_SECONDS=600
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RATEDESK_",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "Rate Desk Back-Office API"
    log_level: str = "INFO"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Rate edit rules
    cooling_period_minutes: int = Field(default=15, ge=1)
    delete_window_minutes: int = Field(default=15, ge=1)

    # Expiry sweep
    expiry_sweep_enabled: bool = True
    expiry_sweep_interval_seconds: int = Field(default=3600, ge=1)

    # Listings
    default_page_limit: int = Field(default=10, ge=1)
    max_page_limit: int = Field(default=100, ge=1)

    @property
    def cooling_period(self) -> timedelta:
        return timedelta(minutes=self.cooling_period_minutes)

    @property
    def delete_window(self) -> timedelta:
        return timedelta(minutes=self.delete_window_minutes)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level.upper())
