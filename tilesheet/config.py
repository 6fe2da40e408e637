"""
Tilesheet configuration — all environment variables in one place.

Read from environment at import time. Sessions take these values through
SessionOptions, so tests never depend on the environment.
"""

from __future__ import annotations

import logging
import os


class Settings:
    """Engine settings from environment variables."""

    # Row store
    ROW_CAP: int = int(os.environ.get("TILESHEET_ROW_CAP", "5000"))
    FORMULA_ROW_LIMIT: int = int(os.environ.get("TILESHEET_FORMULA_ROW_LIMIT", "5000"))
    ERROR_VALUE: str = os.environ.get("TILESHEET_ERROR_VALUE", "#ERR")

    # History
    HISTORY_LIMIT: int = int(os.environ.get("TILESHEET_HISTORY_LIMIT", "100"))

    # Persistence
    SAVE_DEBOUNCE_MS: int = int(os.environ.get("TILESHEET_SAVE_DEBOUNCE_MS", "500"))
    BACKUP_DIR: str = os.environ.get("TILESHEET_BACKUP_DIR", ".tilesheet-backups")

    # Logging
    LOG_LEVEL: str = os.environ.get("TILESHEET_LOG_LEVEL", "WARNING")


# Singleton instance
settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Basic stderr logging for the CLI. Library code never calls this."""
    name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
