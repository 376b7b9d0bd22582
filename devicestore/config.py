"""Centralised configuration via pydantic-settings.

Reads from environment variables (and optionally a .env file located next to
the project root).  The application builds its ``Storage`` from these values
at launch; tests point ``DATA_DIR`` / ``DB_PATH`` at a temp directory.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_DIR = Path(__file__).resolve().parent.parent  # …/devicestore repo root

DEFAULT_MAX_STORE_SECONDS = 7 * 24 * 60 * 60  # cached rows expire after a week


class Settings(BaseSettings):
    """Application-wide settings – all values come from env vars."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Paths ─────────────────────────────────────────────────────────
    data_dir: str = str(Path.home() / ".devicestore")

    # ── Database ──────────────────────────────────────────────────────
    db_path: str = ""  # default: {data_dir}/devicestore.duckdb
    db_threads: int = 0  # 0 = let DuckDB decide

    # ── Logging ───────────────────────────────────────────────────────
    log_level: str = "INFO"

    # ── Cache eviction ────────────────────────────────────────────────
    cache_tables: List[str] = []
    cache_timestamp_column: str = "ts"
    cache_max_age_seconds: int = DEFAULT_MAX_STORE_SECONDS

    # ── Background transactions ───────────────────────────────────────
    worker_thread_name: str = "devicestore-tx"

    # ── Derived helpers ───────────────────────────────────────────────
    @property
    def resolved_db_path(self) -> str:
        if self.db_path:
            return self.db_path
        return str(Path(self.data_dir) / "devicestore.duckdb")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the settings object."""
    return Settings()
