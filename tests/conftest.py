"""Shared pytest fixtures for devicestore tests.

Sets up a temporary data directory so tests never touch a real device
database.
"""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path

import pytest

# ── override env BEFORE any devicestore import ──────────────────────────────
_tmp = tempfile.mkdtemp(prefix="devicestore_test_")
os.environ["DATA_DIR"] = _tmp
os.environ["DB_PATH"] = str(Path(_tmp) / "test.duckdb")
os.environ["LOG_LEVEL"] = "WARNING"

# Now safe to import
from devicestore.config import get_settings  # noqa: E402
from devicestore.db import Storage  # noqa: E402

DAY = 24 * 60 * 60

CACHE_DDL = "CREATE TABLE Cache (id INTEGER PRIMARY KEY, ts BIGINT, val VARCHAR)"
PHONE_CODE_DDL = (
    "CREATE TABLE PhoneCodeModel ("
    "id INTEGER PRIMARY KEY, phoneCode VARCHAR UNIQUE NOT NULL, countryCode VARCHAR)"
)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Clear the lru_cache so each test gets fresh settings."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def storage(tmp_path):
    """A prepared Storage on its own database file."""
    s = Storage(str(tmp_path / "device.duckdb"))
    assert s.prepare_on_launch().ok
    yield s
    s.close()


@pytest.fixture
def cache_storage(storage):
    """Storage with a ``Cache`` table registered for eviction on ``ts``."""
    assert storage.create_table("Cache", CACHE_DDL, cache_timestamp_column="ts").ok
    return storage


@pytest.fixture
def now() -> int:
    return int(time.time())


def count_rows(storage: Storage, table: str) -> int:
    return storage.row_count(table).unwrap()
