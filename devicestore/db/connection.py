"""DuckDB connection management.

Opens the on-device database file and maps DuckDB exceptions onto the
facade's ``ErrorKind`` taxonomy.
"""

from __future__ import annotations

import logging
from pathlib import Path

import duckdb

from devicestore.db.results import ErrorKind

logger = logging.getLogger(__name__)


def open_database(db_path: str, *, threads: int = 0) -> duckdb.DuckDBPyConnection:
    """Open (or create) the DuckDB file at ``db_path``.

    Raises ``OSError`` if the parent directory cannot be created and
    ``duckdb.Error`` if DuckDB cannot open the file.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info("Opening DuckDB at %s", db_path)
    config = {"threads": threads} if threads > 0 else {}
    return duckdb.connect(db_path, config=config)


def quote_identifier(name: str) -> str:
    """Quote a table name for interpolation into DDL/DML."""
    return '"' + name.replace('"', '""') + '"'


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (duckdb.IOException, OSError)):
        return ErrorKind.IO
    if isinstance(exc, duckdb.ConstraintException):
        return ErrorKind.CONSTRAINT
    if isinstance(exc, duckdb.TransactionException):
        return ErrorKind.CONFLICT
    if isinstance(exc, (duckdb.CatalogException, duckdb.ConnectionException)):
        return ErrorKind.MISUSE
    return ErrorKind.SQL
