"""Storage facade over one on-device DuckDB database.

A ``Storage`` owns a single DuckDB database handle plus one background worker
thread.  The application builds it once at launch, hands it to whoever needs
the database, and closes it on shutdown::

    storage, result = prepare_on_launch()
    storage.create_table("Cache", "CREATE TABLE Cache (id INTEGER PRIMARY KEY, ts BIGINT, val VARCHAR)",
                         cache_timestamp_column="ts")
    storage.run_in_transaction_background(
        lambda cur: cur.execute("INSERT INTO Cache VALUES (?, ?, ?)", [1, int(time.time()), "x"])
    )
    storage.evict_expired_cache_rows()
    storage.close()

Transaction blocks receive a DuckDB cursor bound to the shared database.
Returning ``Rollback(...)`` rolls the transaction back; anything else commits.
DuckDB errors never escape: they are logged, the transaction is rolled back
and the operation returns a failed ``OpResult``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import duckdb
import pandas as pd

from devicestore.config import DEFAULT_MAX_STORE_SECONDS, Settings, get_settings
from devicestore.db.connection import classify_error, open_database, quote_identifier
from devicestore.db.results import Commit, ErrorKind, OpResult, Rollback
from devicestore.db.worker import SerialWorker, WorkerClosed

logger = logging.getLogger(__name__)

TransactionBlock = Callable[[duckdb.DuckDBPyConnection], Any]

_TABLE_EXISTS_SQL = """
SELECT COUNT(*) FROM information_schema.tables
WHERE table_schema = 'main' AND lower(table_name) = lower(?) AND table_type = 'BASE TABLE'
"""

_COLUMN_TYPE_SQL = """
SELECT data_type FROM information_schema.columns
WHERE table_schema = 'main' AND lower(table_name) = lower(?) AND lower(column_name) = lower(?)
"""

_LIST_TABLES_SQL = """
SELECT table_name FROM information_schema.tables
WHERE table_schema = 'main' AND table_type = 'BASE TABLE'
ORDER BY table_name
"""


class StorageState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


class Storage:
    """One DuckDB database file, its background worker and cache-table registry."""

    def __init__(
        self,
        db_path: str,
        *,
        cache_tables: Optional[Dict[str, str]] = None,
        timestamp_column: str = "ts",
        max_age_seconds: int = DEFAULT_MAX_STORE_SECONDS,
        threads: int = 0,
        worker_name: str = "devicestore-tx",
    ) -> None:
        self.db_path = str(db_path)
        self.timestamp_column = timestamp_column
        self.max_age_seconds = max_age_seconds
        self.threads = threads
        self.worker_name = worker_name
        self._cache_tables: Dict[str, str] = dict(cache_tables or {})
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._worker: Optional[SerialWorker] = None
        self._state = StorageState.UNINITIALIZED
        self._lock = Lock()
        self._cursor_lock = Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Storage":
        s = settings or get_settings()
        return cls(
            s.resolved_db_path,
            cache_tables={name: s.cache_timestamp_column for name in s.cache_tables},
            timestamp_column=s.cache_timestamp_column,
            max_age_seconds=s.cache_max_age_seconds,
            threads=s.db_threads,
            worker_name=s.worker_thread_name,
        )

    @property
    def state(self) -> StorageState:
        return self._state

    @property
    def cache_tables(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._cache_tables)

    # ── lifecycle ────────────────────────────────────────────────────────────

    def prepare_on_launch(self) -> OpResult:
        """Open the database file and start the background worker.

        Only valid once per ``Storage``.  A failed open leaves the storage
        uninitialized, so a later retry is allowed.
        """
        with self._lock:
            if self._state is not StorageState.UNINITIALIZED:
                logger.warning("prepare_on_launch on %s storage %s", self._state.value, self.db_path)
                return OpResult.failure(ErrorKind.MISUSE, f"storage is already {self._state.value}")
            try:
                self._conn = open_database(self.db_path, threads=self.threads)
            except (OSError, duckdb.Error) as exc:
                logger.error("Could not open database %s: %s", self.db_path, exc)
                return OpResult.failure(ErrorKind.IO, str(exc))
            self._worker = SerialWorker(self.worker_name)
            self._state = StorageState.READY
        logger.info(
            "Storage ready at %s – cache tables=%s max_age=%ds",
            self.db_path, sorted(self.cache_tables), self.max_age_seconds,
        )
        return OpResult.success()

    def close(self, wait: bool = True) -> None:
        """Drain the background worker and close the database handle.

        Queued background transactions always run to completion.  With
        ``wait=False`` this returns at once and the worker closes the handle
        after its last job.
        """
        with self._lock:
            if self._state is StorageState.CLOSED:
                return
            self._state = StorageState.CLOSED
        if self._worker is None:
            self._close_connection()
        elif wait:
            self._worker.shutdown(wait=True)
            self._close_connection()
        else:
            self._worker.shutdown(wait=False, final=self._close_connection)

    def _close_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
        logger.info("Storage closed: %s", self.db_path)

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ── tables ───────────────────────────────────────────────────────────────

    def create_table(
        self,
        name: str,
        sql: str,
        *,
        cache_timestamp_column: Optional[str] = None,
    ) -> OpResult:
        """Run a caller-supplied CREATE TABLE statement.

        ``name`` only identifies the table in logs and, when
        ``cache_timestamp_column`` is given, in the cache-table registry.
        """
        guard = self._check_name(name) or self._check_ready()
        if guard is not None:
            return guard

        def _create(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(sql)

        result = self._transact(_create, f"create_table {name}", table=name)
        if result.ok:
            logger.info("Created table %s", name)
            if cache_timestamp_column:
                self.register_cache_table(name, cache_timestamp_column)
        return result

    def drop_table(self, name: str) -> OpResult:
        guard = self._check_name(name) or self._check_ready()
        if guard is not None:
            return guard

        def _drop(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(f"DROP TABLE IF EXISTS {quote_identifier(name)}")

        result = self._transact(_drop, f"drop_table {name}", table=name)
        if result.ok:
            logger.info("Dropped table %s", name)
        return result

    def empty_table(self, name: str) -> OpResult:
        """Delete every row but keep the schema. Value is the deleted row count."""
        guard = self._check_name(name) or self._check_ready()
        if guard is not None:
            return guard

        def _empty(cur: duckdb.DuckDBPyConnection) -> int:
            row = cur.execute(f"DELETE FROM {quote_identifier(name)}").fetchone()
            return row[0] if row else 0

        result = self._transact(_empty, f"empty_table {name}", table=name)
        if result.ok:
            logger.info("Emptied table %s (%d rows)", name, result.value)
        return result

    def table_exists(self, name: str) -> bool:
        result = self.run_in_transaction_current(lambda cur: self._table_exists(cur, name))
        return bool(result.ok and result.value)

    def row_count(self, name: str) -> OpResult:
        guard = self._check_name(name) or self._check_ready()
        if guard is not None:
            return guard

        def _count(cur: duckdb.DuckDBPyConnection) -> int:
            return cur.execute(f"SELECT COUNT(*) FROM {quote_identifier(name)}").fetchone()[0]

        return self._transact(_count, f"row_count {name}", table=name)

    # ── transactions ─────────────────────────────────────────────────────────

    def run_in_transaction_background(self, block: TransactionBlock) -> Future:
        """Queue ``block`` on the worker thread and return its ``Future``.

        Background transactions run one at a time in submission order.  The
        future resolves to an ``OpResult``; if the block raises a non-DuckDB
        exception, the future carries that exception instead.
        """
        guard = self._check_ready()
        if guard is None:
            try:
                return self._worker.submit(self._transact, block, "background transaction")
            except WorkerClosed as exc:
                guard = OpResult.failure(ErrorKind.MISUSE, str(exc))
        future: Future = Future()
        future.set_result(guard)
        return future

    def run_in_transaction_current(self, block: TransactionBlock) -> OpResult:
        guard = self._check_ready()
        if guard is not None:
            return guard
        return self._transact(block, "transaction")

    # ── reads ────────────────────────────────────────────────────────────────

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> OpResult:
        """Run a read statement; value is a list of row dicts."""
        guard = self._check_ready()
        if guard is not None:
            return guard

        def _rows(cur: duckdb.DuckDBPyConnection) -> list:
            cur.execute(sql, params)
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, r)) for r in cur.fetchall()]

        return self._transact(_rows, "query")

    def query_frame(self, sql: str, params: Optional[Sequence[Any]] = None) -> OpResult:
        guard = self._check_ready()
        if guard is not None:
            return guard

        def _frame(cur: duckdb.DuckDBPyConnection) -> pd.DataFrame:
            return cur.execute(sql, params).df()

        return self._transact(_frame, "query_frame")

    # ── cache eviction ───────────────────────────────────────────────────────

    def register_cache_table(self, name: str, timestamp_column: Optional[str] = None) -> None:
        column = timestamp_column or self.timestamp_column
        with self._lock:
            self._cache_tables[name] = column
        logger.debug("Registered cache table %s (timestamp column %s)", name, column)

    def evict_expired_cache_rows(
        self,
        tables: Optional[Iterable[str]] = None,
        *,
        now: Optional[float] = None,
    ) -> OpResult:
        """Delete cache rows older than ``max_age_seconds``.

        The timestamp column holds Unix epoch seconds, or a DuckDB
        DATE/TIMESTAMP value.  A row goes when ``now - ts > max_age_seconds``;
        rows with a NULL timestamp stay.
        Value is ``{table: deleted_rows}`` for every table that exists.
        """
        guard = self._check_ready()
        if guard is not None:
            return guard

        registry = self.cache_tables
        targets = sorted(registry) if tables is None else list(tables)
        cutoff = (time.time() if now is None else now) - self.max_age_seconds

        def _evict(cur: duckdb.DuckDBPyConnection) -> Dict[str, int]:
            deleted: Dict[str, int] = {}
            for table in targets:
                if not self._table_exists(cur, table):
                    logger.debug("Cache table %s does not exist – skipping", table)
                    continue
                column = registry.get(table, self.timestamp_column)
                bound = "?"
                if _is_temporal(self._column_type(cur, table, column)):
                    bound = "to_timestamp(?)"
                row = cur.execute(
                    f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(column)} < {bound}",
                    [cutoff],
                ).fetchone()
                deleted[table] = row[0] if row else 0
            return deleted

        result = self._transact(_evict, "evict_expired_cache_rows")
        if result.ok:
            logger.info("Evicted %d expired cache rows %s", sum(result.value.values()), result.value)
        return result

    # ── diagnostics ──────────────────────────────────────────────────────────

    def info(self) -> dict:
        """Log and return a snapshot of the handle and its tables."""
        details: Dict[str, Any] = {
            "state": self._state.value,
            "path": self.db_path,
            "duckdb_version": duckdb.__version__,
            "cache_tables": self.cache_tables,
            "max_age_seconds": self.max_age_seconds,
            "pending_background": self._worker.pending if self._worker else 0,
            "tables": {},
        }
        if self._state is StorageState.READY:
            listing = self.query(_LIST_TABLES_SQL)
            if listing.ok:
                for row in listing.value:
                    name = row["table_name"]
                    count = self.row_count(name)
                    details["tables"][name] = count.value if count.ok else None
        logger.info("Storage info: %s", details)
        return details

    # ── internal ─────────────────────────────────────────────────────────────

    def _check_ready(self) -> Optional[OpResult]:
        if self._state is StorageState.READY:
            return None
        if self._state is StorageState.UNINITIALIZED:
            message = "storage has not been prepared"
        else:
            message = "storage is closed"
        logger.warning("%s: %s", message, self.db_path)
        return OpResult.failure(ErrorKind.MISUSE, message)

    @staticmethod
    def _check_name(name: str) -> Optional[OpResult]:
        if name and name.strip():
            return None
        logger.warning("Rejected empty table name")
        return OpResult.failure(ErrorKind.MISUSE, "table name must be a non-empty string")

    @staticmethod
    def _table_exists(cur: duckdb.DuckDBPyConnection, name: str) -> bool:
        row = cur.execute(_TABLE_EXISTS_SQL, [name]).fetchone()
        return bool(row and row[0])

    @staticmethod
    def _column_type(cur: duckdb.DuckDBPyConnection, table: str, column: str) -> Optional[str]:
        row = cur.execute(_COLUMN_TYPE_SQL, [table, column]).fetchone()
        return row[0] if row else None

    def _transact(self, block: TransactionBlock, label: str, table: Optional[str] = None) -> OpResult:
        cur = None
        try:
            with self._cursor_lock:
                cur = self._conn.cursor()
            cur.begin()
            outcome = block(cur)
            if isinstance(outcome, Rollback):
                cur.rollback()
                logger.debug("%s rolled back by caller", label)
                return OpResult.success(outcome.value, committed=False)
            cur.commit()
            if isinstance(outcome, Commit):
                value = outcome.value
            elif outcome is cur:
                # ``lambda cur: cur.execute(...)`` hands the cursor back
                value = None
            else:
                value = outcome
            return OpResult.success(value, committed=True)
        except duckdb.Error as exc:
            self._rollback_quietly(cur)
            kind = classify_error(exc)
            logger.warning("%s failed (%s): %s", label, kind.value, exc)
            return OpResult.failure(kind, str(exc), table)
        except Exception:
            self._rollback_quietly(cur)
            raise
        finally:
            if cur is not None:
                cur.close()

    @staticmethod
    def _rollback_quietly(cur: Optional[duckdb.DuckDBPyConnection]) -> None:
        if cur is None:
            return
        try:
            cur.rollback()
        except duckdb.Error as exc:
            # commit/execute failures can leave no active transaction
            logger.debug("Rollback skipped: %s", exc)


def _is_temporal(data_type: Optional[str]) -> bool:
    if not data_type:
        return False
    data_type = data_type.upper()
    return data_type == "DATE" or data_type.startswith("TIMESTAMP")


def prepare_on_launch(settings: Optional[Settings] = None) -> Tuple[Storage, OpResult]:
    """Build a ``Storage`` from settings and prepare it."""
    storage = Storage.from_settings(settings)
    return storage, storage.prepare_on_launch()
