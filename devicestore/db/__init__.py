"""DuckDB storage facade – table helpers, transactions and cache eviction."""

from devicestore.db.results import Commit, ErrorKind, OpResult, Rollback, StorageError, StorageFailure
from devicestore.db.storage import Storage, StorageState, prepare_on_launch

__all__ = [
    "Commit",
    "ErrorKind",
    "OpResult",
    "Rollback",
    "Storage",
    "StorageError",
    "StorageFailure",
    "StorageState",
    "prepare_on_launch",
]
