"""Result types returned by every ``Storage`` operation.

Nothing in the facade raises on a database failure.  Operations hand back an
``OpResult`` carrying either a value or a ``StorageError`` so callers decide
whether to log, retry or propagate.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    SQL = "sql"                 # syntax / binder / other execution errors
    CONSTRAINT = "constraint"   # PRIMARY KEY, UNIQUE, NOT NULL violations
    CONFLICT = "conflict"       # concurrent write-write conflict
    IO = "io"                   # database file could not be opened / written
    MISUSE = "misuse"           # wrong lifecycle state, unknown table, bad name


@dataclass(frozen=True)
class StorageError:
    kind: ErrorKind
    message: str
    table: Optional[str] = None

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "table": self.table}


class StorageFailure(RuntimeError):
    """Raised by ``OpResult.unwrap()`` for callers that prefer exceptions."""

    def __init__(self, error: StorageError) -> None:
        self.error = error
        super().__init__(f"{error.kind.value}: {error.message}")


@dataclass
class OpResult:
    ok: bool
    value: Any = None
    error: Optional[StorageError] = None
    committed: bool = False

    @classmethod
    def success(cls, value: Any = None, *, committed: bool = False) -> "OpResult":
        return cls(ok=True, value=value, committed=committed)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, table: Optional[str] = None) -> "OpResult":
        return cls(ok=False, error=StorageError(kind=kind, message=message, table=table))

    def unwrap(self) -> Any:
        if not self.ok:
            raise StorageFailure(self.error)
        return self.value

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "value": self.value,
            "committed": self.committed,
            "error": self.error.to_dict() if self.error else None,
        }


# ── transaction outcomes ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Commit:
    value: Any = None


@dataclass(frozen=True)
class Rollback:
    value: Any = None
