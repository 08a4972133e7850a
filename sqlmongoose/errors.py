"""
Exception hierarchy for sqlmongoose.

Every error raised by the package derives from SQLMongooseError. Failures
coming from the storage engine are translated exactly once, in
``translate_storage_error``, so callers never see raw ``sqlite3`` exceptions.
"""

import re
import sqlite3
from typing import Optional


class SQLMongooseError(Exception):
    """Base exception for all sqlmongoose errors."""
    pass


class ValidationError(SQLMongooseError):
    """Raised when a record fails schema validation (first offending field only)."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Validation failed for field '{field}': {reason}")


class StorageError(SQLMongooseError):
    """Opaque passthrough of a failure raised by the storage engine."""
    pass


class UniqueConstraintError(StorageError):
    """Raised when a write violates a unique index."""

    def __init__(self, message: str, table: Optional[str] = None, column: Optional[str] = None):
        self.table = table
        self.column = column
        super().__init__(message)


class RollbackError(StorageError):
    """Raised when rolling back after a failure fails too; carries both causes."""

    def __init__(self, original: BaseException, rollback_error: BaseException):
        self.original = original
        self.rollback_error = rollback_error
        super().__init__(
            f"Rollback failed ({rollback_error!r}) after transaction error: {original!r}"
        )


class PoolError(SQLMongooseError):
    """Base class for connection pool errors."""
    pass


class PoolTimeoutError(PoolError):
    """Raised when no connection could be acquired before the deadline."""
    pass


class PoolClosedError(PoolError):
    """Raised when acquiring from a pool that is draining or drained."""
    pass


class UndefinedModelError(SQLMongooseError, KeyError):
    """Raised when looking up a model name that was never defined."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Model '{name}' is not defined")

    def __str__(self) -> str:
        return self.args[0]


class SchemaError(SQLMongooseError):
    """Base class for schema definition errors."""
    pass


class SchemaFrozenError(SchemaError):
    """Raised when changing the fields of a schema whose table already exists."""
    pass


class IdentifierError(SchemaError, ValueError):
    """Raised when a table or column name is not a safe SQL identifier."""
    pass


class QueryError(SQLMongooseError):
    """Base class for malformed queries."""
    pass


class InvalidQueryError(QueryError, ValueError):
    """Raised for malformed conditions, sort options or paging values."""
    pass


class InvalidUpdateError(QueryError, ValueError):
    """Raised for malformed update specs."""
    pass


class TransactionStateError(SQLMongooseError):
    """Raised on an invalid transaction state transition."""
    pass


class NotConnectedError(SQLMongooseError):
    """Raised when using a database handle that has been closed."""
    pass


_UNIQUE_PATTERN = re.compile(r"UNIQUE constraint failed: (\w+)\.(\w+)")


def translate_storage_error(exc: BaseException) -> StorageError:
    """
    Map a storage engine exception onto the sqlmongoose taxonomy.

    Args:
        exc: Exception raised by sqlite3 / aiosqlite

    Returns:
        UniqueConstraintError for unique index violations, StorageError otherwise
    """
    message = str(exc)
    if isinstance(exc, sqlite3.IntegrityError) and "UNIQUE constraint failed" in message:
        match = _UNIQUE_PATTERN.search(message)
        if match:
            return UniqueConstraintError(message, table=match.group(1), column=match.group(2))
        return UniqueConstraintError(message)
    return StorageError(message)
