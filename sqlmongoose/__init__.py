"""
sqlmongoose - document-style models over SQLite.

Schemas declare fields, validation, hooks and references; a Database handle
materializes them as tables and exposes Mongo-like create / find / update /
delete operations executed on a bounded asyncio connection pool.
"""

from .config import DatabaseSettings, load_config
from .core import ConnectionPool, Transaction, TransactionState
from .cursor import RecordCursor
from .database import Database, connect
from .errors import (
    SQLMongooseError,
    ValidationError,
    StorageError,
    UniqueConstraintError,
    RollbackError,
    PoolError,
    PoolTimeoutError,
    PoolClosedError,
    UndefinedModelError,
    SchemaError,
    SchemaFrozenError,
    IdentifierError,
    QueryError,
    InvalidQueryError,
    InvalidUpdateError,
    TransactionStateError,
    NotConnectedError,
)
from .model import FindOptions, Model
from .query import QueryBuilder
from .schema import Codec, DataType, FieldDefinition, HookStage, Schema, json_codec

__version__ = "0.1.0"

__all__ = [
    'connect',
    'Database',
    'DatabaseSettings',
    'load_config',
    'Schema',
    'FieldDefinition',
    'DataType',
    'HookStage',
    'Codec',
    'json_codec',
    'Model',
    'FindOptions',
    'RecordCursor',
    'QueryBuilder',
    'ConnectionPool',
    'Transaction',
    'TransactionState',
    'SQLMongooseError',
    'ValidationError',
    'StorageError',
    'UniqueConstraintError',
    'RollbackError',
    'PoolError',
    'PoolTimeoutError',
    'PoolClosedError',
    'UndefinedModelError',
    'SchemaError',
    'SchemaFrozenError',
    'IdentifierError',
    'QueryError',
    'InvalidQueryError',
    'InvalidUpdateError',
    'TransactionStateError',
    'NotConnectedError',
]
