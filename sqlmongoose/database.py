"""
Database handle.

A Database owns one connection pool, one transaction coordinator and the
registry of models defined against it. Nothing is global: two handles on
two paths are fully independent.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from .config.db_config import DatabaseSettings, resolve_settings
from .config.logging_config import LOGGER_NAME, DatabaseLoggerAdapter, setup_db_logging
from .core.connection import ConnectionPool, StatementResult
from .core.transaction import Transaction, TransactionCoordinator, connection_scope
from .errors import NotConnectedError, SchemaError, UndefinedModelError
from .model import Model
from .query.builder import QueryBuilder
from .schema import Schema

ConfigSource = Union[str, Path, Mapping[str, Any], DatabaseSettings, None]


class Database:
    """
    Connection manager and model registry for one SQLite database.

    Usage:
        db = await connect('data/app.db')
        User = await db.define('User', Schema({'name': {'type': 'STRING', 'required': True}}))
        await User.create({'name': 'Ada'})
        await db.close()
    """

    def __init__(self, settings: DatabaseSettings, pool: Optional[ConnectionPool] = None):
        self.settings = settings
        self.db_path = settings.path

        # Setup logging
        setup_db_logging(settings)
        self.logger = DatabaseLoggerAdapter(
            logging.getLogger(f'{LOGGER_NAME}.database'),
            {'component': 'database', 'db_path': self.db_path}
        )

        self._pool = pool or ConnectionPool.from_settings(
            settings,
            logger=DatabaseLoggerAdapter(logging.getLogger(f'{LOGGER_NAME}.pool'), {'db_path': self.db_path}),
        )
        self._coordinator = TransactionCoordinator(
            self._pool,
            DatabaseLoggerAdapter(logging.getLogger(f'{LOGGER_NAME}.transaction'), {'db_path': self.db_path}),
        )
        self._models: Dict[str, Model] = {}
        self._define_lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        state = 'closed' if self._closed else 'open'
        return f"Database({self.db_path!r}, {state}, models={list(self._models)})"

    @classmethod
    async def connect(cls, path_or_config: ConfigSource = None) -> 'Database':
        """
        Open a database handle and verify that a connection can be made.

        Args:
            path_or_config: Database path, YAML config path, settings mapping
                or DatabaseSettings; None uses defaults plus environment overrides
        """
        db = cls(resolve_settings(path_or_config))
        try:
            await db.execute("SELECT 1")
        except Exception:
            await db.close()
            raise
        db.logger.info(f"Connected to {db.db_path} (pool size {db.settings.pool_size})")
        return db

    @property
    def pool(self) -> ConnectionPool:
        if self._closed:
            raise NotConnectedError(f"Database {self.db_path} is closed")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return not self._closed

    # ------------------------------------------------------------------ #
    # Models
    # ------------------------------------------------------------------ #
    async def define(self, name: str, schema: Schema) -> Model:
        """
        Register a model and create its table and indexes if needed.

        Defining the same name again with the same fields returns the
        existing model.

        Raises:
            SchemaError: If the name (or its table) is taken by different fields
        """
        if self._closed:
            raise NotConnectedError(f"Database {self.db_path} is closed")
        async with self._define_lock:
            existing = self._models.get(name)
            if existing is not None:
                if existing.schema is schema or existing.schema.fields == schema.fields:
                    return existing
                raise SchemaError(f"Model '{name}' is already defined with different fields")

            model = Model(self, name, schema)
            clash = self.model_for_table(model.table_name)
            if clash is not None:
                raise SchemaError(f"Table '{model.table_name}' already belongs to model '{clash.name}'")

            await model.materialize()
            self._models[name] = model
            return model

    def model(self, name: str) -> Model:
        """Look up a defined model."""
        try:
            return self._models[name]
        except KeyError:
            raise UndefinedModelError(name) from None

    def model_for_table(self, table_name: str) -> Optional[Model]:
        for model in self._models.values():
            if model.table_name == table_name:
                return model
        return None

    @property
    def models(self) -> Dict[str, Model]:
        return dict(self._models)

    # ------------------------------------------------------------------ #
    # Transactions and raw access
    # ------------------------------------------------------------------ #
    def transaction(self, unit_of_work: Optional[Callable[[Transaction], Any]] = None,
                    timeout: Optional[float] = None):
        """
        Run work atomically.

        Without arguments returns an async context manager yielding the
        Transaction; given a unit of work returns an awaitable of its result.

        Usage:
            async with db.transaction() as tx:
                await Wallet.update({'userId': 1}, {'$inc': {'balance': -10}})

            result = await db.transaction(transfer)
        """
        if self._closed:
            raise NotConnectedError(f"Database {self.db_path} is closed")
        if unit_of_work is None:
            return self._coordinator.transaction(timeout)
        return self._coordinator.run(unit_of_work, timeout)

    def query(self, table: str, record_type: Optional[Callable[..., Any]] = None) -> QueryBuilder:
        """QueryBuilder over any table; rows of defined models are decoded like ``find``."""
        model = self.model_for_table(table)
        return QueryBuilder(
            table,
            self.pool,
            record_type=record_type,
            decoder=model.schema.from_row if model is not None else None,
            coerce=model.schema.to_storage_value if model is not None else None,
        )

    async def execute(self, sql: str, params: Sequence[Any] = (),
                      transaction: Optional[Transaction] = None) -> StatementResult:
        """Execute a raw parameterized statement."""
        async with connection_scope(self.pool, transaction) as conn:
            return await conn.execute(sql, params)

    # ------------------------------------------------------------------ #
    # Diagnostics
    # ------------------------------------------------------------------ #
    def get_stats(self) -> Dict[str, Any]:
        """Pool and per-model statistics."""
        return {
            'database_path': self.db_path,
            'pool_stats': self._pool.get_stats(),
            'models': {name: model.get_performance_stats() for name, model in self._models.items()},
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on database connection."""
        try:
            result = await self.execute("SELECT 1 AS ok, sqlite_version() AS version")
            if not result.rows or result.rows[0]['ok'] != 1:
                raise RuntimeError("Basic query failed")

            return {
                'status': 'healthy',
                'database_path': self.db_path,
                'sqlite_version': result.rows[0]['version'],
                'pool_stats': self._pool.get_stats(),
                'models': sorted(self._models),
                'timestamp': time.time()
            }

        except Exception as e:
            return {
                'status': 'unhealthy',
                'error': str(e),
                'database_path': self.db_path,
                'timestamp': time.time()
            }

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #
    async def close(self) -> None:
        """Drain the pool; further use of this handle raises NotConnectedError."""
        if self._closed:
            return
        self.logger.info("Shutting down database handle")
        self._closed = True
        await self._pool.drain()
        self.logger.info("Database handle shutdown complete")

    disconnect = close

    async def __aenter__(self) -> 'Database':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def connect(path_or_config: ConfigSource = None) -> Database:
    """Open a Database handle (see ``Database.connect``)."""
    return await Database.connect(path_or_config)
