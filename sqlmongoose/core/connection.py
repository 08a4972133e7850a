"""
SQLite connection pool for asyncio.

This module owns every physical storage handle used by sqlmongoose. Handles
are ``aiosqlite`` connections opened in autocommit mode so transactions are
controlled explicitly with BEGIN / COMMIT / ROLLBACK. A pooled connection is
lent to exactly one logical operation at a time and the pool is the only
place the number of open connections is tracked.
"""

import asyncio
import itertools
import logging
import re
import sqlite3
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set

import aiosqlite

from ..config.db_config import DatabaseSettings
from ..config.logging_config import LOGGER_NAME, DatabaseLoggerAdapter
from ..errors import PoolClosedError, PoolTimeoutError, StorageError, translate_storage_error
from ..security import validate_identifier

Connector = Callable[[], Awaitable[aiosqlite.Connection]]

_PRAGMA_VALUE = re.compile(r'^-?[A-Za-z0-9_]+$')
_CLOSED_HANDLE = re.compile(r'closed database', re.IGNORECASE)


@dataclass
class StatementResult:
    """Rows and counters produced by one executed statement."""
    rows: List[Dict[str, Any]]
    rowcount: int
    lastrowid: Optional[int]


def make_connector(settings: DatabaseSettings) -> Connector:
    """
    Build the coroutine that opens one configured SQLite handle.

    ``:memory:`` is mapped to a private shared-cache URI so that every handle
    in one pool sees the same in-memory database.
    """
    if settings.is_memory:
        database = f"file:sqlmongoose-{uuid.uuid4().hex}?mode=memory&cache=shared"
        uri = True
    else:
        database = settings.path
        uri = database.startswith('file:')
        if not uri:
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    pragmas = []
    for name, value in settings.pragmas.items():
        validate_identifier(name, 'pragma')
        if not _PRAGMA_VALUE.match(str(value)):
            raise ValueError(f"Invalid value for PRAGMA {name}: {value!r}")
        pragmas.append(f"PRAGMA {name} = {value}")

    async def connect() -> aiosqlite.Connection:
        handle = await aiosqlite.connect(database, uri=uri, isolation_level=None)
        handle.row_factory = aiosqlite.Row
        try:
            for pragma in pragmas:
                await handle.execute(pragma)
        except Exception:
            await handle.close()
            raise
        return handle

    return connect


class PooledConnection:
    """A physical storage handle lent out by a ConnectionPool."""

    _ids = itertools.count(1)

    def __init__(self, handle: aiosqlite.Connection, pool: 'ConnectionPool'):
        self.handle = handle
        self.pool = pool
        self.id = next(self._ids)
        self.lease = 0
        self.borrowed = False
        self.broken = False

    def __repr__(self) -> str:
        state = 'borrowed' if self.borrowed else 'idle'
        return f"PooledConnection(id={self.id}, {state}{', broken' if self.broken else ''})"

    @property
    def in_transaction(self) -> bool:
        try:
            return bool(self.handle.in_transaction)
        except ValueError:
            # Handle already closed underneath us
            self.broken = True
            return False

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> StatementResult:
        """
        Execute one statement and fetch its rows.

        Args:
            sql: Statement with ``?`` placeholders
            params: Bound parameter values

        Returns:
            StatementResult with rows as dictionaries

        Raises:
            UniqueConstraintError: On unique index violations
            StorageError: On any other storage failure
        """
        params = tuple(params)
        start_time = time.time()

        try:
            cursor = await self.handle.execute(sql, params)
            try:
                rows = [dict(row) for row in await cursor.fetchall()]
                result = StatementResult(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
            finally:
                await cursor.close()
        except sqlite3.Error as e:
            # Binding and statement errors leave the handle usable
            if isinstance(e, sqlite3.ProgrammingError) and _CLOSED_HANDLE.search(str(e)):
                self.broken = True
            self.pool.track_failure(sql, e)
            raise translate_storage_error(e) from e
        except ValueError as e:
            # aiosqlite reports a closed handle as ValueError
            self.broken = True
            self.pool.track_failure(sql, e)
            raise StorageError(str(e)) from e

        self.pool.track_query(sql, params, time.time() - start_time)
        return result


class ConnectionPool:
    """
    Bounded pool of SQLite connections.

    Idle connections are reused (most recently released first) before new
    ones are opened; once ``max_size`` connections exist, callers wait until
    one is released or their timeout elapses.

    With ``keep_alive`` set, one extra handle is opened alongside the first
    lent connection and held until ``drain()``. It is never lent and does not
    count toward ``max_size``; it keeps a shared-cache in-memory database
    alive while no pooled connection is open.
    """

    def __init__(self, connector: Connector, max_size: int = 5, timeout: float = 30.0,
                 logger: Optional[DatabaseLoggerAdapter] = None, slow_query_threshold: float = 1.0,
                 keep_alive: bool = False):
        if max_size < 1:
            raise ValueError("max_size must be positive")

        self._connector = connector
        self.max_size = max_size
        self.timeout = timeout
        self.slow_query_threshold = slow_query_threshold
        self.keep_alive = keep_alive
        self.logger = logger or DatabaseLoggerAdapter(logging.getLogger(f'{LOGGER_NAME}.pool'))

        self._idle: Deque[PooledConnection] = deque()
        self._borrowed: Set[PooledConnection] = set()
        self._size = 0
        self._draining = False
        self._cond = asyncio.Condition()
        self._keeper: Optional[aiosqlite.Connection] = None
        self._keeper_lock = asyncio.Lock()

        # Statistics
        self.stats = {
            'connections_created': 0,
            'connections_acquired': 0,
            'connections_released': 0,
            'connections_closed': 0,
            'connections_failed': 0,
            'pool_waits': 0,
            'pool_timeouts': 0,
            'total_wait_time': 0.0,
        }
        self.query_stats = {
            'total_queries': 0,
            'total_query_time': 0.0,
            'slow_queries': 0,
            'failed_queries': 0,
        }

    @classmethod
    def from_settings(cls, settings: DatabaseSettings,
                      logger: Optional[DatabaseLoggerAdapter] = None) -> 'ConnectionPool':
        return cls(
            make_connector(settings),
            max_size=settings.pool_size,
            timeout=settings.acquire_timeout,
            logger=logger,
            slow_query_threshold=settings.slow_query_threshold,
            keep_alive=settings.is_memory,
        )

    # ------------------------------------------------------------------ #
    # Lending
    # ------------------------------------------------------------------ #
    @property
    def size(self) -> int:
        """Number of open (or opening) connections, idle and borrowed."""
        return self._size

    @property
    def closed(self) -> bool:
        return self._draining

    async def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """
        Borrow a connection.

        Args:
            timeout: Seconds to wait when the pool is exhausted (defaults to the pool timeout)

        Returns:
            A connection owned by the caller until released

        Raises:
            PoolTimeoutError: If no connection became free in time
            PoolClosedError: If the pool is draining
        """
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        deadline = start_time + timeout
        waited = False

        async with self._cond:
            while True:
                if self._draining:
                    raise PoolClosedError("Connection pool is draining")

                if self._idle:
                    conn = self._idle.pop()
                    self._lend(conn, loop.time() - start_time if waited else 0.0)
                    return conn

                if self._size < self.max_size:
                    # Reserve the slot before opening outside the lock
                    self._size += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.stats['pool_timeouts'] += 1
                    raise PoolTimeoutError(
                        f"Timed out after {timeout:.3f}s waiting for a connection "
                        f"(pool size {self.max_size})"
                    )

                if not waited:
                    waited = True
                    self.stats['pool_waits'] += 1
                    self.logger.connection_event('waiting', f"Pool exhausted: {self._size}/{self.max_size}")
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    self.stats['pool_timeouts'] += 1
                    raise PoolTimeoutError(
                        f"Timed out after {timeout:.3f}s waiting for a connection "
                        f"(pool size {self.max_size})"
                    ) from None

        try:
            if self.keep_alive:
                await self._open_keeper()
            handle = await self._connector()
        except Exception as e:
            self.stats['connections_failed'] += 1
            self.logger.connection_event('error', f"Failed to open connection: {e}")
            async with self._cond:
                self._size -= 1
                self._cond.notify()
            if isinstance(e, sqlite3.Error):
                raise translate_storage_error(e) from e
            raise

        conn = PooledConnection(handle, self)
        self.stats['connections_created'] += 1
        self.logger.connection_event('created', f"#{conn.id} ({self._size}/{self.max_size})")

        if self._draining:
            await self._close(conn)
            raise PoolClosedError("Connection pool is draining")

        self._lend(conn, loop.time() - start_time if waited else 0.0)
        return conn

    async def _open_keeper(self) -> None:
        async with self._keeper_lock:
            if self._keeper is None and not self._draining:
                self._keeper = await self._connector()
                self.logger.connection_event('created', "keep-alive handle")

    def _lend(self, conn: PooledConnection, wait_time: float) -> None:
        conn.borrowed = True
        conn.lease += 1
        self._borrowed.add(conn)
        self.stats['connections_acquired'] += 1
        if wait_time > 0:
            self.stats['total_wait_time'] += wait_time
            self.logger.debug(f"Pool wait: {wait_time:.3f}s")
        self.logger.connection_event('acquired', f"#{conn.id}")

    async def release(self, conn: PooledConnection, discard: bool = False) -> None:
        """
        Return a borrowed connection to the pool.

        The connection is closed instead of kept when the pool is draining,
        when it was marked broken, when ``discard`` is set, or when it still
        holds an open transaction.
        """
        if conn is None:
            return

        if conn not in self._borrowed:
            self.logger.warning(f"Ignoring release of connection #{conn.id} not lent by this pool")
            return

        self._borrowed.discard(conn)
        conn.borrowed = False
        self.stats['connections_released'] += 1

        if not (self._draining or discard or conn.broken) and conn.in_transaction:
            self.logger.warning(f"Connection #{conn.id} released inside a transaction; discarding it")
            discard = True

        if self._draining or discard or conn.broken:
            await self._close(conn)
            async with self._cond:
                self._cond.notify()
            return

        async with self._cond:
            self._idle.append(conn)
            self._cond.notify()
        self.logger.connection_event('released', f"#{conn.id}")

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None) -> AsyncIterator[PooledConnection]:
        """
        Borrow a connection for the duration of a ``async with`` block.

        Usage:
            async with pool.connection() as conn:
                result = await conn.execute("SELECT 1")
        """
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            await self.release(conn)

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #
    async def drain(self) -> None:
        """
        Close idle connections now and borrowed ones when they are released.

        Subsequent and waiting ``acquire`` calls fail with PoolClosedError.
        """
        self._draining = True
        idle = list(self._idle)
        self._idle.clear()
        for conn in idle:
            await self._close(conn)

        async with self._keeper_lock:
            keeper, self._keeper = self._keeper, None
        if keeper is not None:
            try:
                await keeper.close()
            except Exception as e:
                self.logger.warning(f"Error closing keep-alive handle: {e}")
            self.logger.connection_event('closed', "keep-alive handle")

        async with self._cond:
            self._cond.notify_all()

        self.logger.info(
            f"Connection pool drained ({len(idle)} idle closed, {len(self._borrowed)} outstanding)"
        )

    async def _close(self, conn: PooledConnection) -> None:
        self._size = max(0, self._size - 1)
        try:
            await conn.handle.close()
        except Exception as e:
            self.logger.warning(f"Error closing connection #{conn.id}: {e}")
        self.stats['connections_closed'] += 1
        self.logger.connection_event('closed', f"#{conn.id}")

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #
    def track_query(self, sql: str, params: tuple, duration: float) -> None:
        self.query_stats['total_queries'] += 1
        self.query_stats['total_query_time'] += duration
        self.logger.query(sql, params, duration)

        if duration > self.slow_query_threshold:
            self.query_stats['slow_queries'] += 1
            self.logger.warning(f"Slow query detected: {duration:.3f}s > {self.slow_query_threshold}s")

    def track_failure(self, sql: str, error: BaseException) -> None:
        self.query_stats['failed_queries'] += 1
        self.logger.warning(f"Query failed: {error} | {sql}")

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics."""
        return {
            'max_size': self.max_size,
            'open_connections': self._size,
            'borrowed_connections': len(self._borrowed),
            'idle_connections': len(self._idle),
            'draining': self._draining,
            'keep_alive': self._keeper is not None,
            'stats': self.stats.copy(),
            'query_stats': self.query_stats.copy(),
        }
