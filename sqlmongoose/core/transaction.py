"""
Transaction coordination and connection scoping.

A Transaction wraps one borrowed connection with an explicit state machine:

    IDLE --begin--> ACTIVE --commit--> COMMITTED
                       \\--rollback--> ROLLED_BACK

The connection held by the running operation (or transaction) is tracked in
a ContextVar so nested operations issued from hooks, populate lookups or a
unit of work reuse it instead of borrowing a second connection.
"""

import inspect
import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, Tuple, Union

from ..config.logging_config import LOGGER_NAME, DatabaseLoggerAdapter
from ..errors import RollbackError, TransactionStateError
from .connection import ConnectionPool, PooledConnection, StatementResult

# (connection, lease) held by the current operation
_active_connection: ContextVar[Optional[Tuple[PooledConnection, int]]] = ContextVar(
    'sqlmongoose_active_connection', default=None
)
_active_transaction: ContextVar[Optional['Transaction']] = ContextVar(
    'sqlmongoose_active_transaction', default=None
)


class TransactionState(str, Enum):
    """Transaction lifecycle states."""
    IDLE = "idle"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """A borrowed connection with begin/commit/rollback semantics."""

    def __init__(self, connection: PooledConnection, logger: Optional[DatabaseLoggerAdapter] = None):
        self.connection = connection
        self.state = TransactionState.IDLE
        self.transaction_id = uuid.uuid4().hex[:8]
        self.logger = logger or DatabaseLoggerAdapter(logging.getLogger(f'{LOGGER_NAME}.transaction'))

    def __repr__(self) -> str:
        return f"Transaction(id={self.transaction_id}, state={self.state.value})"

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    def _require(self, expected: TransactionState, action: str) -> None:
        if self.state is not expected:
            raise TransactionStateError(
                f"Cannot {action} transaction {self.transaction_id} in state '{self.state.value}'"
            )

    async def begin(self) -> None:
        self._require(TransactionState.IDLE, 'begin')
        await self.connection.execute("BEGIN")
        self.state = TransactionState.ACTIVE
        self.logger.debug(f"Transaction {self.transaction_id} started on connection #{self.connection.id}")

    async def commit(self) -> None:
        self._require(TransactionState.ACTIVE, 'commit')
        await self.connection.execute("COMMIT")
        self.state = TransactionState.COMMITTED

    async def rollback(self) -> None:
        self._require(TransactionState.ACTIVE, 'rollback')
        try:
            # SQLite may already have rolled back on its own (e.g. a failed COMMIT)
            if self.connection.in_transaction:
                await self.connection.execute("ROLLBACK")
        finally:
            self.state = TransactionState.ROLLED_BACK

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> StatementResult:
        """Execute a statement inside this transaction."""
        self._require(TransactionState.ACTIVE, 'execute in')
        return await self.connection.execute(sql, params)


def current_transaction() -> Optional[Transaction]:
    """Return the transaction bound to the running task, if any."""
    return _active_transaction.get()


@asynccontextmanager
async def connection_scope(pool: ConnectionPool,
                           transaction: Optional[Transaction] = None) -> AsyncIterator[PooledConnection]:
    """
    Yield the connection a single operation should run on.

    An explicit transaction wins; otherwise a connection already held by the
    current task on the same pool is reused; otherwise one is borrowed from
    the pool and released when the block exits.
    """
    if transaction is not None:
        if not transaction.is_active:
            raise TransactionStateError(
                f"Transaction {transaction.transaction_id} is {transaction.state.value}"
            )
        yield transaction.connection
        return

    held = _active_connection.get()
    if held is not None:
        conn, lease = held
        if conn.pool is pool and conn.borrowed and conn.lease == lease:
            yield conn
            return

    async with pool.connection() as conn:
        token = _active_connection.set((conn, conn.lease))
        try:
            yield conn
        finally:
            _active_connection.reset(token)


UnitOfWork = Callable[[Transaction], Union[Awaitable[Any], Any]]


class TransactionCoordinator:
    """
    Runs units of work inside a transaction on a connection borrowed from the pool.

    The connection is released on every exit path; it is discarded rather
    than pooled when the rollback itself failed.
    """

    def __init__(self, pool: ConnectionPool, logger: Optional[DatabaseLoggerAdapter] = None):
        self.pool = pool
        self.logger = logger or DatabaseLoggerAdapter(logging.getLogger(f'{LOGGER_NAME}.transaction'))

    @asynccontextmanager
    async def transaction(self, timeout: Optional[float] = None) -> AsyncIterator[Transaction]:
        """
        Open a transaction for the duration of an ``async with`` block.

        Commits when the block completes, rolls back when it raises. Model
        operations issued inside the block join the transaction.
        """
        conn = await self.pool.acquire(timeout)
        tx = Transaction(conn, self.logger)
        discard = False
        start_time = time.time()
        conn_token = _active_connection.set((conn, conn.lease))
        tx_token = _active_transaction.set(tx)

        try:
            await tx.begin()
            try:
                yield tx
                if tx.is_active:
                    await tx.commit()
            except BaseException as exc:
                if tx.is_active:
                    try:
                        await tx.rollback()
                    except Exception as rollback_exc:
                        discard = True
                        self.logger.error(
                            f"Rollback of transaction {tx.transaction_id} failed: {rollback_exc}"
                        )
                        raise RollbackError(exc, rollback_exc) from rollback_exc
                self.logger.transaction(tx.transaction_id, False, time.time() - start_time, str(exc))
                raise

            self.logger.transaction(tx.transaction_id, True, time.time() - start_time)
        finally:
            _active_transaction.reset(tx_token)
            _active_connection.reset(conn_token)
            await self.pool.release(conn, discard=discard)

    async def run(self, unit_of_work: UnitOfWork, timeout: Optional[float] = None) -> Any:
        """
        Execute ``unit_of_work(tx)`` atomically.

        Args:
            unit_of_work: Callable receiving the Transaction; may be sync or async
            timeout: Seconds to wait for a connection

        Returns:
            Whatever the unit of work returned

        Raises:
            The unit of work's (or commit's) original exception after rollback,
            or RollbackError when the rollback failed as well
        """
        async with self.transaction(timeout) as tx:
            result = unit_of_work(tx)
            if inspect.isawaitable(result):
                result = await result
        return result
