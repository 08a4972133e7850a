"""
Core database components.

This module contains the fundamental building blocks for database operations:
- Connection pooling
- Transaction coordination and connection scoping
"""

from .connection import ConnectionPool, PooledConnection, StatementResult, make_connector
from .transaction import (
    Transaction, TransactionCoordinator, TransactionState,
    connection_scope, current_transaction,
)

__all__ = [
    "ConnectionPool",
    "PooledConnection",
    "StatementResult",
    "make_connector",
    "Transaction",
    "TransactionCoordinator",
    "TransactionState",
    "connection_scope",
    "current_transaction",
]
