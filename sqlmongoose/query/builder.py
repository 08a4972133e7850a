"""
Fluent SELECT builder.

Each builder owns its own state; chaining methods return the same instance.
"""

from typing import Any, Callable, Dict, List, Optional

from ..core.connection import ConnectionPool
from ..core.transaction import Transaction, connection_scope
from ..errors import InvalidQueryError
from ..security import validate_identifier
from .compiler import (
    CompiledStatement, Condition, Coercer, SORT_DIRECTIONS,
    compile_select, validate_count,
)

RecordType = Callable[..., Any]


class QueryBuilder:
    """
    Accumulates projection, conditions, ordering and paging for one table.

    Usage:
        rows = await (QueryBuilder('users', pool)
                      .where({'age': {'gte': 18}})
                      .select('id', 'name')
                      .order_by('name')
                      .limit(10)
                      .execute())
    """

    def __init__(self, table: str, pool: Optional[ConnectionPool] = None,
                 record_type: Optional[RecordType] = None,
                 decoder: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None,
                 coerce: Optional[Coercer] = None):
        self.table = validate_identifier(table, 'table')
        self.pool = pool
        self.record_type = record_type
        self._decoder = decoder
        self._coerce = coerce
        self._condition = Condition()
        self._columns: List[str] = []
        self._order: Dict[str, str] = {}
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    def where(self, condition) -> 'QueryBuilder':
        """AND another condition onto this builder."""
        self._condition = self._condition.merge(Condition.parse(condition, self._coerce))
        return self

    def select(self, *fields: str) -> 'QueryBuilder':
        self._columns = [validate_identifier(field) for field in fields]
        return self

    def order_by(self, field: str, direction: Any = 'ASC') -> 'QueryBuilder':
        key = direction.upper() if isinstance(direction, str) else direction
        if isinstance(key, bool) or key not in SORT_DIRECTIONS:
            raise InvalidQueryError(f"Invalid sort direction {direction!r} for field '{field}'")
        self._order[validate_identifier(field)] = SORT_DIRECTIONS[key]
        return self

    def limit(self, limit: int) -> 'QueryBuilder':
        self._limit = validate_count('limit', limit)
        return self

    def offset(self, offset: int) -> 'QueryBuilder':
        self._offset = validate_count('offset', offset)
        return self

    def build(self) -> CompiledStatement:
        """Render the statement; deterministic for the same builder state."""
        return compile_select(
            self.table,
            columns=self._columns,
            where=self._condition,
            order=tuple(self._order.items()),
            limit=self._limit,
            offset=self._offset,
        )

    def _shape(self, row: Dict[str, Any]) -> Any:
        if self._decoder is not None:
            row = self._decoder(row)
        if self.record_type is not None:
            return self.record_type(**row)
        return row

    async def execute(self, transaction: Optional[Transaction] = None) -> List[Any]:
        """
        Run the statement on a pooled connection (or the active transaction).

        Returns:
            Matching rows shaped by the decoder and record type
        """
        if self.pool is None:
            raise InvalidQueryError("QueryBuilder has no connection pool to execute against")

        statement = self.build()
        async with connection_scope(self.pool, transaction) as conn:
            result = await conn.execute(statement.sql, statement.params)
        return [self._shape(row) for row in result.rows]

    def __repr__(self) -> str:
        sql, params = self.build()
        return f"QueryBuilder({sql!r}, params={params!r})"
