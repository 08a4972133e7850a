"""
Statement compiler.

Conditions and update specs are parsed into a small intermediate
representation (predicates and assignments) and rendered to SQLite
statements with positional ``?`` parameters here and nowhere else. Values
are always bound; identifiers are validated and quoted.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from ..errors import InvalidQueryError, InvalidUpdateError
from ..security import quote_identifier, validate_identifier

# Condition operator -> SQL operator
OPERATORS = {
    'eq': '=',
    'ne': '!=',
    'gt': '>',
    'gte': '>=',
    'lt': '<',
    'lte': '<=',
    'like': 'LIKE',
    'in': 'IN',
}

# Applied in this order; a later operator overrides an earlier one on the same field
UPDATE_OPERATORS = ('$inc', '$set', '$unset')

SORT_DIRECTIONS = {
    'ASC': 'ASC', 'DESC': 'DESC',
    1: 'ASC', -1: 'DESC',
}

Coercer = Callable[[str, Any], Any]


def _identity(field: str, value: Any) -> Any:
    return value


class CompiledStatement(NamedTuple):
    """Rendered SQL plus its positional parameters."""
    sql: str
    params: Tuple[Any, ...]


# ---------------------------------------------------------------------- #
# Conditions
# ---------------------------------------------------------------------- #
@dataclass(frozen=True)
class Predicate:
    """One ``field <op> value`` test."""
    field: str
    op: str
    value: Any

    def compile(self) -> Tuple[str, List[Any]]:
        column = quote_identifier(self.field)

        if self.op == 'in':
            values = list(self.value)
            if not values:
                return '1 = 0', []
            return f"{column} IN ({', '.join('?' for _ in values)})", values

        if self.value is None:
            if self.op == 'eq':
                return f"{column} IS NULL", []
            if self.op == 'ne':
                return f"{column} IS NOT NULL", []
            raise InvalidQueryError(f"Operator '{self.op}' cannot compare '{self.field}' with None")

        if self.op == 'like':
            return f"{column} LIKE ?", [f"%{self.value}%"]

        return f"{column} {OPERATORS[self.op]} ?", [self.value]


def _normalize_operator(field: str, raw_op: Any) -> str:
    op = raw_op[1:] if isinstance(raw_op, str) and raw_op.startswith('$') else raw_op
    if op not in OPERATORS:
        raise InvalidQueryError(f"Unknown operator {raw_op!r} for field '{field}'")
    return op


@dataclass(frozen=True)
class Condition:
    """AND-joined list of predicates."""
    predicates: Tuple[Predicate, ...] = ()

    @classmethod
    def parse(cls, condition: Optional[Union['Condition', Mapping]] = None,
              coerce: Optional[Coercer] = None) -> 'Condition':
        """
        Parse a flat equality mapping and/or per-field operator mappings.

        Args:
            condition: ``{field: value}`` or ``{field: {op: value}}`` (both may be mixed)
            coerce: Converts each compared value to its storage form

        Returns:
            Condition ready to compile
        """
        if condition is None:
            return cls()
        if isinstance(condition, Condition):
            return condition
        if not isinstance(condition, Mapping):
            raise InvalidQueryError(f"Condition must be a mapping, got {type(condition).__name__}")

        coerce = coerce or _identity
        predicates = []

        for field, value in condition.items():
            validate_identifier(field)

            if not isinstance(value, Mapping):
                predicates.append(Predicate(field, 'eq', coerce(field, value)))
                continue

            if not value:
                raise InvalidQueryError(f"Empty operator set for field '{field}'")

            for raw_op, operand in value.items():
                op = _normalize_operator(field, raw_op)
                if op == 'in':
                    if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, Iterable):
                        raise InvalidQueryError(f"'in' for field '{field}' needs a list of values")
                    operand = tuple(coerce(field, item) for item in operand)
                elif op != 'like':
                    operand = coerce(field, operand)
                predicates.append(Predicate(field, op, operand))

        return cls(tuple(predicates))

    def __bool__(self) -> bool:
        return bool(self.predicates)

    def merge(self, other: 'Condition') -> 'Condition':
        return Condition(self.predicates + other.predicates)

    def compile(self) -> Tuple[str, List[Any]]:
        """Return the WHERE body (without the keyword) and its parameters."""
        clauses = []
        params: List[Any] = []
        for predicate in self.predicates:
            clause, values = predicate.compile()
            clauses.append(clause)
            params.extend(values)
        return ' AND '.join(clauses), params


# ---------------------------------------------------------------------- #
# Updates
# ---------------------------------------------------------------------- #
@dataclass(frozen=True)
class Assignment:
    """One SET term."""
    field: str
    kind: str  # 'set' | 'inc' | 'unset'
    value: Any = None

    def compile(self) -> Tuple[str, List[Any]]:
        column = quote_identifier(self.field)
        if self.kind == 'inc':
            return f"{column} = {column} + ?", [self.value]
        if self.kind == 'unset':
            return f"{column} = NULL", []
        return f"{column} = ?", [self.value]


def _unset_fields(body: Any) -> List[str]:
    if isinstance(body, str):
        return [body]
    if isinstance(body, Mapping):
        return list(body.keys())
    if isinstance(body, Iterable):
        return list(body)
    raise InvalidUpdateError("$unset takes a field name, a list of names or a mapping")


@dataclass(frozen=True)
class UpdateSpec:
    """
    Tagged update: ``replace`` (plain field -> value mapping) or
    ``operators`` ($inc / $set / $unset).
    """
    kind: str
    assignments: Tuple[Assignment, ...]

    @classmethod
    def parse(cls, spec: Union['UpdateSpec', Mapping], coerce: Optional[Coercer] = None) -> 'UpdateSpec':
        if isinstance(spec, UpdateSpec):
            return spec
        if not isinstance(spec, Mapping) or not spec:
            raise InvalidUpdateError("Update spec must be a non-empty mapping")

        coerce = coerce or _identity
        operator_keys = [key for key in spec if isinstance(key, str) and key.startswith('$')]

        if not operator_keys:
            assignments = tuple(
                Assignment(validate_identifier(field), 'set', coerce(field, value))
                for field, value in spec.items()
            )
            return cls('replace', assignments)

        if len(operator_keys) != len(spec):
            raise InvalidUpdateError("Update spec cannot mix operators with plain field values")

        unknown = [key for key in operator_keys if key not in UPDATE_OPERATORS]
        if unknown:
            raise InvalidUpdateError(f"Unknown update operator(s): {', '.join(unknown)}")

        merged: Dict[str, Assignment] = {}
        for op in UPDATE_OPERATORS:
            if op not in spec:
                continue
            body = spec[op]

            if op == '$unset':
                for field in _unset_fields(body):
                    merged[validate_identifier(field)] = Assignment(field, 'unset')
                continue

            if not isinstance(body, Mapping):
                raise InvalidUpdateError(f"{op} takes a mapping of field -> value")

            for field, value in body.items():
                validate_identifier(field)
                if op == '$inc':
                    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
                        raise InvalidUpdateError(f"$inc for field '{field}' needs a number, got {value!r}")
                    merged[field] = Assignment(field, 'inc', value)
                else:
                    merged[field] = Assignment(field, 'set', coerce(field, value))

        if not merged:
            raise InvalidUpdateError("Update spec contains no assignments")
        return cls('operators', tuple(merged.values()))

    def compile(self) -> Tuple[str, List[Any]]:
        """Return the SET body (without the keyword) and its parameters."""
        terms = []
        params: List[Any] = []
        for assignment in self.assignments:
            term, values = assignment.compile()
            terms.append(term)
            params.extend(values)
        return ', '.join(terms), params


# ---------------------------------------------------------------------- #
# Ordering and paging
# ---------------------------------------------------------------------- #
def parse_order(order_by: Any) -> Tuple[Tuple[str, str], ...]:
    """
    Normalize ``{field: direction}`` or ``[(field, direction), ...]``.

    Directions are ASC/DESC (any case) or 1/-1.
    """
    if not order_by:
        return ()
    items = order_by.items() if isinstance(order_by, Mapping) else order_by

    order = []
    for item in items:
        if isinstance(item, str):
            field, raw_direction = item, 'ASC'
        else:
            field, raw_direction = item
        key = raw_direction.upper() if isinstance(raw_direction, str) else raw_direction
        if isinstance(key, bool) or key not in SORT_DIRECTIONS:
            raise InvalidQueryError(f"Invalid sort direction {raw_direction!r} for field '{field}'")
        order.append((validate_identifier(field), SORT_DIRECTIONS[key]))
    return tuple(order)


def validate_count(name: str, value: Any) -> Optional[int]:
    """Validate a LIMIT / OFFSET value."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQueryError(f"{name} must be a non-negative integer, got {value!r}")
    return value


# ---------------------------------------------------------------------- #
# Statements
# ---------------------------------------------------------------------- #
def _where(condition: Optional[Condition], parts: List[str], params: List[Any]) -> None:
    if condition:
        clause, values = condition.compile()
        parts.append(f"WHERE {clause}")
        params.extend(values)


def compile_select(table: str, columns: Sequence[str] = (), where: Optional[Condition] = None,
                   order: Sequence[Tuple[str, str]] = (), limit: Optional[int] = None,
                   offset: Optional[int] = None) -> CompiledStatement:
    """Render SELECT: projection -> WHERE -> ORDER BY -> LIMIT -> OFFSET."""
    projection = ', '.join(quote_identifier(column) for column in columns) if columns else '*'
    parts = [f"SELECT {projection} FROM {quote_identifier(table, 'table')}"]
    params: List[Any] = []

    _where(where, parts, params)

    if order:
        parts.append('ORDER BY ' + ', '.join(f"{quote_identifier(field)} {direction}" for field, direction in order))

    # OFFSET is only rendered together with LIMIT
    limit = validate_count('limit', limit)
    offset = validate_count('offset', offset)
    if limit is not None:
        parts.append('LIMIT ?')
        params.append(limit)
        if offset:
            parts.append('OFFSET ?')
            params.append(offset)

    return CompiledStatement(' '.join(parts), tuple(params))


def compile_count(table: str, where: Optional[Condition] = None) -> CompiledStatement:
    parts = [f"SELECT COUNT(*) AS count FROM {quote_identifier(table, 'table')}"]
    params: List[Any] = []
    _where(where, parts, params)
    return CompiledStatement(' '.join(parts), tuple(params))


def compile_insert(table: str, values: Mapping) -> CompiledStatement:
    """Render INSERT with columns in the mapping's order."""
    table_sql = quote_identifier(table, 'table')
    if not values:
        return CompiledStatement(f"INSERT INTO {table_sql} DEFAULT VALUES", ())

    columns = ', '.join(quote_identifier(column) for column in values)
    placeholders = ', '.join('?' for _ in values)
    return CompiledStatement(
        f"INSERT INTO {table_sql} ({columns}) VALUES ({placeholders})",
        tuple(values.values()),
    )


def compile_update(table: str, update: UpdateSpec, where: Optional[Condition] = None) -> CompiledStatement:
    set_clause, params = update.compile()
    parts = [f"UPDATE {quote_identifier(table, 'table')} SET {set_clause}"]
    _where(where, parts, params)
    return CompiledStatement(' '.join(parts), tuple(params))


def compile_delete(table: str, where: Optional[Condition] = None) -> CompiledStatement:
    parts = [f"DELETE FROM {quote_identifier(table, 'table')}"]
    params: List[Any] = []
    _where(where, parts, params)
    return CompiledStatement(' '.join(parts), tuple(params))
