"""
Query compilation: condition and update intermediate representation, SQL
rendering, and the fluent QueryBuilder.
"""

from .compiler import (
    CompiledStatement, Condition, Predicate, UpdateSpec, Assignment,
    OPERATORS, UPDATE_OPERATORS,
    compile_select, compile_count, compile_insert, compile_update, compile_delete,
    parse_order,
)
from .builder import QueryBuilder

__all__ = [
    'CompiledStatement', 'Condition', 'Predicate', 'UpdateSpec', 'Assignment',
    'OPERATORS', 'UPDATE_OPERATORS',
    'compile_select', 'compile_count', 'compile_insert', 'compile_update', 'compile_delete',
    'parse_order',
    'QueryBuilder',
]
