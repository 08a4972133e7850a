"""
Model: the CRUD surface bound to one schema and one table.

Every operation borrows a pooled connection for its duration (or joins the
transaction it was given, or the one active in the current task), compiles
its statement through the query compiler and runs the schema's lifecycle
hooks around the write.
"""

import copy
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .config.logging_config import LOGGER_NAME, DatabaseLoggerAdapter
from .core.connection import ConnectionPool, PooledConnection
from .core.transaction import Transaction, connection_scope, current_transaction
from .cursor import RecordCursor
from .errors import InvalidQueryError, InvalidUpdateError, StorageError
from .query.builder import QueryBuilder
from .query.compiler import (
    Condition, Predicate, UpdateSpec,
    compile_count, compile_delete, compile_insert, compile_select, compile_update,
    parse_order, validate_count,
)
from .schema import IDENTITY_COLUMN, HookStage, Schema
from .security import validate_identifier

if TYPE_CHECKING:
    from .database import Database


class FindOptions(BaseModel):
    """Options accepted by ``Model.find``."""

    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    order_by: Any = Field(default=None, validation_alias=AliasChoices('order_by', 'orderBy', 'sort'))
    limit: Optional[int] = None
    offset: Optional[int] = None
    populate: List[str] = Field(default_factory=list)

    @field_validator('limit', 'offset', mode='before')
    @classmethod
    def check_count(cls, v, info):
        return validate_count(info.field_name, v)

    @field_validator('populate', mode='before')
    @classmethod
    def listify_populate(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


def parse_find_options(options: Optional[Mapping[str, Any]] = None, **kwargs) -> FindOptions:
    """Validate find options, reporting problems as InvalidQueryError."""
    if isinstance(options, FindOptions) and not kwargs:
        return options
    values = dict(options or {})
    values.update(kwargs)
    try:
        return FindOptions.model_validate(values)
    except PydanticValidationError as e:
        raise InvalidQueryError(f"Invalid find options: {e}") from e


class Model:
    """
    CRUD operations for one schema-defined table.

    Created by ``Database.define``; the table name is the lower-cased model name.
    """

    def __init__(self, database: 'Database', name: str, schema: Schema):
        self.database = database
        self.name = name
        self.schema = schema
        self.table_name = validate_identifier(name.lower(), 'table')
        self.logger = DatabaseLoggerAdapter(
            logging.getLogger(f'{LOGGER_NAME}.model.{self.table_name}'),
            {'model': name, 'db_path': database.settings.path}
        )

        # Performance tracking
        self.operation_stats = {
            'queries_executed': 0,
            'total_query_time': 0.0,
            'records_created': 0,
            'records_updated': 0,
            'records_deleted': 0,
        }

    def __repr__(self) -> str:
        return f"Model({self.name!r}, table={self.table_name!r})"

    @property
    def pool(self) -> ConnectionPool:
        return self.database.pool

    async def materialize(self) -> None:
        """Create the table and its indexes if they do not exist yet."""
        start_time = time.time()
        async with connection_scope(self.pool) as conn:
            for statement in self.schema.compile_ddl(self.table_name):
                await conn.execute(statement)
        self.schema.mark_materialized()
        self.logger.info(f"Table '{self.table_name}' ready ({len(self.schema.fields)} fields)")
        self._track_operation('materialize', time.time() - start_time)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _known_field(self, field: str) -> bool:
        return field == IDENTITY_COLUMN or field in self.schema.fields

    def _where(self, condition) -> Condition:
        where = Condition.parse(condition, self.schema.to_storage_value)
        for predicate in where.predicates:
            if not self._known_field(predicate.field):
                raise InvalidQueryError(f"Unknown field '{predicate.field}' for model '{self.name}'")
        return where

    def _check_order(self, order) -> None:
        for field, _ in order:
            if not self._known_field(field):
                raise InvalidQueryError(f"Cannot order by unknown field '{field}'")

    def _check_populate(self, fields: Iterable[str]) -> List[str]:
        relationships = self.schema.relationships()
        for field in fields:
            if field not in relationships:
                raise InvalidQueryError(f"Field '{field}' of model '{self.name}' is not a reference")
        return list(fields)

    def _track_operation(self, operation: str, duration: float) -> None:
        """Track model operation performance."""
        self.operation_stats['queries_executed'] += 1
        self.operation_stats['total_query_time'] += duration

        self.logger.performance(f'{self.table_name}.{operation}_duration', duration, 's')

    # ------------------------------------------------------------------ #
    # Create
    # ------------------------------------------------------------------ #
    async def create(self, record: Mapping[str, Any], transaction: Optional[Transaction] = None) -> Dict[str, Any]:
        """
        Insert one record.

        Defaults are applied, pre-save hooks run, the result is validated
        and inserted; post-save hooks see (and may reshape) the stored
        record including its new ``id``.

        Args:
            record: Field values; keys not declared in the schema are dropped
            transaction: Transaction to run in (defaults to the active one)

        Returns:
            The created record with its ``id``

        Raises:
            ValidationError: Before any statement is issued
            UniqueConstraintError: When a unique field value already exists
        """
        start_time = time.time()

        doc = self.schema.apply_defaults(record)
        doc = await self.schema.run_hooks(HookStage.PRE_SAVE, doc)
        self.schema.validate(doc)

        statement = compile_insert(self.table_name, self.schema.column_values(doc))

        try:
            async with connection_scope(self.pool, transaction) as conn:
                result = await conn.execute(*statement)
                saved = {IDENTITY_COLUMN: result.lastrowid}
                saved.update((name, doc[name]) for name in self.schema.fields if name in doc)
                saved = await self.schema.run_hooks(HookStage.POST_SAVE, saved)
        except StorageError as e:
            self.logger.error(f"Failed to create {self.table_name} record: {e}")
            raise

        self.operation_stats['records_created'] += 1
        self._track_operation('create', time.time() - start_time)
        return saved

    async def create_many(self, records: Iterable[Mapping[str, Any]],
                          transaction: Optional[Transaction] = None) -> List[Dict[str, Any]]:
        """Create several records atomically; nothing is stored if any fails."""
        tx = transaction or current_transaction()
        if tx is not None and tx.is_active:
            return [await self.create(record, transaction=tx) for record in records]

        async with self.database.transaction() as tx:
            return [await self.create(record, transaction=tx) for record in records]

    # ------------------------------------------------------------------ #
    # Read
    # ------------------------------------------------------------------ #
    def find(self, condition: Optional[Mapping[str, Any]] = None,
             options: Optional[Mapping[str, Any]] = None,
             transaction: Optional[Transaction] = None, **kwargs) -> RecordCursor:
        """
        Find records matching a condition.

        The condition and options are checked immediately; the statement
        runs when the returned cursor is first iterated or awaited.

        Args:
            condition: ``{field: value}`` and/or ``{field: {op: value}}``
            options: ``order_by`` / ``orderBy``, ``limit``, ``offset``, ``populate``
            transaction: Transaction to run in (defaults to the active one)
            **kwargs: Options given as keywords

        Returns:
            RecordCursor over the matching records
        """
        opts = parse_find_options(options, **kwargs)
        where = self._where(condition)
        order = parse_order(opts.order_by)
        self._check_order(order)
        populate = self._check_populate(opts.populate)

        statement = compile_select(
            self.table_name, where=where, order=order, limit=opts.limit, offset=opts.offset
        )

        async def load() -> List[Dict[str, Any]]:
            start_time = time.time()
            async with connection_scope(self.pool, transaction) as conn:
                result = await conn.execute(*statement)
                records = [self.schema.from_row(row) for row in result.rows]
                for field in populate:
                    await self._populate(conn, records, field)
            self._track_operation('find', time.time() - start_time)
            return records

        return RecordCursor(load)

    async def _populate(self, conn: PooledConnection, records: List[Dict[str, Any]], field: str) -> None:
        """Replace each reference id with the referenced record (one lookup per row)."""
        ref_table = self.schema.fields[field].ref
        ref_model = self.database.model_for_table(ref_table)

        for record in records:
            ref_id = record.get(field)
            if ref_id is None:
                continue
            statement = compile_select(
                ref_table, where=Condition((Predicate(IDENTITY_COLUMN, 'eq', ref_id),)), limit=1
            )
            result = await conn.execute(*statement)
            if not result.rows:
                record[field] = None
            elif ref_model is not None:
                record[field] = ref_model.schema.from_row(result.rows[0])
            else:
                record[field] = result.rows[0]

    async def find_one(self, condition: Optional[Mapping[str, Any]] = None,
                       options: Optional[Mapping[str, Any]] = None,
                       transaction: Optional[Transaction] = None, **kwargs) -> Optional[Dict[str, Any]]:
        """First matching record, or None."""
        values = dict(options or {})
        values.update(kwargs)
        values['limit'] = 1
        records = await self.find(condition, values, transaction=transaction)
        return records[0] if records else None

    async def find_by_id(self, id_value: Any, transaction: Optional[Transaction] = None,
                         **kwargs) -> Optional[Dict[str, Any]]:
        return await self.find_one({IDENTITY_COLUMN: id_value}, transaction=transaction, **kwargs)

    async def count(self, condition: Optional[Mapping[str, Any]] = None,
                    transaction: Optional[Transaction] = None) -> int:
        start_time = time.time()
        statement = compile_count(self.table_name, self._where(condition))
        async with connection_scope(self.pool, transaction) as conn:
            result = await conn.execute(*statement)
        self._track_operation('count', time.time() - start_time)
        return result.rows[0]['count'] if result.rows else 0

    async def exists(self, condition: Optional[Mapping[str, Any]] = None,
                     transaction: Optional[Transaction] = None) -> bool:
        statement = compile_select(self.table_name, columns=[IDENTITY_COLUMN],
                                   where=self._where(condition), limit=1)
        async with connection_scope(self.pool, transaction) as conn:
            result = await conn.execute(*statement)
        return bool(result.rows)

    def query(self) -> QueryBuilder:
        """QueryBuilder over this model's table, decoding rows like ``find``."""
        return QueryBuilder(
            self.table_name,
            self.pool,
            decoder=self.schema.from_row,
            coerce=self.schema.to_storage_value,
        )

    # ------------------------------------------------------------------ #
    # Update / delete
    # ------------------------------------------------------------------ #
    async def update(self, condition: Optional[Mapping[str, Any]], spec: Mapping[str, Any],
                     transaction: Optional[Transaction] = None) -> int:
        """
        Update matching records.

        Args:
            condition: Records to update; empty or None matches every record
            spec: Plain ``{field: value}`` replacement, or ``$inc`` / ``$set`` / ``$unset``
            transaction: Transaction to run in (defaults to the active one)

        Returns:
            Number of affected records (0 is not an error)
        """
        start_time = time.time()
        where = self._where(condition)
        if not isinstance(spec, Mapping) or not spec:
            raise InvalidUpdateError("Update spec must be a non-empty mapping")

        raw = await self.schema.run_hooks(HookStage.PRE_UPDATE, copy.deepcopy(dict(spec)))
        update = UpdateSpec.parse(raw, self.schema.to_storage_value)
        for assignment in update.assignments:
            if assignment.field not in self.schema.fields:
                raise InvalidUpdateError(f"Cannot update unknown field '{assignment.field}'")

        statement = compile_update(self.table_name, update, where)

        try:
            async with connection_scope(self.pool, transaction) as conn:
                result = await conn.execute(*statement)
                await self.schema.run_hooks(HookStage.POST_UPDATE, raw)
        except StorageError as e:
            self.logger.error(f"Failed to update {self.table_name}: {e}")
            raise

        self.operation_stats['records_updated'] += result.rowcount
        self._track_operation('update', time.time() - start_time)
        return result.rowcount

    async def delete(self, condition: Optional[Mapping[str, Any]] = None,
                     transaction: Optional[Transaction] = None) -> int:
        """Delete matching records; returns the number removed."""
        start_time = time.time()
        statement = compile_delete(self.table_name, self._where(condition))

        try:
            async with connection_scope(self.pool, transaction) as conn:
                result = await conn.execute(*statement)
        except StorageError as e:
            self.logger.error(f"Failed to delete from {self.table_name}: {e}")
            raise

        self.operation_stats['records_deleted'] += result.rowcount
        self._track_operation('delete', time.time() - start_time)
        return result.rowcount

    # ------------------------------------------------------------------ #
    # Diagnostics
    # ------------------------------------------------------------------ #
    def get_performance_stats(self) -> Dict[str, Any]:
        """Get performance statistics for this model."""
        stats = self.operation_stats.copy()

        if stats['queries_executed'] > 0:
            stats['avg_query_time'] = stats['total_query_time'] / stats['queries_executed']
        else:
            stats['avg_query_time'] = 0.0

        stats['table_name'] = self.table_name
        stats['model'] = self.name
        return stats

    async def health_check(self) -> Dict[str, Any]:
        """Check that the table is reachable and report its size."""
        try:
            count = await self.count()
            return {
                'status': 'healthy',
                'table_name': self.table_name,
                'record_count': count,
                'model': self.name,
            }
        except Exception as e:
            return {
                'status': 'unhealthy',
                'table_name': self.table_name,
                'error': str(e),
                'model': self.name,
            }
