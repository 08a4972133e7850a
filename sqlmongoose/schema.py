"""
Schema definitions.

A Schema is the canonical description of one record type: ordered field
definitions (type, required, unique, default, validator, index, reference),
lifecycle hooks per stage, and optional per-field codecs. It validates
records, converts values to and from their storage form, and compiles the
table and index DDL.
"""

import copy
import inspect
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import Column, Index, Integer, MetaData, Numeric, Table, Text, text
from sqlalchemy.dialects import sqlite
from sqlalchemy.schema import CreateIndex, CreateTable

from .errors import SchemaError, SchemaFrozenError, ValidationError
from .security import validate_identifier

logger = logging.getLogger(__name__)

IDENTITY_COLUMN = 'id'


class DataType(str, Enum):
    """Field type tags."""
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    JSON = "JSON"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().upper()
            key = _TYPE_ALIASES.get(key, key)
            for member in cls:
                if member.value == key:
                    return member
        return None


_TYPE_ALIASES = {
    'TEXT': 'STRING',
    'STR': 'STRING',
    'NUMERIC': 'NUMBER',
    'INT': 'NUMBER',
    'INTEGER': 'NUMBER',
    'FLOAT': 'NUMBER',
    'REAL': 'NUMBER',
    'BOOL': 'BOOLEAN',
    'DATETIME': 'DATE',
    'STRUCTURED': 'JSON',
    'OBJECT': 'JSON',
}

PYTHON_TYPES = {
    str: DataType.STRING,
    int: DataType.NUMBER,
    float: DataType.NUMBER,
    Decimal: DataType.NUMBER,
    bool: DataType.BOOLEAN,
    datetime: DataType.DATE,
    date: DataType.DATE,
    dict: DataType.JSON,
    list: DataType.JSON,
}

# SQLite storage types, same affinities as the TEXT/NUMERIC/INTEGER mapping
SQL_TYPES = {
    DataType.STRING: Text,
    DataType.NUMBER: Numeric,
    DataType.BOOLEAN: Integer,
    DataType.DATE: Text,
    DataType.JSON: Text,
}


def resolve_type(value: Any) -> DataType:
    """Map a type tag, enum member or Python type onto a DataType."""
    if isinstance(value, DataType):
        return value
    if isinstance(value, type) and value in PYTHON_TYPES:
        return PYTHON_TYPES[value]
    if isinstance(value, str):
        try:
            return DataType(value)
        except ValueError:
            pass
    logger.warning(f"Unknown field type {value!r}; storing as STRING")
    return DataType.STRING


class HookStage(str, Enum):
    """Lifecycle stages hooks can be registered for."""
    PRE_SAVE = "pre-save"
    POST_SAVE = "post-save"
    PRE_UPDATE = "pre-update"
    POST_UPDATE = "post-update"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().lower().replace('_', '-')
            for member in cls:
                if member.value == key:
                    return member
        return None


Hook = Callable[[Any], Union[Any, Awaitable[Any]]]


class Codec(NamedTuple):
    """Encode / decode pair for a structured field."""
    encode: Callable[[Any], str]
    decode: Callable[[str], Any]


json_codec = Codec(encode=json.dumps, decode=json.loads)


class FieldDefinition(BaseModel):
    """Canonical definition of one field."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True,
                              populate_by_name=True, extra='forbid')

    type: DataType = DataType.STRING
    required: bool = False
    unique: bool = False
    default: Any = None
    validator: Optional[Callable[[Any], bool]] = Field(default=None, alias='validate')
    index: bool = False
    ref: Optional[str] = None

    @field_validator('type', mode='before')
    @classmethod
    def coerce_type(cls, v):
        return resolve_type(v)

    @field_validator('ref')
    @classmethod
    def validate_ref(cls, v):
        if v is not None:
            validate_identifier(v, 'table')
        return v

    @property
    def has_default(self) -> bool:
        """Whether a default was declared (a declared ``None`` counts)."""
        return 'default' in self.model_fields_set

    def make_default(self) -> Any:
        """Produce the default value, calling a default factory if one was given."""
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)


def normalize_field(value: Any) -> FieldDefinition:
    """Turn shorthand (type tag or Python type) or a full definition into a FieldDefinition."""
    if isinstance(value, FieldDefinition):
        return value
    if isinstance(value, Mapping):
        return FieldDefinition.model_validate(dict(value))
    return FieldDefinition(type=value)


class Schema:
    """
    Declarative description of one record type.

    Fields are fixed once a table has been materialized from the schema;
    hooks and codecs can still be registered afterwards.
    """

    def __init__(self, definition: Optional[Mapping[str, Any]] = None):
        definition = definition or {}
        for name in definition:
            self._check_field_name(name)

        self.fields: Dict[str, FieldDefinition] = self.normalize(definition)
        self.hooks: Dict[HookStage, List[Hook]] = {stage: [] for stage in HookStage}
        self.codecs: Dict[str, Codec] = {}
        self._materialized = False

    def __repr__(self) -> str:
        return f"Schema({', '.join(self.fields)})"

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    @staticmethod
    def normalize(definition: Mapping[str, Any]) -> Dict[str, FieldDefinition]:
        """Canonical ordered mapping of field name -> FieldDefinition."""
        return {name: normalize_field(value) for name, value in definition.items()}

    @staticmethod
    def _check_field_name(name: str) -> None:
        validate_identifier(name)
        if name == IDENTITY_COLUMN:
            raise SchemaError(f"'{IDENTITY_COLUMN}' is reserved for the identity column")

    @property
    def materialized(self) -> bool:
        return self._materialized

    def mark_materialized(self) -> None:
        self._materialized = True

    def add(self, name: str, definition: Any) -> None:
        """Add (or redefine) a field before the table is materialized."""
        if self._materialized:
            raise SchemaFrozenError(f"Cannot add field '{name}': table already materialized")
        self._check_field_name(name)
        self.fields[name] = normalize_field(definition)

    # ------------------------------------------------------------------ #
    # Hooks
    # ------------------------------------------------------------------ #
    def register_hook(self, stage: Union[HookStage, str], fn: Hook) -> None:
        """Append a hook to a stage; hooks run in registration order."""
        if not callable(fn):
            raise TypeError(f"Hook for {stage} must be callable")
        self.hooks[HookStage(stage)].append(fn)

    def pre(self, event: str, fn: Hook) -> None:
        self.register_hook(f"pre-{event}", fn)

    def post(self, event: str, fn: Hook) -> None:
        self.register_hook(f"post-{event}", fn)

    async def run_hooks(self, stage: Union[HookStage, str], payload: Any) -> Any:
        """
        Run a stage's hooks one after another.

        Each hook receives the current payload and may mutate it in place
        (returning None) or return a replacement for the next hook. The first
        exception stops the chain and propagates unchanged.
        """
        stage = HookStage(stage)
        for hook in list(self.hooks[stage]):
            logger.debug(f"Running {stage.value} hook {getattr(hook, '__name__', hook)!s}")
            result = hook(payload)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                payload = result
        return payload

    def codec(self, field: str, encode: Callable[[Any], str] = json.dumps,
              decode: Callable[[str], Any] = json.loads) -> None:
        """
        Store a structured field in its encoded text form.

        Registers a pre-save encoder, a post-save decoder and a pre-update
        encoder for ``$set`` / replace values; rows read back are decoded too.
        """
        if field not in self.fields:
            raise SchemaError(f"Cannot attach codec to unknown field '{field}'")

        def encode_on_save(record):
            if record.get(field) is not None:
                record[field] = encode(record[field])

        def decode_after_save(record):
            if isinstance(record.get(field), str):
                record[field] = decode(record[field])

        def encode_on_update(spec):
            target = spec.get('$set') if any(str(key).startswith('$') for key in spec) else spec
            if isinstance(target, dict) and target.get(field) is not None:
                target[field] = encode(target[field])

        encode_on_save.__name__ = f"encode_{field}"
        decode_after_save.__name__ = f"decode_{field}"
        encode_on_update.__name__ = f"encode_{field}_update"

        self.codecs[field] = Codec(encode, decode)
        self.register_hook(HookStage.PRE_SAVE, encode_on_save)
        self.register_hook(HookStage.POST_SAVE, decode_after_save)
        self.register_hook(HookStage.PRE_UPDATE, encode_on_update)

    # ------------------------------------------------------------------ #
    # Records
    # ------------------------------------------------------------------ #
    def apply_defaults(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Copy of ``record`` with absent fields filled from their defaults."""
        result = dict(record)
        for name, field in self.fields.items():
            if name not in result and field.has_default:
                result[name] = field.make_default()
        return result

    def validate(self, record: Mapping[str, Any]) -> None:
        """
        Check required fields and validators in declaration order.

        Raises:
            ValidationError: For the first offending field only
        """
        for name, field in self.fields.items():
            value = record.get(name)
            if value is None:
                if field.required:
                    raise ValidationError(name, "is required")
                continue

            if field.validator is None:
                continue
            try:
                valid = field.validator(value)
            except Exception as e:
                raise ValidationError(name, f"validator raised {e!r}") from e
            if not valid:
                raise ValidationError(name, f"value {value!r} failed validation")

    def to_storage_value(self, name: str, value: Any) -> Any:
        """Convert one Python value to what the storage engine can bind."""
        field = self.fields.get(name)
        if value is None or field is None:
            return value
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        return value

    def column_values(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Storage values for the schema's fields present in ``record``, in declaration order."""
        unknown = [key for key in record if key not in self.fields and key != IDENTITY_COLUMN]
        if unknown:
            logger.debug(f"Dropping fields not in schema: {unknown}")
        return {
            name: self.to_storage_value(name, record[name])
            for name in self.fields
            if name in record
        }

    def from_row(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Convert a stored row back to Python values, decoding codec fields."""
        record = dict(row)
        for name, field in self.fields.items():
            value = record.get(name)
            if value is None:
                continue

            if field.type is DataType.BOOLEAN:
                record[name] = bool(value)
            elif field.type is DataType.DATE and isinstance(value, str):
                record[name] = _parse_date(value)

            codec = self.codecs.get(name)
            if codec is not None and isinstance(record[name], str):
                record[name] = codec.decode(record[name])
        return record

    def relationships(self) -> Dict[str, str]:
        """Field name -> referenced table for reference fields."""
        return {name: field.ref for name, field in self.fields.items() if field.ref}

    # ------------------------------------------------------------------ #
    # DDL
    # ------------------------------------------------------------------ #
    def build_table(self, table_name: str, metadata: Optional[MetaData] = None) -> Table:
        """SQLAlchemy Table for this schema, with its indexes attached."""
        validate_identifier(table_name, 'table')
        metadata = metadata if metadata is not None else MetaData()

        columns = [Column(IDENTITY_COLUMN, Integer, primary_key=True, autoincrement=True)]
        for name, field in self.fields.items():
            columns.append(Column(
                name,
                SQL_TYPES[field.type](),
                nullable=not field.required,
                server_default=_server_default(field),
            ))
        table = Table(table_name, metadata, *columns, sqlite_autoincrement=True)

        for name, field in self.fields.items():
            if field.unique:
                Index(f"uq_{table_name}_{name}", table.c[name], unique=True)
            elif field.index:
                Index(f"idx_{table_name}_{name}", table.c[name])
        return table

    def compile_ddl(self, table_name: str) -> List[str]:
        """
        Table creation followed by one index creation per indexed or unique
        field, all ``IF NOT EXISTS``. Deterministic for the same fields.
        """
        table = self.build_table(table_name)
        dialect = sqlite.dialect()

        statements = [str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)).strip()]
        positions = {name: position for position, name in enumerate(self.fields)}
        indexes = sorted(table.indexes, key=lambda index: positions[next(iter(index.columns)).name])
        for index in indexes:
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)).strip())
        return statements


def _server_default(field: FieldDefinition):
    """DDL DEFAULT for literal defaults; factories and structured values have none."""
    if not field.has_default or field.default is None or callable(field.default):
        return None
    value = field.default
    if isinstance(value, bool):
        return text('1' if value else '0')
    if isinstance(value, (int, float, Decimal)):
        return text(str(value))
    if isinstance(value, str):
        return value
    return None


def _parse_date(value: str) -> Any:
    try:
        if len(value) == 10:
            return date.fromisoformat(value)
        return datetime.fromisoformat(value)
    except ValueError:
        return value
