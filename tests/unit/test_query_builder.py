"""Unit tests for the fluent QueryBuilder."""

from dataclasses import dataclass

import pytest

from sqlmongoose import Schema
from sqlmongoose.errors import InvalidQueryError
from sqlmongoose.query import QueryBuilder


class TestBuild:
    """Test statement building without a database."""

    def test_chaining_returns_same_instance(self):
        builder = QueryBuilder('users')
        assert builder.where({'age': {'gte': 18}}) is builder
        assert builder.select('id', 'name') is builder
        assert builder.order_by('name') is builder
        assert builder.limit(10) is builder
        assert builder.offset(5) is builder

    def test_clause_order(self):
        sql, params = (QueryBuilder('users')
                       .offset(5)
                       .limit(10)
                       .order_by('name', 'desc')
                       .select('id', 'name')
                       .where({'age': {'gte': 18}})
                       .build())

        assert sql == ('SELECT "id", "name" FROM "users" WHERE "age" >= ? '
                       'ORDER BY "name" DESC LIMIT ? OFFSET ?')
        assert params == (18, 10, 5)

    def test_where_calls_are_and_joined(self):
        sql, params = QueryBuilder('users').where({'a': 1}).where({'b': {'ne': 2}}).build()
        assert sql == 'SELECT * FROM "users" WHERE "a" = ? AND "b" != ?'
        assert params == (1, 2)

    def test_builders_do_not_share_state(self):
        first = QueryBuilder('users').where({'a': 1})
        second = QueryBuilder('users')
        assert second.build() == ('SELECT * FROM "users"', ())
        assert first.build().params == (1,)

    def test_build_is_deterministic(self):
        builder = QueryBuilder('users').where({'a': 1}).limit(2)
        assert builder.build() == builder.build()

    def test_invalid_direction(self):
        with pytest.raises(InvalidQueryError):
            QueryBuilder('users').order_by('name', 'up')

    def test_invalid_limit(self):
        with pytest.raises(InvalidQueryError):
            QueryBuilder('users').limit(-5)

    @pytest.mark.asyncio
    async def test_execute_requires_pool(self):
        with pytest.raises(InvalidQueryError):
            await QueryBuilder('users').execute()


@dataclass
class Person:
    id: int
    name: str
    age: int


class TestExecute:
    """Test running built queries against a database."""

    @pytest.mark.asyncio
    async def test_rows_shaped_by_record_type(self, db):
        people = await db.define('People', Schema({'name': 'STRING', 'age': 'NUMBER'}))
        for name, age in [('Ada', 36), ('Bob', 17), ('Cy', 18)]:
            await people.create({'name': name, 'age': age})

        adults = await (db.query('people', record_type=Person)
                        .where({'age': {'gte': 18}})
                        .order_by('age')
                        .execute())

        assert adults == [Person(3, 'Cy', 18), Person(1, 'Ada', 36)]

    @pytest.mark.asyncio
    async def test_model_query_decodes_rows(self, db):
        flags = await db.define('Flag', Schema({'name': 'STRING', 'enabled': 'BOOLEAN'}))
        await flags.create({'name': 'a', 'enabled': True})
        await flags.create({'name': 'b', 'enabled': False})

        rows = await flags.query().where({'enabled': True}).select('name', 'enabled').execute()
        assert rows == [{'name': 'a', 'enabled': True}]
