"""
End-to-end tests for models on a file-backed database.
"""

from datetime import datetime

import pytest
import pytest_asyncio

from sqlmongoose import (
    Database, FieldDefinition, Schema, connect, json_codec,
    InvalidQueryError, InvalidUpdateError, NotConnectedError, SchemaError, SchemaFrozenError, StorageError,
    UndefinedModelError, UniqueConstraintError, ValidationError,
)


class TestUserWalletScenario:
    """The unique key / defaulted wallet walk-through."""

    @pytest.mark.asyncio
    async def test_create_update_find_duplicate(self, db, user_schema):
        User = await db.define('User', user_schema)

        assert await User.create({'userId': 'abc'}) == {'id': 1, 'userId': 'abc', 'wallet': 0}
        assert await User.update({'userId': 'abc'}, {'$inc': {'wallet': 100}}) == 1
        assert await User.find_one({'userId': 'abc'}) == {'id': 1, 'userId': 'abc', 'wallet': 100}

        with pytest.raises(UniqueConstraintError) as exc_info:
            await User.create({'userId': 'abc'})
        assert exc_info.value.column == 'userId'

    @pytest.mark.asyncio
    async def test_inc_accumulates(self, db, user_schema):
        User = await db.define('User', user_schema)
        await User.create({'userId': 'abc'})

        await User.update({'userId': 'abc'}, {'$inc': {'wallet': 5}})
        await User.update({'userId': 'abc'}, {'$inc': {'wallet': 5}})

        assert (await User.find_one({'userId': 'abc'}))['wallet'] == 10

    @pytest.mark.asyncio
    async def test_validation_fails_before_any_write(self, db, user_schema):
        User = await db.define('User', user_schema)

        with pytest.raises(ValidationError) as exc_info:
            await User.create({'wallet': 3})
        assert exc_info.value.field == 'userId'
        assert await User.count() == 0


class TestDefine:
    """Test model registration and table materialization."""

    @pytest.mark.asyncio
    async def test_table_name_is_lower_cased(self, db, user_schema):
        User = await db.define('User', user_schema)
        assert User.table_name == 'user'
        assert db.model('User') is User

    @pytest.mark.asyncio
    async def test_redefine_returns_existing_model(self, db, user_schema):
        first = await db.define('User', user_schema)
        assert await db.define('User', user_schema) is first

        with pytest.raises(SchemaError):
            await db.define('User', Schema({'other': 'STRING'}))

    @pytest.mark.asyncio
    async def test_undefined_model(self, db):
        with pytest.raises(UndefinedModelError):
            db.model('Ghost')
        with pytest.raises(KeyError):
            db.model('Ghost')

    @pytest.mark.asyncio
    async def test_ddl_is_idempotent(self, db_path, user_schema):
        """Materializing the same schema against an existing store changes nothing."""
        first = await connect(db_path)
        User = await first.define('User', user_schema)
        await User.create({'userId': 'abc'})
        before = await first.execute("SELECT name, sql FROM sqlite_master ORDER BY name")
        await first.close()

        second = await connect(db_path)
        try:
            same = Schema({
                'userId': {'type': 'STRING', 'required': True, 'unique': True},
                'wallet': {'type': 'NUMBER', 'default': 0},
            })
            again = await second.define('User', same)
            for statement in same.compile_ddl('user'):
                await second.execute(statement)

            after = await second.execute("SELECT name, sql FROM sqlite_master ORDER BY name")
            assert after.rows == before.rows
            assert await again.count() == 1
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_fields_frozen_after_define(self, db, user_schema):
        await db.define('User', user_schema)
        with pytest.raises(SchemaFrozenError):
            user_schema.add('email', 'STRING')

    @pytest.mark.asyncio
    async def test_closed_database(self, db, user_schema):
        User = await db.define('User', user_schema)
        await db.close()

        with pytest.raises(NotConnectedError):
            await User.create({'userId': 'late'})
        with pytest.raises(NotConnectedError):
            await db.define('Other', Schema({'a': 'STRING'}))


class TestFind:
    """Test conditions, options and cursors."""

    @pytest_asyncio.fixture
    async def people(self, db):
        model = await db.define('Person', Schema({
            'name': {'type': 'STRING', 'required': True},
            'age': 'NUMBER',
            'email': 'STRING',
        }))
        for name, age in [('Ada', 36), ('Bob', 17), ('Cy', 18), ('Dee', 52)]:
            await model.create({'name': name, 'age': age})
        return model

    @pytest.mark.asyncio
    async def test_gte_boundary(self, people):
        names = [p['name'] for p in await people.find({'age': {'gte': 18}})]
        assert 'Cy' in names
        assert 'Bob' not in names

    @pytest.mark.asyncio
    async def test_order_limit_offset(self, people):
        records = await people.find({}, {'orderBy': {'age': 'DESC'}, 'limit': 2, 'offset': 1})
        assert [r['name'] for r in records] == ['Ada', 'Cy']

    @pytest.mark.asyncio
    async def test_keyword_options(self, people):
        records = await people.find(order_by=[('name', -1)], limit=1)
        assert [r['name'] for r in records] == ['Dee']

    @pytest.mark.asyncio
    async def test_in_like_and_null(self, people):
        assert len(await people.find({'name': {'in': ['Ada', 'Cy', 'Zed']}})) == 2
        assert await people.find({'name': {'in': []}}) == []
        assert [r['name'] for r in await people.find({'name': {'like': 'e'}})] == ['Dee']
        assert len(await people.find({'email': None})) == 4

    @pytest.mark.asyncio
    async def test_cursor_is_lazy_and_single_pass(self, people, db):
        queries_before = db.get_stats()['pool_stats']['query_stats']['total_queries']
        cursor = people.find({'age': {'lt': 40}}, order_by={'age': 1})
        assert db.get_stats()['pool_stats']['query_stats']['total_queries'] == queries_before

        names = [record['name'] async for record in cursor]
        assert names == ['Bob', 'Cy', 'Ada']
        assert [record async for record in cursor] == []
        assert await cursor.first() is None

    @pytest.mark.asyncio
    async def test_find_one_and_by_id(self, people):
        assert await people.find_one({'name': 'Nobody'}) is None
        assert (await people.find_by_id(2))['name'] == 'Bob'

    @pytest.mark.asyncio
    async def test_count_and_exists(self, people):
        assert await people.count() == 4
        assert await people.count({'age': {'lt': 18}}) == 1
        assert await people.exists({'name': 'Ada'})
        assert not await people.exists({'name': 'Zed'})

    @pytest.mark.asyncio
    async def test_malformed_queries_fail_immediately(self, people):
        with pytest.raises(InvalidQueryError):
            people.find({'age': {'near': 3}})
        with pytest.raises(InvalidQueryError):
            people.find({'unknown': 1})
        with pytest.raises(InvalidQueryError):
            people.find({}, {'limit': -1})
        with pytest.raises(InvalidQueryError):
            people.find({}, {'orderBy': {'age': 'UP'}})
        with pytest.raises(InvalidQueryError):
            people.find({}, {'bogus': True})


class TestUpdateDelete:
    """Test update specs, hooks and deletes."""

    @pytest_asyncio.fixture
    async def counters(self, db):
        model = await db.define('Counter', Schema({
            'name': {'type': 'STRING', 'unique': True},
            'n': {'type': 'NUMBER', 'default': 0},
            'note': 'STRING',
        }))
        await model.create({'name': 'a', 'note': 'x'})
        await model.create({'name': 'b', 'note': 'y'})
        return model

    @pytest.mark.asyncio
    async def test_operator_update(self, counters):
        changed = await counters.update({'name': 'a'}, {'$inc': {'n': 2}, '$set': {'note': 'z'}, '$unset': ['name']})
        assert changed == 1

        record = await counters.find_by_id(1)
        assert record == {'id': 1, 'name': None, 'n': 2, 'note': 'z'}

    @pytest.mark.asyncio
    async def test_replace_update_matches_all_when_condition_empty(self, counters):
        assert await counters.update({}, {'note': 'same'}) == 2
        assert {r['note'] for r in await counters.find()} == {'same'}

    @pytest.mark.asyncio
    async def test_zero_rows_is_not_an_error(self, counters):
        assert await counters.update({'name': 'zzz'}, {'$inc': {'n': 1}}) == 0
        assert await counters.delete({'name': 'zzz'}) == 0

    @pytest.mark.asyncio
    async def test_invalid_updates(self, counters):
        with pytest.raises(InvalidUpdateError):
            await counters.update({}, {})
        with pytest.raises(InvalidUpdateError):
            await counters.update({}, {'$set': {'n': 1}, 'note': 'x'})
        with pytest.raises(InvalidUpdateError):
            await counters.update({}, {'$set': {'missing': 1}})

    @pytest.mark.asyncio
    async def test_update_hooks_see_raw_and_applied_spec(self, db):
        schema = Schema({'name': 'STRING', 'updatedBy': 'STRING'})
        seen = []

        def stamp(spec):
            spec.setdefault('$set', {})['updatedBy'] = 'hook'

        schema.pre('update', stamp)
        schema.post('update', lambda spec: seen.append(spec))
        items = await db.define('Item', schema)
        await items.create({'name': 'a'})

        raw = {'$set': {'name': 'b'}}
        await items.update({'name': 'a'}, raw)

        assert raw == {'$set': {'name': 'b'}}
        assert seen == [{'$set': {'name': 'b', 'updatedBy': 'hook'}}]
        assert (await items.find_by_id(1))['updatedBy'] == 'hook'

    @pytest.mark.asyncio
    async def test_delete(self, counters):
        assert await counters.delete({'name': 'a'}) == 1
        assert await counters.count() == 1
        assert await counters.delete() == 1
        assert await counters.count() == 0


class TestHooksAndCodecs:
    """Test save hooks and structured field round trips."""

    @pytest.mark.asyncio
    async def test_round_trip_through_codec(self, db):
        schema = Schema({
            'title': {'type': 'STRING', 'required': True},
            'tags': {'type': 'JSON', 'default': list},
            'meta': 'JSON',
            'published': 'BOOLEAN',
            'createdAt': 'DATE',
        })
        schema.codec('tags', *json_codec)
        schema.codec('meta')
        posts = await db.define('Post', schema)

        record = {
            'title': 'Hello',
            'tags': ['a', 'b'],
            'meta': {'views': 3, 'nested': {'ok': True}},
            'published': True,
            'createdAt': datetime(2024, 5, 1, 12, 30),
        }
        created = await posts.create(record)
        assert created['tags'] == ['a', 'b']

        found = await posts.find_by_id(created['id'])
        assert found == {'id': created['id'], **record}

        raw = await db.execute('SELECT tags FROM "post" WHERE id = ?', (created['id'],))
        assert raw.rows[0]['tags'] == '["a", "b"]'

    @pytest.mark.asyncio
    async def test_codec_applies_to_set_updates(self, db):
        schema = Schema({'meta': 'JSON'})
        schema.codec('meta')
        docs = await db.define('Doc', schema)
        created = await docs.create({'meta': {'v': 1}})

        await docs.update({'id': created['id']}, {'$set': {'meta': {'v': 2}}})
        assert (await docs.find_by_id(created['id']))['meta'] == {'v': 2}

    @pytest.mark.asyncio
    async def test_pre_save_hooks_in_order_and_unknown_fields_dropped(self, db):
        schema = Schema({'slug': 'STRING', 'title': 'STRING'})

        async def slugify(record):
            record['slug'] = record['title'].lower()

        schema.pre('save', slugify)
        schema.pre('save', lambda record: {**record, 'slug': record['slug'] + '-1'})
        pages = await db.define('Page', schema)

        created = await pages.create({'title': 'Home', 'extra': 'dropped'})
        assert created == {'id': 1, 'slug': 'home-1', 'title': 'Home'}

    @pytest.mark.asyncio
    async def test_failing_pre_hook_aborts_write(self, db):
        schema = Schema({'title': 'STRING'})

        def reject(record):
            raise PermissionError("read only")

        schema.pre('save', reject)
        pages = await db.define('Page', schema)

        with pytest.raises(PermissionError):
            await pages.create({'title': 'x'})
        assert await pages.count() == 0

    @pytest.mark.asyncio
    async def test_validator(self, db):
        items = await db.define('Item', Schema({
            'qty': FieldDefinition(type='NUMBER', validate=lambda v: v > 0),
        }))
        with pytest.raises(ValidationError):
            await items.create({'qty': 0})
        assert (await items.create({'qty': 2}))['qty'] == 2

    @pytest.mark.asyncio
    async def test_structured_value_without_codec_is_rejected_by_storage(self, db):
        docs = await db.define('Doc', Schema({'name': 'STRING', 'data': 'JSON'}))
        await docs.create({'name': 'kept'})
        closed_before = db.get_stats()['pool_stats']['stats']['connections_closed']

        with pytest.raises(StorageError):
            await docs.create({'name': 'x', 'data': {'a': 1}})

        assert [doc['name'] for doc in await docs.find()] == ['kept']
        assert db.get_stats()['pool_stats']['stats']['connections_closed'] == closed_before

    @pytest.mark.asyncio
    async def test_structured_value_without_codec_in_memory(self):
        database = await connect({'path': ':memory:', 'pool_size': 1})
        try:
            docs = await database.define('Doc', Schema({'name': 'STRING', 'data': 'JSON'}))
            await docs.create({'name': 'kept'})

            with pytest.raises(StorageError):
                await docs.create({'name': 'x', 'data': {'a': 1}})

            assert database.pool.size == 1
            assert [doc['name'] for doc in await docs.find()] == ['kept']
        finally:
            await database.close()


class TestPopulate:
    """Test reference population."""

    @pytest.mark.asyncio
    async def test_populate_references(self, db):
        authors = await db.define('Author', Schema({'name': 'STRING', 'active': 'BOOLEAN'}))
        books = await db.define('Book', Schema({
            'title': 'STRING',
            'author': {'type': 'NUMBER', 'ref': 'author'},
        }))

        ada = await authors.create({'name': 'Ada', 'active': True})
        await books.create({'title': 'Notes', 'author': ada['id']})
        await books.create({'title': 'Orphan', 'author': 999})
        await books.create({'title': 'Anonymous'})

        found = await books.find({}, {'populate': ['author'], 'orderBy': {'id': 'ASC'}})

        assert found[0]['author'] == {'id': ada['id'], 'name': 'Ada', 'active': True}
        assert found[1]['author'] is None
        assert found[2]['author'] is None

    @pytest.mark.asyncio
    async def test_populate_non_reference(self, db):
        books = await db.define('Book', Schema({'title': 'STRING'}))
        with pytest.raises(InvalidQueryError):
            books.find({}, populate='title')


class TestBatchAndDiagnostics:
    """Test create_many, stats and health checks."""

    @pytest.mark.asyncio
    async def test_create_many_is_atomic(self, db, user_schema):
        User = await db.define('User', user_schema)

        created = await User.create_many([{'userId': 'a'}, {'userId': 'b'}])
        assert [u['id'] for u in created] == [1, 2]

        with pytest.raises(UniqueConstraintError):
            await User.create_many([{'userId': 'c'}, {'userId': 'a'}])
        assert await User.count() == 2

    @pytest.mark.asyncio
    async def test_health_and_stats(self, db, user_schema):
        User = await db.define('User', user_schema)
        await User.create({'userId': 'abc'})

        health = await db.health_check()
        assert health['status'] == 'healthy'
        assert health['models'] == ['User']

        stats = User.get_performance_stats()
        assert stats['records_created'] == 1
        assert stats['queries_executed'] >= 2

        assert (await User.health_check())['record_count'] == 1

    @pytest.mark.asyncio
    async def test_async_context_manager(self, db_path):
        async with await Database.connect(db_path) as database:
            assert database.is_connected
        assert not database.is_connected

    @pytest.mark.asyncio
    async def test_in_memory_database_shared_across_pool(self):
        database = await connect(':memory:')
        try:
            notes = await database.define('Note', Schema({'text': 'STRING'}))
            await notes.create({'text': 'kept'})

            async with database.pool.connection() as first:
                async with database.pool.connection() as second:
                    assert second is not first
                    result = await second.execute('SELECT COUNT(*) AS n FROM "note"')
            assert result.rows[0]['n'] == 1
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_in_memory_database_survives_discarded_connection(self):
        database = await connect({'path': ':memory:', 'pool_size': 1})
        try:
            notes = await database.define('Note', Schema({'text': 'STRING'}))
            await notes.create({'text': 'kept'})

            conn = await database.pool.acquire()
            await database.pool.release(conn, discard=True)
            assert database.pool.size == 0

            assert await notes.count() == 1
            assert (await notes.find_one({}))['text'] == 'kept'
        finally:
            await database.close()
