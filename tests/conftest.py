"""Shared fixtures for sqlmongoose tests."""

import pytest
import pytest_asyncio

from sqlmongoose import Schema, connect
from sqlmongoose.config import DatabaseSettings
from sqlmongoose.core import ConnectionPool, make_connector


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite file inside the test's temporary directory."""
    return str(tmp_path / 'test.db')


@pytest_asyncio.fixture
async def db(db_path):
    """Connected file-backed Database, closed after the test."""
    database = await connect({'path': db_path, 'pool_size': 3, 'acquire_timeout': 2.0})
    yield database
    await database.close()


@pytest_asyncio.fixture
async def pool(db_path):
    """Bare connection pool with two slots."""
    connection_pool = ConnectionPool(make_connector(DatabaseSettings(path=db_path)), max_size=2, timeout=1.0)
    yield connection_pool
    await connection_pool.drain()


@pytest.fixture
def user_schema():
    """Schema with a unique required key and a defaulted number."""
    return Schema({
        'userId': {'type': 'STRING', 'required': True, 'unique': True},
        'wallet': {'type': 'NUMBER', 'default': 0},
    })
