# ========================
# tests/test_sink.py
# ========================

import unittest
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import psycopg
from psycopg import sql
from psycopg_pool import PoolTimeout

from src.pipeline.errors import MemberLoadError, SinkConnectionError
from src.pipeline.sink import PostgresCopySink, build_copy_statement
from src.utils.config import Config

COLUMNS = ['id', 'column1', 'column2', 'column3']


class _FakeCopy:

    def __init__(self, cursor):
        self.cursor = cursor

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None and self.cursor.fail_on_finish:
            raise self.cursor.fail_on_finish
        # The server reports rows once COPY ends
        self.cursor.rowcount = b''.join(self.cursor.written).count(b'\n') - 1
        return False

    async def write(self, data):
        self.cursor.written.append(bytes(data))


class _FakeCursor:

    def __init__(self, fail_on_finish=None):
        self.fail_on_finish = fail_on_finish
        self.statements = []
        self.written = []
        self.rowcount = -1

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def copy(self, statement):
        self.statements.append(statement)
        return _FakeCopy(self)


class _FakeConnection:

    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor


class _FakeConnectionContext:

    def __init__(self, pool):
        self.pool = pool

    async def __aenter__(self):
        self.pool.borrowed += 1
        return _FakeConnection(self.pool.cursor)

    async def __aexit__(self, exc_type, exc, tb):
        self.pool.returned += 1
        return False


class _FakePool:

    def __init__(self, cursor):
        self.cursor = cursor
        self.borrowed = 0
        self.returned = 0
        self.close = AsyncMock()

    def connection(self):
        return _FakeConnectionContext(self)


async def chunks(*parts):
    for part in parts:
        yield part


class TestCopyStatement(unittest.TestCase):

    def test_schema_qualified_table(self):
        statement = build_copy_statement('staging.items', COLUMNS)

        self.assertIsInstance(statement, sql.Composed)
        self.assertIn(sql.Identifier('staging', 'items'), statement.seq)
        self.assertIn(sql.SQL(', ').join(sql.Identifier(column) for column in COLUMNS), statement.seq)

    def test_csv_with_header(self):
        statement = build_copy_statement('items', COLUMNS)

        self.assertIn(sql.SQL(') FROM STDIN WITH (FORMAT csv, HEADER true)'), statement.seq)

    def test_requires_table_and_columns(self):
        with self.assertRaises(ValueError):
            build_copy_statement('', COLUMNS)
        with self.assertRaises(ValueError):
            build_copy_statement('items', [' ', ''])


class TestPostgresCopySink(unittest.IsolatedAsyncioTestCase):
    """Test the COPY sink against a fake connection pool."""

    def setUp(self):
        self.sink = PostgresCopySink("host=localhost dbname=warehouse", "items", COLUMNS)

    def _attach_pool(self, cursor):
        pool = _FakePool(cursor)
        self.sink._pool = pool
        return pool

    async def test_load_streams_raw_bytes(self):
        cursor = _FakeCursor()
        pool = self._attach_pool(cursor)

        result = await self.sink.load('data_1.csv', chunks(
            b"id,column1,column2,column3\n",
            b"1_1,0.1,0.2,0.3\n1_2,0.4,",
            b"0.5,0.6\n",
        ))

        self.assertEqual(result.member_name, 'data_1.csv')
        self.assertEqual(result.rows_loaded, 2)
        self.assertEqual(result.bytes_written, 59)
        self.assertEqual(cursor.statements, [self.sink.copy_statement])
        self.assertEqual(b''.join(cursor.written).count(b'\n'), 3)
        self.assertEqual((pool.borrowed, pool.returned), (1, 1))

    async def test_rejected_data_raises_member_load_error(self):
        error = psycopg.errors.InvalidTextRepresentation("invalid input syntax for type double precision")
        pool = self._attach_pool(_FakeCursor(fail_on_finish=error))

        with self.assertRaises(MemberLoadError) as context:
            await self.sink.load('data_2.csv', chunks(b"id,column1,column2,column3\n2_1,x,1,2\n"))

        self.assertEqual(context.exception.member_name, 'data_2.csv')
        self.assertIs(context.exception.cause, error)
        self.assertIn("invalid input syntax", str(context.exception))
        self.assertEqual(pool.returned, 1)

    async def test_pool_exhaustion_raises_member_load_error(self):
        pool = MagicMock()
        pool.connection.side_effect = PoolTimeout("couldn't get a connection after 30.00 sec")
        self.sink._pool = pool

        with self.assertRaises(MemberLoadError):
            await self.sink.load('data_3.csv', chunks(b"id\n"))

    async def test_load_requires_open_sink(self):
        with self.assertRaises(RuntimeError):
            await self.sink.load('data_1.csv', chunks(b""))

    @patch('src.pipeline.sink.AsyncConnectionPool')
    async def test_open_and_close(self, pool_class):
        pool = pool_class.return_value
        pool.open = AsyncMock()
        pool.close = AsyncMock()

        await self.sink.open()
        await self.sink.close()
        await self.sink.close()

        pool_class.assert_called_once()
        self.assertEqual(pool_class.call_args.kwargs['kwargs'], {'autocommit': True})
        self.assertFalse(pool_class.call_args.kwargs['open'])
        pool.open.assert_awaited_once()
        pool.close.assert_awaited_once()
        self.assertEqual(self.sink.open_count, 1)
        self.assertEqual(self.sink.close_count, 2)

    @patch('src.pipeline.sink.AsyncConnectionPool')
    async def test_open_failure(self, pool_class):
        pool = pool_class.return_value
        pool.open = AsyncMock(side_effect=PoolTimeout("pool initialization incomplete after 30.0 sec"))
        pool.close = AsyncMock()

        with self.assertRaises(SinkConnectionError):
            await self.sink.open()

        # The pool was created, so close still has something to release
        await self.sink.close()
        pool.close.assert_awaited_once()

    @patch('src.pipeline.sink.AsyncConnectionPool')
    async def test_open_twice(self, pool_class):
        pool_class.return_value.open = AsyncMock()

        await self.sink.open()
        with self.assertRaises(RuntimeError):
            await self.sink.open()

    async def test_close_before_open(self):
        await self.sink.close()
        self.assertEqual(self.sink.close_count, 1)

    def test_from_config(self):
        config = Config({
            'PG_HOST': 'db.internal',
            'PG_PORT': 5433,
            'PG_DATABASE': 'warehouse',
            'PG_USERNAME': 'loader',
            'PG_PASSWORD': 'secret',
            'PG_POOL_MAX_SIZE': 4,
            'TARGET_TABLE': 'staging.items',
            'TARGET_COLUMNS': 'id, column1,column2 ,column3',
        })

        sink = PostgresCopySink.from_config(config)

        self.assertEqual(sink.table, 'staging.items')
        self.assertEqual(sink.columns, COLUMNS)
        self.assertEqual(sink.max_size, 4)
        self.assertIn('host=db.internal', sink.conninfo)
        self.assertIn('port=5433', sink.conninfo)


if __name__ == '__main__':
    unittest.main()
