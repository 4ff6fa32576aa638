# ========================
# src/pipeline/sink.py
# ========================

"""
Bulk-Load Sink

Relays the raw bytes of each archive member into PostgreSQL with
COPY ... FROM STDIN. Rows are never parsed here: the server reads the CSV
header and rows itself.

Every member gets its own COPY on its own pooled connection, in its own
transaction. A member that fails leaves nothing behind, but members that
finished earlier in the same run stay committed. Loading the same archive
twice inserts every row twice.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterable, Iterable, Optional

import psycopg
from psycopg import sql
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from .errors import MemberLoadError, SinkConnectionError

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """What one COPY channel reported on finish."""
    member_name: str
    bytes_written: int
    rows_loaded: int


def build_copy_statement(table: str, columns: Iterable[str]) -> sql.Composed:
    """
    Build the COPY statement for a target table.

    Args:
        table (str): Table name, optionally schema qualified ("schema.table")
        columns (list): Column names in the order they appear in the CSV

    Returns:
        sql.Composed: COPY <table> (<columns>) FROM STDIN WITH (FORMAT csv, HEADER true)
    """
    columns = [column.strip() for column in columns if column.strip()]
    if not table or not table.strip():
        raise ValueError("A target table is required")
    if not columns:
        raise ValueError("At least one target column is required")

    table_identifier = sql.Identifier(*[part.strip() for part in table.split('.')])
    column_list = sql.SQL(', ').join(sql.Identifier(column) for column in columns)

    return sql.SQL("COPY {table} ({columns}) FROM STDIN WITH (FORMAT csv, HEADER true)").format(
        table=table_identifier,
        columns=column_list,
    )


class PostgresCopySink:
    """
    PostgreSQL sink backed by one connection pool per pipeline run.

    open() and close() bracket a run; load() can be called concurrently,
    each call borrowing its own connection from the pool.
    """

    def __init__(self,
                 conninfo: str,
                 table: str,
                 columns: Iterable[str],
                 min_size: int = 1,
                 max_size: int = 10,
                 timeout: float = 30.0):
        """
        Initialize the sink.

        Args:
            conninfo (str): libpq connection string
            table (str): Target table
            columns (list): Target columns, in CSV order
            min_size (int): Connections opened up front
            max_size (int): Upper bound on concurrently loading members
            timeout (float): Seconds to wait for a connection
        """
        self.conninfo = conninfo
        self.table = table
        self.columns = list(columns)
        self.min_size = min_size
        self.max_size = max(max_size, min_size)
        self.timeout = timeout
        self.copy_statement = build_copy_statement(table, self.columns)
        self._pool: Optional[AsyncConnectionPool] = None
        self.open_count = 0
        self.close_count = 0

    @classmethod
    def from_config(cls, config) -> 'PostgresCopySink':
        """Build a sink from the PG_* and TARGET_* settings of a Config."""
        return cls(
            conninfo=config.postgres_conninfo(),
            table=config.TARGET_TABLE,
            columns=config.target_columns,
            max_size=int(config.PG_POOL_MAX_SIZE),
            timeout=float(config.PG_CONNECT_TIMEOUT),
        )

    def _create_pool(self) -> AsyncConnectionPool:
        return AsyncConnectionPool(
            self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={'autocommit': True},
            open=False,
            name="archive-ingest",
        )

    async def open(self) -> None:
        """
        Open the connection pool and wait until it can serve connections.

        Raises:
            SinkConnectionError: If the database is unreachable
        """
        if self._pool is not None:
            raise RuntimeError("Sink is already open")

        self.open_count += 1
        self._pool = self._create_pool()
        try:
            await self._pool.open(wait=True, timeout=self.timeout)
        except (psycopg.Error, PoolTimeout) as e:
            logger.error(f"Could not connect to PostgreSQL: {e}")
            raise SinkConnectionError(f"Could not connect to PostgreSQL: {e}") from e

        logger.info(f"PostgreSQL pool opened (max {self.max_size} connections) for table '{self.table}'")

    async def load(self, member_name: str, chunks: AsyncIterable[bytes]) -> LoadResult:
        """
        Stream one member into the target table.

        Args:
            member_name (str): Archive member being loaded, for logs and errors
            chunks: Async iterable of raw CSV bytes, header line first

        Returns:
            LoadResult: Bytes relayed and rows reported by the server

        Raises:
            MemberLoadError: If the server rejects the data or the connection drops
        """
        if self._pool is None:
            raise RuntimeError("Sink is not open")

        bytes_written = 0
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cursor:
                    async with cursor.copy(self.copy_statement) as copy:
                        async for chunk in chunks:
                            await copy.write(chunk)
                            bytes_written += len(chunk)
                    rows_loaded = cursor.rowcount
        except (psycopg.Error, PoolTimeout) as e:
            logger.error(f"COPY of '{member_name}' failed after {bytes_written:,} bytes: {e}")
            raise MemberLoadError(member_name, str(e), e) from e

        logger.info(f"Loaded '{member_name}': {rows_loaded:,} rows, {bytes_written:,} bytes")
        return LoadResult(member_name=member_name, bytes_written=bytes_written, rows_loaded=rows_loaded)

    async def close(self) -> None:
        """Close the pool. Safe to call when open() failed or never ran."""
        self.close_count += 1
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("PostgreSQL pool closed")
