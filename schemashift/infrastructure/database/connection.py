"""Connection pooling and explicit transaction scopes."""

from contextlib import contextmanager
from typing import Any, Iterator, Optional
import logging

from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thin handle over a psycopg2 ThreadedConnectionPool.
    Single Responsibility: Connection lifecycle.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[ThreadedConnectionPool] = None

    @property
    def max_size(self) -> int:
        return self._max_size

    def open(self) -> None:
        if self._pool is None:
            self._pool = ThreadedConnectionPool(self._min_size, self._max_size, dsn=self._dsn)
            logger.info(f"[ConnectionPool] Opened pool ({self._min_size}-{self._max_size} connections)")

    def getconn(self) -> Any:
        self.open()
        return self._pool.getconn()

    def putconn(self, connection: Any) -> None:
        if self._pool is not None:
            self._pool.putconn(connection)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Borrow a connection for the duration of the block; uncommitted work is discarded."""
        conn = self.getconn()
        try:
            yield conn
        finally:
            try:
                conn.rollback()
            finally:
                self.putconn(conn)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("[ConnectionPool] Closed pool")


class TransactionScope:
    """
    One transaction on one pooled connection.
    Guarantees commit or rollback on every exit path; the connection goes
    back to the pool on close.
    """

    def __init__(self, pool: Any):
        self._pool = pool
        self.connection = pool.getconn()
        self.connection.autocommit = False
        self._open = True

    def commit(self) -> None:
        if self._open:
            self.connection.commit()
            self._open = False

    def rollback(self) -> None:
        if self._open:
            self._open = False
            self.connection.rollback()

    def close(self) -> None:
        """Roll back anything uncommitted and return the connection."""
        try:
            self.rollback()
        finally:
            if self.connection is not None:
                self._pool.putconn(self.connection)
                self.connection = None

    def __enter__(self) -> "TransactionScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        finally:
            self.close()
