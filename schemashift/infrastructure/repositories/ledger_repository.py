"""PostgreSQL-backed migration ledger."""

from typing import Any, List, Sequence
import logging

from psycopg2.extras import RealDictCursor

from schemashift.domain.entities.migration import LedgerEntry
from schemashift.domain.repositories.interfaces import IMigrationLedger
from schemashift.infrastructure.database.inspector import LEDGER_TABLE

logger = logging.getLogger(__name__)


class PostgresMigrationLedger(IMigrationLedger):
    """
    Stores one row per executed migration in ``schema_migrations``.
    Single Responsibility: Ledger persistence.

    Successful rows are never overwritten; a re-run only replaces a failed row.
    """

    def __init__(self, pool: Any, table: str = LEDGER_TABLE):
        self._pool = pool
        self._table = table

    def ensure_table(self) -> None:
        query = f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                version VARCHAR(255) PRIMARY KEY,
                executed_at TIMESTAMPTZ NOT NULL,
                success BOOLEAN NOT NULL,
                execution_time_ms INTEGER
            )
        """
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query)
            conn.commit()

    def entries(self) -> List[LedgerEntry]:
        query = f"""
            SELECT version, executed_at, success, execution_time_ms
            FROM {self._table}
            ORDER BY executed_at, version
        """
        with self._pool.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query)
                rows = cur.fetchall()
        return [
            LedgerEntry(
                version=row['version'],
                executed_at=row['executed_at'],
                success=row['success'],
                execution_time_ms=row['execution_time_ms'],
            )
            for row in rows
        ]

    def record(self, connection: Any, entry: LedgerEntry) -> None:
        query = f"""
            INSERT INTO {self._table} (version, executed_at, success, execution_time_ms)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (version) DO UPDATE
                SET executed_at = EXCLUDED.executed_at,
                    success = EXCLUDED.success,
                    execution_time_ms = EXCLUDED.execution_time_ms
                WHERE {self._table}.success = FALSE
        """
        with connection.cursor() as cur:
            cur.execute(query, (entry.version, entry.executed_at, entry.success, entry.execution_time_ms))
        logger.debug(f"[PostgresMigrationLedger] Recorded {entry.version} (success={entry.success})")

    def delete(self, connection: Any, version: str) -> None:
        with connection.cursor() as cur:
            cur.execute(f"DELETE FROM {self._table} WHERE version = %s", (version,))

    def reset(self, connection: Any) -> None:
        with connection.cursor() as cur:
            cur.execute(f"DELETE FROM {self._table}")

    def replace(self, connection: Any, versions: Sequence[str], entry: LedgerEntry) -> None:
        with connection.cursor() as cur:
            cur.execute(f"DELETE FROM {self._table} WHERE version = ANY(%s)", (list(versions),))
        self.record(connection, entry)
