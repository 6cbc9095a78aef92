"""Database introspection services."""
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from psycopg2.extras import RealDictCursor

from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SchemaSnapshot, SqlType, TableSnapshot
)
from schemashift.domain.repositories.interfaces import IDatabaseInspector

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"

_TYPE_MAP = {
    "smallint": SqlType.SMALLINT,
    "integer": SqlType.INTEGER,
    "bigint": SqlType.BIGINT,
    "boolean": SqlType.BOOLEAN,
    "numeric": SqlType.DECIMAL,
    "real": SqlType.REAL,
    "double precision": SqlType.DOUBLE,
    "character": SqlType.CHAR,
    "character varying": SqlType.VARCHAR,
    "text": SqlType.TEXT,
    "bytea": SqlType.BYTEA,
    "date": SqlType.DATE,
    "time without time zone": SqlType.TIME,
    "timestamp without time zone": SqlType.TIMESTAMP,
    "timestamp with time zone": SqlType.TIMESTAMPTZ,
    "json": SqlType.JSON,
    "jsonb": SqlType.JSONB,
    "uuid": SqlType.UUID,
}

_CAST_SUFFIX = re.compile(r"^(.*?)::[a-zA-Z_][a-zA-Z0-9_ ]*(\[\])?$", re.DOTALL)


def normalize_default(raw: Optional[str]) -> Optional[str]:
    """Strip PostgreSQL's trailing casts: ``'active'::character varying`` -> ``'active'``."""
    if raw is None:
        return None
    value = raw.strip()
    while True:
        match = _CAST_SUFFIX.match(value)
        if not match:
            break
        value = match.group(1).strip()
    if value.startswith("(") and value.endswith(")") and value.count("(") == 1:
        value = value[1:-1].strip()
    return value


class PostgresInspector(IDatabaseInspector):
    """
    PostgreSQL database inspector.
    Single Responsibility: Database introspection.
    """

    def __init__(self, pool: Any, schema: str = "public", excluded_tables: Sequence[str] = (LEDGER_TABLE,)):
        self._pool = pool
        self._schema = schema
        self._excluded = set(excluded_tables)

    def get_schema(self) -> SchemaSnapshot:
        """Introspect complete PostgreSQL schema."""
        with self._pool.connection() as conn:
            tables = [self._get_table(conn, name) for name in self._get_table_names(conn)]
        logger.info(f"[PostgresInspector] Introspected {len(tables)} tables in schema '{self._schema}'")
        return SchemaSnapshot.from_tables(tables)

    def list_enum_types(self) -> List[str]:
        query = """
            SELECT t.typname
            FROM pg_type t
            JOIN pg_namespace n ON n.oid = t.typnamespace
            WHERE t.typtype = 'e' AND n.nspname = %s
            ORDER BY t.typname
        """
        with self._pool.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, (self._schema,))
                return [row['typname'] for row in cur.fetchall()]

    def _get_table_names(self, conn) -> List[str]:
        """Get all tables in the schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
            AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema,))
            rows = cur.fetchall()
        return [
            row['table_name'] for row in rows
            if row['table_name'] not in self._excluded
        ]

    def _get_table(self, conn, table_name: str) -> TableSnapshot:
        key_columns = self._get_key_columns(conn, table_name)
        return TableSnapshot(
            name=table_name,
            columns=self._get_columns(conn, table_name, key_columns),
            indexes=self._get_indexes(conn, table_name),
            foreign_keys=self._get_foreign_keys(conn, table_name),
        )

    def _get_columns(self, conn, table_name: str, key_columns: Dict[str, set]) -> List[ColumnDefinition]:
        """Get columns for a table."""
        query = """
            SELECT
                column_name,
                data_type,
                udt_name,
                is_nullable,
                column_default,
                character_maximum_length,
                numeric_precision,
                numeric_scale,
                is_identity
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        columns = []
        for row in rows:
            sql_type, enum_values = self._map_type(conn, row)
            default = row['column_default']
            auto_increment = row['is_identity'] == 'YES'
            if default and default.startswith("nextval("):
                auto_increment, default = True, None

            size = scale = None
            if sql_type in (SqlType.CHAR, SqlType.VARCHAR):
                size = row['character_maximum_length']
            elif sql_type == SqlType.DECIMAL:
                size, scale = row['numeric_precision'], row['numeric_scale']

            name = row['column_name']
            is_primary = name in key_columns['primary']
            columns.append(ColumnDefinition(
                name=name,
                sql_type=sql_type,
                size=size,
                scale=scale,
                nullable=row['is_nullable'] == 'YES',
                unique=name in key_columns['unique'] and not is_primary,
                primary_key=is_primary,
                auto_increment=auto_increment,
                default=normalize_default(default),
                enum_values=enum_values,
            ))
        return columns

    def _map_type(self, conn, row: Dict[str, Any]) -> Tuple[SqlType, Tuple[str, ...]]:
        data_type = row['data_type']
        if data_type == 'USER-DEFINED':
            labels = self._get_enum_labels(conn, row['udt_name'])
            if labels:
                return SqlType.ENUM, labels
        if data_type in _TYPE_MAP:
            return _TYPE_MAP[data_type], ()
        logger.warning(f"[PostgresInspector] Unmapped type '{data_type}' for column {row['column_name']}, treating as text")
        return SqlType.TEXT, ()

    def _get_enum_labels(self, conn, type_name: str) -> Tuple[str, ...]:
        query = """
            SELECT e.enumlabel
            FROM pg_enum e
            JOIN pg_type t ON t.oid = e.enumtypid
            WHERE t.typname = %s
            ORDER BY e.enumsortorder
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (type_name,))
            return tuple(row['enumlabel'] for row in cur.fetchall())

    def _get_key_columns(self, conn, table_name: str) -> Dict[str, set]:
        """Single-column primary key and unique constraint columns."""
        query = """
            SELECT tc.constraint_name, tc.constraint_type, kcu.column_name
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            WHERE tc.table_schema = %s
                AND tc.table_name = %s
                AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        grouped: Dict[Tuple[str, str], List[str]] = {}
        for row in rows:
            grouped.setdefault((row['constraint_name'], row['constraint_type']), []).append(row['column_name'])

        keys = {'primary': set(), 'unique': set()}
        for (_, constraint_type), columns in grouped.items():
            if constraint_type == 'PRIMARY KEY':
                keys['primary'].update(columns)
            elif len(columns) == 1:
                keys['unique'].update(columns)
        return keys

    def _get_foreign_keys(self, conn, table_name: str) -> List[ForeignKeyDefinition]:
        """Get foreign keys for a table."""
        query = """
            SELECT
                tc.constraint_name,
                kcu.column_name,
                ccu.table_name AS referenced_table,
                ccu.column_name AS referenced_column,
                rc.update_rule,
                rc.delete_rule
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            JOIN information_schema.constraint_column_usage AS ccu
                ON ccu.constraint_name = tc.constraint_name
                AND ccu.constraint_schema = tc.table_schema
            JOIN information_schema.referential_constraints AS rc
                ON rc.constraint_name = tc.constraint_name
                AND rc.constraint_schema = tc.table_schema
            WHERE tc.constraint_type = 'FOREIGN KEY'
                AND tc.table_schema = %s
                AND tc.table_name = %s
            ORDER BY tc.constraint_name
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        return [
            ForeignKeyDefinition(
                name=row['constraint_name'],
                column=row['column_name'],
                referenced_table=row['referenced_table'],
                referenced_column=row['referenced_column'],
                on_update=row['update_rule'],
                on_delete=row['delete_rule']
            )
            for row in rows
        ]

    def _get_indexes(self, conn, table_name: str) -> List[IndexDefinition]:
        """Get indexes for a table, skipping those that back constraints."""
        query = """
            SELECT
                i.relname AS index_name,
                a.attname AS column_name,
                ix.indisunique AS is_unique
            FROM pg_class t
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_index ix ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
            WHERE n.nspname = %s
                AND t.relname = %s
                AND NOT EXISTS (SELECT 1 FROM pg_constraint c WHERE c.conindid = ix.indexrelid)
            ORDER BY i.relname, array_position(ix.indkey::int[], a.attnum::int)
        """
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        # Group by index name
        indexes_dict: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            data = indexes_dict.setdefault(row['index_name'], {'columns': [], 'unique': row['is_unique']})
            data['columns'].append(row['column_name'])

        return [
            IndexDefinition(name=name, columns=tuple(data['columns']), unique=data['unique'])
            for name, data in indexes_dict.items()
        ]
