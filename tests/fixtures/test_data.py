from datetime import datetime, timedelta, timezone
from typing import List

from schemashift.domain.entities.entity import EntityDefinition
from schemashift.domain.entities.migration import LedgerEntry, MigrationRecord, sql_migration
from schemashift.domain.entities.operations import AddColumn, CreateTable
from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SchemaSnapshot, SqlType, TableSnapshot
)

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def id_column() -> ColumnDefinition:
        return ColumnDefinition("id", SqlType.INTEGER, nullable=False, primary_key=True, auto_increment=True)

    @staticmethod
    def email_column() -> ColumnDefinition:
        return ColumnDefinition("email", SqlType.VARCHAR, size=255, nullable=False)

    @staticmethod
    def users_table(with_email: bool = False) -> TableSnapshot:
        columns = [
            TestDataFactory.id_column(),
            ColumnDefinition("name", SqlType.VARCHAR, size=100, nullable=False),
        ]
        if with_email:
            columns.append(TestDataFactory.email_column())
        return TableSnapshot(name="users", columns=columns)

    @staticmethod
    def posts_table() -> TableSnapshot:
        return TableSnapshot(
            name="posts",
            columns=[
                TestDataFactory.id_column(),
                ColumnDefinition("user_id", SqlType.INTEGER, nullable=False, foreign_key=True, references="users.id"),
                ColumnDefinition("title", SqlType.TEXT),
            ],
            indexes=[IndexDefinition("idx_posts_user_id", ("user_id",))],
            foreign_keys=[ForeignKeyDefinition("fk_posts_user_id", "user_id", "users", "id")],
        )

    @staticmethod
    def schema(*tables: TableSnapshot) -> SchemaSnapshot:
        return SchemaSnapshot.from_tables(tables)

    @staticmethod
    def user_entities(with_email: bool = False) -> List[EntityDefinition]:
        users = (
            EntityDefinition("users")
            .column("id", "integer", primary_key=True)
            .column("name", "varchar", size=100, nullable=False)
        )
        if with_email:
            users.column("email", "varchar", size=255, nullable=False)
        return [users]

    @staticmethod
    def create_users_migration(version: str = "001", **flags) -> MigrationRecord:
        table = TestDataFactory.users_table()
        return sql_migration(
            version,
            ["CREATE TABLE users (id INTEGER GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY, name VARCHAR(100) NOT NULL)"],
            ["DROP TABLE users"],
            name="create_users",
            operations=[CreateTable(table="users", definition=table)],
            **flags
        )

    @staticmethod
    def add_email_migration(version: str = "002", **flags) -> MigrationRecord:
        return sql_migration(
            version,
            ["ALTER TABLE users ADD COLUMN email VARCHAR(255) NOT NULL"],
            ["ALTER TABLE users DROP COLUMN email"],
            name="add_email",
            operations=[AddColumn(table="users", column=TestDataFactory.email_column())],
            **flags
        )

    @staticmethod
    def create_table_migration(version: str, table: str, **flags) -> MigrationRecord:
        definition = TableSnapshot(name=table, columns=[TestDataFactory.id_column()])
        return sql_migration(
            version,
            [f"CREATE TABLE {table} (id INTEGER GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY)"],
            [f"DROP TABLE {table}"],
            name=f"create_{table}",
            operations=[CreateTable(table=table, definition=definition)],
            **flags
        )

    @staticmethod
    def ledger_entry(version: str, minutes: int = 0, success: bool = True) -> LedgerEntry:
        return LedgerEntry(
            version=version,
            executed_at=EPOCH + timedelta(minutes=minutes),
            success=success,
            execution_time_ms=5,
        )
