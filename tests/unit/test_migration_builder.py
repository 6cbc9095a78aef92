"""Unit tests for MigrationBuilder."""

import unittest

from schemashift.domain.entities.errors import DiffAmbiguityError
from schemashift.domain.entities.operations import (
    AddColumn, AddForeignKey, AddIndex, CreateTable, DropColumn, ModifyColumn, RenameCandidate, RenameColumn
)
from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SqlType, TableSnapshot
)
from schemashift.domain.services.migration_builder import MigrationBuilder, render_type
from tests.fixtures.test_data import TestDataFactory


class TestMigrationBuilder(unittest.TestCase):
    """Test SQL rendering and inversion."""

    def setUp(self):
        self.builder = MigrationBuilder()

    def test_add_column_sql_and_rollback(self):
        ops = [AddColumn(table="users", column=TestDataFactory.email_column())]

        self.assertEqual(
            self.builder.build_migration(ops),
            ["ALTER TABLE users ADD COLUMN email VARCHAR(255) NOT NULL"],
        )
        self.assertEqual(
            self.builder.build_rollback(ops),
            ["ALTER TABLE users DROP COLUMN email"],
        )

    def test_create_table_inlines_single_primary_key(self):
        ops = [CreateTable(table="users", definition=TestDataFactory.users_table())]
        self.assertEqual(self.builder.build_migration(ops), [
            "CREATE TABLE users (id INTEGER GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY, "
            "name VARCHAR(100) NOT NULL)"
        ])
        self.assertEqual(self.builder.build_rollback(ops), ["DROP TABLE users"])

    def test_create_table_with_composite_primary_key(self):
        table = TableSnapshot(name="memberships", columns=[
            ColumnDefinition("user_id", SqlType.INTEGER, nullable=False, primary_key=True),
            ColumnDefinition("group_id", SqlType.INTEGER, nullable=False, primary_key=True),
        ])
        sql = self.builder.build_migration([CreateTable(table="memberships", definition=table)])
        self.assertEqual(sql, [
            "CREATE TABLE memberships (user_id INTEGER NOT NULL, group_id INTEGER NOT NULL, "
            "PRIMARY KEY (user_id, group_id))"
        ])

    def test_enum_column_creates_and_drops_its_type(self):
        status = ColumnDefinition(
            "status", SqlType.ENUM, nullable=False, default="'active'", enum_values=("active", "banned")
        )
        ops = [AddColumn(table="users", column=status)]

        self.assertEqual(self.builder.build_migration(ops), [
            "CREATE TYPE users_status_enum AS ENUM ('active', 'banned')",
            "ALTER TABLE users ADD COLUMN status users_status_enum NOT NULL DEFAULT 'active'",
        ])
        self.assertEqual(self.builder.build_rollback(ops), [
            "ALTER TABLE users DROP COLUMN status",
            "DROP TYPE users_status_enum",
        ])

    def test_modify_column_renders_one_alter_statement(self):
        old = ColumnDefinition("name", SqlType.VARCHAR, size=100, nullable=False)
        new = ColumnDefinition("name", SqlType.VARCHAR, size=50, nullable=True)
        ops = [ModifyColumn(table="users", old=old, new=new, lossy=True)]

        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE users ALTER COLUMN name TYPE VARCHAR(50), ALTER COLUMN name DROP NOT NULL"
        ])
        self.assertEqual(self.builder.build_rollback(ops), [
            "ALTER TABLE users ALTER COLUMN name TYPE VARCHAR(100), ALTER COLUMN name SET NOT NULL"
        ])

    def test_type_change_uses_cast(self):
        ops = [ModifyColumn(
            table="t", old=ColumnDefinition("n", SqlType.INTEGER), new=ColumnDefinition("n", SqlType.BIGINT)
        )]
        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE t ALTER COLUMN n TYPE BIGINT USING n::BIGINT"
        ])

    def test_enum_change_drops_default_around_type_swap(self):
        old = ColumnDefinition("role", SqlType.ENUM, enum_values=("admin", "member"), default="'member'")
        new = ColumnDefinition("role", SqlType.ENUM, enum_values=("admin", "member", "guest"), default="'member'")
        ops = [ModifyColumn(table="users", old=old, new=new)]

        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TYPE users_role_enum RENAME TO users_role_enum_old",
            "CREATE TYPE users_role_enum AS ENUM ('admin', 'member', 'guest')",
            "ALTER TABLE users ALTER COLUMN role DROP DEFAULT",
            "ALTER TABLE users ALTER COLUMN role TYPE users_role_enum USING role::text::users_role_enum, "
            "ALTER COLUMN role SET DEFAULT 'member'",
            "DROP TYPE users_role_enum_old",
        ])
        rollback = self.builder.build_rollback(ops)
        self.assertIn("ALTER TABLE users ALTER COLUMN role DROP DEFAULT", rollback)
        self.assertTrue(rollback[3].endswith("ALTER COLUMN role SET DEFAULT 'member'"))

    def test_type_change_dropping_default_emits_single_drop(self):
        ops = [ModifyColumn(
            table="t",
            old=ColumnDefinition("n", SqlType.VARCHAR, size=10, default="'0'"),
            new=ColumnDefinition("n", SqlType.INTEGER),
        )]
        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE t ALTER COLUMN n DROP DEFAULT",
            "ALTER TABLE t ALTER COLUMN n TYPE INTEGER USING n::INTEGER",
        ])

    def test_default_only_change_stays_in_one_statement(self):
        ops = [ModifyColumn(
            table="t",
            old=ColumnDefinition("n", SqlType.INTEGER, default="0"),
            new=ColumnDefinition("n", SqlType.INTEGER, default="1"),
        )]
        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE t ALTER COLUMN n SET DEFAULT 1"
        ])

    def test_unique_change_adds_named_constraint(self):
        ops = [ModifyColumn(
            table="users",
            old=ColumnDefinition("email", SqlType.TEXT),
            new=ColumnDefinition("email", SqlType.TEXT, unique=True),
        )]
        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE users ADD CONSTRAINT users_email_key UNIQUE (email)"
        ])
        self.assertEqual(self.builder.build_rollback(ops), [
            "ALTER TABLE users DROP CONSTRAINT users_email_key"
        ])

    def test_rename_column_round_trip(self):
        ops = [RenameColumn(table="users", old_name="mail", new_name="email")]
        self.assertEqual(self.builder.build_migration(ops), ["ALTER TABLE users RENAME COLUMN mail TO email"])
        self.assertEqual(self.builder.build_rollback(ops), ["ALTER TABLE users RENAME COLUMN email TO mail"])

    def test_enum_rename_renames_type(self):
        ops = [RenameColumn(table="users", old_name="state", new_name="status", is_enum=True)]
        self.assertEqual(self.builder.build_migration(ops), [
            "ALTER TABLE users RENAME COLUMN state TO status",
            "ALTER TYPE users_state_enum RENAME TO users_status_enum",
        ])

    def test_index_and_foreign_key(self):
        fk = ForeignKeyDefinition("fk_posts_user_id", "user_id", "users", "id", on_delete="CASCADE")
        ops = [
            AddIndex(table="posts", index=IndexDefinition("idx_posts_user_id", ("user_id",))),
            AddForeignKey(table="posts", foreign_key=fk),
        ]
        self.assertEqual(self.builder.build_migration(ops), [
            "CREATE INDEX idx_posts_user_id ON posts (user_id)",
            "ALTER TABLE posts ADD CONSTRAINT fk_posts_user_id FOREIGN KEY (user_id) "
            "REFERENCES users (id) ON DELETE CASCADE",
        ])
        self.assertEqual(self.builder.build_rollback(ops), [
            "ALTER TABLE posts DROP CONSTRAINT fk_posts_user_id",
            "DROP INDEX idx_posts_user_id",
        ])

    def test_invert_drop_column_restores_definition(self):
        column = TestDataFactory.email_column()
        inverse = self.builder.invert(DropColumn(table="users", column=column))
        self.assertIsInstance(inverse, AddColumn)
        self.assertEqual(inverse.column, column)

    def test_rename_candidate_cannot_be_rendered(self):
        candidate = RenameCandidate(
            table="users",
            old=ColumnDefinition("mail", SqlType.TEXT),
            new=ColumnDefinition("email", SqlType.TEXT),
        )
        with self.assertRaises(DiffAmbiguityError):
            self.builder.build_migration([candidate])

    def test_render_type(self):
        self.assertEqual(render_type("t", ColumnDefinition("c", SqlType.DOUBLE)), "DOUBLE PRECISION")
        self.assertEqual(render_type("t", ColumnDefinition("c", SqlType.DECIMAL, size=10, scale=2)), "DECIMAL(10,2)")
        self.assertEqual(render_type("t", ColumnDefinition("c", SqlType.TIMESTAMPTZ)), "TIMESTAMPTZ")
        with self.assertRaises(ValueError):
            render_type("t", ColumnDefinition("c", SqlType.RELATION))


if __name__ == '__main__':
    unittest.main()
