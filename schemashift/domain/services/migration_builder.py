from typing import List, Sequence
import logging

from schemashift.domain.entities.errors import DiffAmbiguityError
from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SqlType, TableSnapshot, TypeFamily
)
from schemashift.domain.entities.operations import (
    SchemaOperation, CreateTable, DropTable, AddColumn, DropColumn, ModifyColumn,
    RenameCandidate, RenameColumn, AddIndex, DropIndex, AddForeignKey, DropForeignKey
)
from schemashift.domain.services.diff_engine import is_lossy_change

logger = logging.getLogger(__name__)


def enum_type_name(table: str, column: str) -> str:
    """Name of the native enum type backing ``table.column``."""
    return f"{table}_{column}_enum"


def unique_constraint_name(table: str, column: str) -> str:
    return f"{table}_{column}_key"


def render_type(table: str, column: ColumnDefinition) -> str:
    """Render a column type in PostgreSQL syntax."""
    sql_type = column.sql_type
    if sql_type == SqlType.RELATION:
        raise ValueError(f"Unresolved relation column '{table}.{column.name}'")
    if sql_type == SqlType.ENUM:
        return enum_type_name(table, column.name)
    if sql_type in (SqlType.VARCHAR, SqlType.CHAR):
        base = sql_type.value.upper()
        return f"{base}({column.size})" if column.size else base
    if sql_type == SqlType.DECIMAL:
        if column.size and column.scale is not None:
            return f"DECIMAL({column.size},{column.scale})"
        if column.size:
            return f"DECIMAL({column.size})"
        return "DECIMAL"
    return sql_type.value.upper()


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class MigrationBuilder:
    """
    Renders schema operations to PostgreSQL DDL and computes their inverses.
    Single Responsibility: SQL generation only.
    """

    def build_migration(self, operations: Sequence[SchemaOperation]) -> List[str]:
        """Generate SQL statements from operations, in the given order."""
        sql_statements: List[str] = []
        for operation in operations:
            statements = self._generate_sql(operation)
            sql_statements.extend(statements)
            for sql in statements:
                logger.debug(f"[MigrationBuilder] Generated SQL: {sql}")
        logger.info(f"[MigrationBuilder] Rendered {len(operations)} operations into {len(sql_statements)} statements")
        return sql_statements

    def build_rollback(self, operations: Sequence[SchemaOperation]) -> List[str]:
        """SQL undoing ``operations``: inverses in reverse order."""
        return self.build_migration(self.invert_all(operations))

    def invert_all(self, operations: Sequence[SchemaOperation]) -> List[SchemaOperation]:
        return [self.invert(op) for op in reversed(list(operations))]

    def invert(self, operation: SchemaOperation) -> SchemaOperation:
        """Structural inverse of one operation, using the captured pre-change definitions."""
        table = operation.table
        if isinstance(operation, CreateTable):
            return DropTable(table=table, definition=operation.definition)
        if isinstance(operation, DropTable):
            return CreateTable(table=table, definition=operation.definition)
        if isinstance(operation, AddColumn):
            return DropColumn(table=table, column=operation.column)
        if isinstance(operation, DropColumn):
            return AddColumn(table=table, column=operation.column)
        if isinstance(operation, ModifyColumn):
            return ModifyColumn(
                table=table, old=operation.new, new=operation.old,
                lossy=is_lossy_change(operation.new, operation.old)
            )
        if isinstance(operation, RenameColumn):
            return RenameColumn(
                table=table, old_name=operation.new_name, new_name=operation.old_name,
                is_enum=operation.is_enum
            )
        if isinstance(operation, AddIndex):
            return DropIndex(table=table, index=operation.index)
        if isinstance(operation, DropIndex):
            return AddIndex(table=table, index=operation.index)
        if isinstance(operation, AddForeignKey):
            return DropForeignKey(table=table, foreign_key=operation.foreign_key)
        if isinstance(operation, DropForeignKey):
            return AddForeignKey(table=table, foreign_key=operation.foreign_key)
        if isinstance(operation, RenameCandidate):
            raise DiffAmbiguityError(
                f"Rename candidate {operation.key} has no decision", candidates=[operation.key]
            )
        raise TypeError(f"Unsupported operation: {operation!r}")

    def _generate_sql(self, operation: SchemaOperation) -> List[str]:
        """Generate SQL for a single operation."""
        generators = {
            CreateTable: self._gen_create_table,
            DropTable: self._gen_drop_table,
            AddColumn: self._gen_add_column,
            DropColumn: self._gen_drop_column,
            ModifyColumn: self._gen_modify_column,
            RenameColumn: self._gen_rename_column,
            AddIndex: self._gen_add_index,
            DropIndex: self._gen_drop_index,
            AddForeignKey: self._gen_add_foreign_key,
            DropForeignKey: self._gen_drop_foreign_key,
        }
        if isinstance(operation, RenameCandidate):
            raise DiffAmbiguityError(
                f"Rename candidate {operation.key} must be confirmed or rejected before rendering",
                candidates=[operation.key],
            )
        generator = generators.get(type(operation))
        if generator is None:
            raise TypeError(f"Unsupported operation: {operation!r}")
        return generator(operation)

    def column_sql(self, table: str, column: ColumnDefinition, inline_primary_key: bool = True) -> str:
        """Render ``name TYPE [constraints]``."""
        parts = [column.name, render_type(table, column)]
        if column.auto_increment and column.family == TypeFamily.INTEGER:
            parts.append("GENERATED BY DEFAULT AS IDENTITY")
        if inline_primary_key and column.primary_key:
            parts.append("PRIMARY KEY")
        elif not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {column.default}")
        if column.unique and not column.primary_key:
            parts.append("UNIQUE")
        return " ".join(parts)

    def _create_enum_types(self, table: str, columns: Sequence[ColumnDefinition]) -> List[str]:
        statements = []
        for column in columns:
            if column.sql_type == SqlType.ENUM:
                values = ", ".join(_quote_literal(v) for v in column.enum_values)
                statements.append(f"CREATE TYPE {enum_type_name(table, column.name)} AS ENUM ({values})")
        return statements

    def _drop_enum_types(self, table: str, columns: Sequence[ColumnDefinition]) -> List[str]:
        return [
            f"DROP TYPE {enum_type_name(table, column.name)}"
            for column in columns if column.sql_type == SqlType.ENUM
        ]

    def _gen_create_table(self, op: CreateTable) -> List[str]:
        """Generate CREATE TABLE statement, preceded by its enum types."""
        definition: TableSnapshot = op.definition
        pk_columns = definition.primary_key_columns()
        single_pk = len(pk_columns) == 1
        column_defs = [self.column_sql(op.table, c, inline_primary_key=single_pk) for c in definition.columns]
        if len(pk_columns) > 1:
            column_defs.append(f"PRIMARY KEY ({', '.join(pk_columns)})")
        statements = self._create_enum_types(op.table, definition.columns)
        statements.append(f"CREATE TABLE {op.table} ({', '.join(column_defs)})")
        return statements

    def _gen_drop_table(self, op: DropTable) -> List[str]:
        statements = [f"DROP TABLE {op.table}"]
        statements.extend(self._drop_enum_types(op.table, op.definition.columns))
        return statements

    def _gen_add_column(self, op: AddColumn) -> List[str]:
        """Generate ALTER TABLE ADD COLUMN statement."""
        statements = self._create_enum_types(op.table, [op.column])
        statements.append(f"ALTER TABLE {op.table} ADD COLUMN {self.column_sql(op.table, op.column)}")
        return statements

    def _gen_drop_column(self, op: DropColumn) -> List[str]:
        statements = [f"ALTER TABLE {op.table} DROP COLUMN {op.column.name}"]
        statements.extend(self._drop_enum_types(op.table, [op.column]))
        return statements

    def _gen_modify_column(self, op: ModifyColumn) -> List[str]:
        """Generate a single ALTER TABLE ... ALTER COLUMN statement plus enum/unique bookkeeping."""
        old, new = op.old, op.new
        table, name = op.table, new.name
        before: List[str] = []
        after: List[str] = []
        actions: List[str] = []

        type_changed = (old.sql_type, old.size, old.scale, old.enum_values) != \
            (new.sql_type, new.size, new.scale, new.enum_values)
        if type_changed:
            enum_name = enum_type_name(table, name)
            using = None
            if old.sql_type == SqlType.ENUM and new.sql_type == SqlType.ENUM:
                before.append(f"ALTER TYPE {enum_name} RENAME TO {enum_name}_old")
                before.extend(self._create_enum_types(table, [new]))
                after.append(f"DROP TYPE {enum_name}_old")
                using = f"{name}::text::{enum_name}"
            elif new.sql_type == SqlType.ENUM:
                before.extend(self._create_enum_types(table, [new]))
                using = f"{name}::text::{enum_name}"
            elif old.sql_type == SqlType.ENUM:
                after.extend(self._drop_enum_types(table, [old]))
                using = f"{name}::text::{render_type(table, new)}"
            elif old.sql_type != new.sql_type:
                using = f"{name}::{render_type(table, new)}"
            if old.default is not None:
                # USING does not apply to the default, which would otherwise need an implicit cast
                before.append(f"ALTER TABLE {table} ALTER COLUMN {name} DROP DEFAULT")
            clause = f"ALTER COLUMN {name} TYPE {render_type(table, new)}"
            if using:
                clause += f" USING {using}"
            actions.append(clause)

        if old.nullable != new.nullable:
            actions.append(f"ALTER COLUMN {name} {'DROP' if new.nullable else 'SET'} NOT NULL")

        default_dropped = type_changed and old.default is not None
        if new.default is not None and (default_dropped or old.default != new.default):
            actions.append(f"ALTER COLUMN {name} SET DEFAULT {new.default}")
        elif new.default is None and old.default is not None and not default_dropped:
            actions.append(f"ALTER COLUMN {name} DROP DEFAULT")

        statements = list(before)
        if actions:
            statements.append(f"ALTER TABLE {table} {', '.join(actions)}")
        if old.unique != new.unique:
            constraint = unique_constraint_name(table, name)
            if new.unique:
                statements.append(f"ALTER TABLE {table} ADD CONSTRAINT {constraint} UNIQUE ({name})")
            else:
                statements.append(f"ALTER TABLE {table} DROP CONSTRAINT {constraint}")
        statements.extend(after)
        return statements

    def _gen_rename_column(self, op: RenameColumn) -> List[str]:
        statements = [f"ALTER TABLE {op.table} RENAME COLUMN {op.old_name} TO {op.new_name}"]
        if op.is_enum:
            statements.append(
                f"ALTER TYPE {enum_type_name(op.table, op.old_name)} "
                f"RENAME TO {enum_type_name(op.table, op.new_name)}"
            )
        return statements

    def _gen_add_index(self, op: AddIndex) -> List[str]:
        """Generate CREATE INDEX statement."""
        index: IndexDefinition = op.index
        unique = "UNIQUE " if index.unique else ""
        return [f"CREATE {unique}INDEX {index.name} ON {op.table} ({', '.join(index.columns)})"]

    def _gen_drop_index(self, op: DropIndex) -> List[str]:
        return [f"DROP INDEX {op.index.name}"]

    def _gen_add_foreign_key(self, op: AddForeignKey) -> List[str]:
        """Generate ALTER TABLE ADD CONSTRAINT statement."""
        fk: ForeignKeyDefinition = op.foreign_key
        sql = (
            f"ALTER TABLE {op.table} ADD CONSTRAINT {fk.name} FOREIGN KEY ({fk.column}) "
            f"REFERENCES {fk.referenced_table} ({fk.referenced_column})"
        )
        if fk.on_delete.upper() != "NO ACTION":
            sql += f" ON DELETE {fk.on_delete.upper()}"
        if fk.on_update.upper() != "NO ACTION":
            sql += f" ON UPDATE {fk.on_update.upper()}"
        return [sql]

    def _gen_drop_foreign_key(self, op: DropForeignKey) -> List[str]:
        return [f"ALTER TABLE {op.table} DROP CONSTRAINT {op.foreign_key.name}"]
