from dataclasses import replace
from typing import Iterable, Sequence
import logging

from schemashift.domain.entities.errors import DiffAmbiguityError, MalformedSnapshotError
from schemashift.domain.entities.migration import MigrationRecord
from schemashift.domain.entities.schema import SchemaSnapshot, TableSnapshot
from schemashift.domain.entities.operations import (
    SchemaOperation, CreateTable, DropTable, AddColumn, DropColumn, ModifyColumn,
    RenameCandidate, RenameColumn, AddIndex, DropIndex, AddForeignKey, DropForeignKey
)

logger = logging.getLogger(__name__)


class SchemaReplayer:
    """
    Applies structural operations to a snapshot without touching a database.
    Single Responsibility: In-memory schema evolution.
    """

    def replay(self, records: Iterable[MigrationRecord], start: SchemaSnapshot = None) -> SchemaSnapshot:
        """Apply every record's operations in order, starting from ``start`` (empty by default)."""
        snapshot = start or SchemaSnapshot()
        for record in records:
            snapshot = self.apply(snapshot, record.operations)
        return snapshot

    def apply(self, snapshot: SchemaSnapshot, operations: Sequence[SchemaOperation]) -> SchemaSnapshot:
        for operation in operations:
            snapshot = self._apply_one(snapshot, operation)
        return snapshot

    def _table(self, snapshot: SchemaSnapshot, name: str) -> TableSnapshot:
        table = snapshot.get_table(name)
        if table is None:
            raise MalformedSnapshotError(f"Cannot replay change on unknown table '{name}'", table=name)
        return table

    def _apply_one(self, snapshot: SchemaSnapshot, op: SchemaOperation) -> SchemaSnapshot:
        if isinstance(op, CreateTable):
            if snapshot.has_table(op.table):
                raise MalformedSnapshotError(f"Table '{op.table}' already exists", table=op.table)
            return snapshot.with_table(op.definition)

        if isinstance(op, DropTable):
            self._table(snapshot, op.table)
            return snapshot.without_table(op.table)

        if isinstance(op, RenameCandidate):
            raise DiffAmbiguityError(f"Cannot replay undecided rename {op.key}", candidates=[op.key])

        table = self._table(snapshot, op.table)

        if isinstance(op, AddColumn):
            return snapshot.with_table(replace(table, columns=table.columns + (op.column,)))

        if isinstance(op, DropColumn):
            self._require_column(table, op.column.name)
            name = op.column.name
            # dropping a column drops its indexes and foreign keys
            return snapshot.with_table(TableSnapshot(
                name=table.name,
                columns=[c for c in table.columns if c.name != name],
                indexes=[i for i in table.indexes if name not in i.columns],
                foreign_keys=[fk for fk in table.foreign_keys if fk.column != name],
            ))

        if isinstance(op, ModifyColumn):
            self._require_column(table, op.old.name)
            columns = [op.new if c.name == op.old.name else c for c in table.columns]
            return snapshot.with_table(replace(table, columns=columns))

        if isinstance(op, RenameColumn):
            return self._rename_column(snapshot, table, op)

        if isinstance(op, AddIndex):
            return snapshot.with_table(replace(table, indexes=table.indexes + (op.index,)))

        if isinstance(op, DropIndex):
            indexes = [i for i in table.indexes if i.name != op.index.name]
            return snapshot.with_table(replace(table, indexes=indexes))

        if isinstance(op, AddForeignKey):
            return snapshot.with_table(replace(table, foreign_keys=table.foreign_keys + (op.foreign_key,)))

        if isinstance(op, DropForeignKey):
            foreign_keys = [fk for fk in table.foreign_keys if fk.name != op.foreign_key.name]
            return snapshot.with_table(replace(table, foreign_keys=foreign_keys))

        raise TypeError(f"Unsupported operation: {op!r}")

    def _require_column(self, table: TableSnapshot, name: str) -> None:
        if not table.has_column(name):
            raise MalformedSnapshotError(
                f"Cannot replay change on unknown column '{table.name}.{name}'",
                table=table.name, column=name,
            )

    def _rename_column(self, snapshot: SchemaSnapshot, table: TableSnapshot, op: RenameColumn) -> SchemaSnapshot:
        """Rename a column and every index/FK that mentions it, here and in referencing tables."""
        self._require_column(table, op.old_name)
        old, new = op.old_name, op.new_name

        def swap(name: str) -> str:
            return new if name == old else name

        snapshot = snapshot.with_table(TableSnapshot(
            name=table.name,
            columns=[c.renamed(new) if c.name == old else c for c in table.columns],
            indexes=[replace(i, columns=tuple(swap(c) for c in i.columns)) for i in table.indexes],
            foreign_keys=[replace(fk, column=swap(fk.column)) for fk in table.foreign_keys],
        ))
        for other in list(snapshot.tables.values()):
            if any(fk.referenced_table == table.name and fk.referenced_column == old for fk in other.foreign_keys):
                foreign_keys = [
                    replace(fk, referenced_column=new)
                    if fk.referenced_table == table.name and fk.referenced_column == old else fk
                    for fk in other.foreign_keys
                ]
                snapshot = snapshot.with_table(replace(other, foreign_keys=foreign_keys))
        return snapshot
