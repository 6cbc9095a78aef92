from dataclasses import dataclass, field
from typing import List, Iterable, Type, TypeVar
from enum import Enum

from schemashift.domain.entities.schema import (
    ColumnDefinition, IndexDefinition, ForeignKeyDefinition, TableSnapshot
)


class ChangeType(Enum):
    """Types of schema changes."""
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    MODIFY_COLUMN = "modify_column"
    RENAME_CANDIDATE = "rename_candidate"
    RENAME_COLUMN = "rename_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    ADD_FOREIGN_KEY = "add_foreign_key"
    DROP_FOREIGN_KEY = "drop_foreign_key"


# creates -> adds -> modifies/renames -> index/FK adds -> drops last
CANONICAL_PRIORITY = {
    ChangeType.CREATE_TABLE: 1,
    ChangeType.ADD_COLUMN: 2,
    ChangeType.MODIFY_COLUMN: 3,
    ChangeType.RENAME_CANDIDATE: 3,
    ChangeType.RENAME_COLUMN: 3,
    ChangeType.ADD_INDEX: 4,
    ChangeType.ADD_FOREIGN_KEY: 5,
    ChangeType.DROP_FOREIGN_KEY: 6,
    ChangeType.DROP_INDEX: 7,
    ChangeType.DROP_COLUMN: 8,
    ChangeType.DROP_TABLE: 9,
}


@dataclass(frozen=True)
class SchemaOperation:
    """Base class for a single structural change to one table."""
    table: str

    change_type = None  # type: ChangeType

    @property
    def destructive(self) -> bool:
        return False

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}"


@dataclass(frozen=True)
class CreateTable(SchemaOperation):
    definition: TableSnapshot = None
    change_type = ChangeType.CREATE_TABLE


@dataclass(frozen=True)
class DropTable(SchemaOperation):
    definition: TableSnapshot = None
    change_type = ChangeType.DROP_TABLE

    @property
    def destructive(self) -> bool:
        return True


@dataclass(frozen=True)
class AddColumn(SchemaOperation):
    column: ColumnDefinition = None
    change_type = ChangeType.ADD_COLUMN

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.column.name}"


@dataclass(frozen=True)
class DropColumn(SchemaOperation):
    column: ColumnDefinition = None
    change_type = ChangeType.DROP_COLUMN

    @property
    def destructive(self) -> bool:
        return True

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.column.name}"


@dataclass(frozen=True)
class ModifyColumn(SchemaOperation):
    """Captures both definitions so the reverse change is exact."""
    old: ColumnDefinition = None
    new: ColumnDefinition = None
    lossy: bool = False
    change_type = ChangeType.MODIFY_COLUMN

    @property
    def destructive(self) -> bool:
        return self.lossy

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.new.name}"


@dataclass(frozen=True)
class RenameCandidate(SchemaOperation):
    """
    Proposal that a dropped column and an added column are the same column.
    Never applied without an explicit decision.
    """
    old: ColumnDefinition = None
    new: ColumnDefinition = None
    similarity: float = 0.0
    basis: str = ""
    change_type = ChangeType.RENAME_CANDIDATE

    @property
    def key(self) -> str:
        return f"{self.table}.{self.old.name}->{self.new.name}"

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.key} ({self.similarity:.2f}; {self.basis})"


@dataclass(frozen=True)
class RenameColumn(SchemaOperation):
    old_name: str = ""
    new_name: str = ""
    is_enum: bool = False  # the backing enum type is renamed along with the column
    change_type = ChangeType.RENAME_COLUMN

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.old_name} -> {self.new_name}"


@dataclass(frozen=True)
class AddIndex(SchemaOperation):
    index: IndexDefinition = None
    change_type = ChangeType.ADD_INDEX

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.index.name}"


@dataclass(frozen=True)
class DropIndex(SchemaOperation):
    index: IndexDefinition = None
    change_type = ChangeType.DROP_INDEX

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.index.name}"


@dataclass(frozen=True)
class AddForeignKey(SchemaOperation):
    foreign_key: ForeignKeyDefinition = None
    change_type = ChangeType.ADD_FOREIGN_KEY

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.foreign_key.name}"


@dataclass(frozen=True)
class DropForeignKey(SchemaOperation):
    foreign_key: ForeignKeyDefinition = None
    change_type = ChangeType.DROP_FOREIGN_KEY

    def describe(self) -> str:
        return f"{self.change_type.value}: {self.table}.{self.foreign_key.name}"


def canonical_order(operations: Iterable[SchemaOperation]) -> List[SchemaOperation]:
    """Stable sort by change type so nothing is referenced before it exists."""
    return sorted(operations, key=lambda op: CANONICAL_PRIORITY[op.change_type])


Op = TypeVar("Op", bound=SchemaOperation)


@dataclass
class SchemaDiff:
    """Ordered list of operations turning one snapshot into another."""
    operations: List[SchemaOperation] = field(default_factory=list)

    def __post_init__(self):
        self.operations = canonical_order(self.operations)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def is_empty(self) -> bool:
        return not self.operations

    def is_destructive(self) -> bool:
        return any(op.destructive for op in self.operations)

    def of_type(self, op_type: Type[Op]) -> List[Op]:
        return [op for op in self.operations if isinstance(op, op_type)]

    def rename_candidates(self) -> List[RenameCandidate]:
        return self.of_type(RenameCandidate)
