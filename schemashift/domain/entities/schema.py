from dataclasses import dataclass, field, replace
from typing import List, Optional, Dict, Tuple, Iterable
from enum import Enum

from schemashift.domain.entities.errors import MalformedSnapshotError


class SqlType(Enum):
    """PostgreSQL column types understood by the diff engine."""
    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    BOOLEAN = "boolean"
    DECIMAL = "decimal"
    REAL = "real"
    DOUBLE = "double precision"
    CHAR = "char"
    VARCHAR = "varchar"
    TEXT = "text"
    BYTEA = "bytea"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    JSON = "json"
    JSONB = "jsonb"
    UUID = "uuid"
    ENUM = "enum"
    RELATION = "relation"  # entity declarations only


class TypeFamily(Enum):
    """Groups of types that can hold each other's values."""
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DECIMAL = "decimal"
    TEXT = "text"
    BINARY = "binary"
    TEMPORAL = "temporal"
    JSON = "json"
    UUID = "uuid"
    ENUM = "enum"
    RELATION = "relation"


_FAMILIES = {
    SqlType.SMALLINT: TypeFamily.INTEGER,
    SqlType.INTEGER: TypeFamily.INTEGER,
    SqlType.BIGINT: TypeFamily.INTEGER,
    SqlType.BOOLEAN: TypeFamily.BOOLEAN,
    SqlType.DECIMAL: TypeFamily.DECIMAL,
    SqlType.REAL: TypeFamily.DECIMAL,
    SqlType.DOUBLE: TypeFamily.DECIMAL,
    SqlType.CHAR: TypeFamily.TEXT,
    SqlType.VARCHAR: TypeFamily.TEXT,
    SqlType.TEXT: TypeFamily.TEXT,
    SqlType.BYTEA: TypeFamily.BINARY,
    SqlType.DATE: TypeFamily.TEMPORAL,
    SqlType.TIME: TypeFamily.TEMPORAL,
    SqlType.TIMESTAMP: TypeFamily.TEMPORAL,
    SqlType.TIMESTAMPTZ: TypeFamily.TEMPORAL,
    SqlType.JSON: TypeFamily.JSON,
    SqlType.JSONB: TypeFamily.JSON,
    SqlType.UUID: TypeFamily.UUID,
    SqlType.ENUM: TypeFamily.ENUM,
    SqlType.RELATION: TypeFamily.RELATION,
}


def type_family(sql_type: SqlType) -> TypeFamily:
    """Return the family a type belongs to."""
    return _FAMILIES[sql_type]


@dataclass(frozen=True)
class ColumnDefinition:
    """Represents a single column, desired or introspected."""
    name: str
    sql_type: SqlType
    size: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    unique: bool = False
    primary_key: bool = False
    auto_increment: bool = False
    foreign_key: bool = False
    references: Optional[str] = None  # "table.column"
    on_delete: Optional[str] = None
    default: Optional[str] = None  # SQL literal text, e.g. "0" or "'active'"
    enum_values: Tuple[str, ...] = ()

    @property
    def family(self) -> TypeFamily:
        return type_family(self.sql_type)

    def renamed(self, new_name: str) -> "ColumnDefinition":
        return replace(self, name=new_name)

    def same_shape(self, other: "ColumnDefinition") -> bool:
        """True when both columns are identical apart from their names."""
        return self.renamed(other.name) == other

    def shape_key(self) -> Tuple:
        """Attributes that trigger a ModifyColumn when they differ."""
        return (
            self.sql_type,
            self.size,
            self.scale,
            self.nullable,
            self.unique,
            self.default,
            tuple(self.enum_values),
        )


@dataclass(frozen=True)
class IndexDefinition:
    """Represents a database index."""
    name: str
    columns: Tuple[str, ...]
    unique: bool = False

    def structural_key(self) -> Tuple:
        return (tuple(self.columns), self.unique)


@dataclass(frozen=True)
class ForeignKeyDefinition:
    """Represents a foreign key constraint."""
    name: str
    column: str
    referenced_table: str
    referenced_column: str
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"

    def structural_key(self) -> Tuple:
        return (
            self.column,
            self.referenced_table,
            self.referenced_column,
            self.on_delete.upper(),
            self.on_update.upper(),
        )


@dataclass(frozen=True)
class TableSnapshot:
    """Represents one table: ordered columns, indexes and foreign keys."""
    name: str
    columns: Tuple[ColumnDefinition, ...] = ()
    indexes: Tuple[IndexDefinition, ...] = ()
    foreign_keys: Tuple[ForeignKeyDefinition, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "indexes", tuple(self.indexes))
        object.__setattr__(self, "foreign_keys", tuple(self.foreign_keys))
        seen = set()
        for column in self.columns:
            if column.name in seen:
                raise MalformedSnapshotError(
                    f"Table '{self.name}' declares column '{column.name}' more than once",
                    table=self.name,
                    column=column.name,
                )
            seen.add(column.name)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDefinition]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def has_column(self, name: str) -> bool:
        return self.get_column(name) is not None

    def position_of(self, name: str) -> int:
        return self.column_names.index(name)

    def primary_key_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.primary_key]


@dataclass(frozen=True)
class SchemaSnapshot:
    """
    Complete description of a schema at one instant.
    Either desired (built from entities) or actual (introspected).
    """
    tables: Dict[str, TableSnapshot] = field(default_factory=dict)

    @classmethod
    def from_tables(cls, tables: Iterable[TableSnapshot]) -> "SchemaSnapshot":
        mapping: Dict[str, TableSnapshot] = {}
        for table in tables:
            if table.name in mapping:
                raise MalformedSnapshotError(
                    f"Table '{table.name}' appears more than once",
                    table=table.name,
                )
            mapping[table.name] = table
        return cls(tables=mapping)

    @property
    def table_names(self) -> List[str]:
        return list(self.tables.keys())

    def get_table(self, name: str) -> Optional[TableSnapshot]:
        return self.tables.get(name)

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def with_table(self, table: TableSnapshot) -> "SchemaSnapshot":
        tables = dict(self.tables)
        tables[table.name] = table
        return SchemaSnapshot(tables=tables)

    def without_table(self, name: str) -> "SchemaSnapshot":
        tables = {k: v for k, v in self.tables.items() if k != name}
        return SchemaSnapshot(tables=tables)

    def is_empty(self) -> bool:
        return not self.tables
