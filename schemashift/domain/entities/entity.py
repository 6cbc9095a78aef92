from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from schemashift.domain.entities.schema import SqlType


@dataclass(frozen=True)
class EntityColumn:
    """A declared column of an entity; RELATION columns are resolved at build time."""
    name: str
    sql_type: Union[SqlType, str]
    size: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    unique: bool = False
    primary_key: bool = False
    auto_increment: Optional[bool] = None  # integer primary keys default to identity
    default: Optional[str] = None
    enum_values: Tuple[str, ...] = ()
    references: Optional[str] = None  # "table.column"
    on_delete: Optional[str] = None
    indexed: bool = False

    def __post_init__(self):
        if isinstance(self.sql_type, str):
            object.__setattr__(self, "sql_type", SqlType(self.sql_type.lower()))
        object.__setattr__(self, "enum_values", tuple(self.enum_values))

    @property
    def reference_parts(self) -> Optional[Tuple[str, str]]:
        if not self.references:
            return None
        table, _, column = self.references.partition(".")
        return table, column or "id"


@dataclass
class EntityDefinition:
    """Desired state of one table, declared in application code."""
    table: str
    columns: List[EntityColumn] = field(default_factory=list)
    indexes: List[Tuple[str, ...]] = field(default_factory=list)

    def column(self, name: str, sql_type: Union[SqlType, str], **options) -> "EntityDefinition":
        """Fluent helper: ``EntityDefinition("users").column("id", "integer", primary_key=True)``."""
        self.columns.append(EntityColumn(name=name, sql_type=sql_type, **options))
        return self
