from typing import Dict, List, Sequence
import logging

from schemashift.domain.entities.entity import EntityColumn, EntityDefinition
from schemashift.domain.entities.errors import MalformedSnapshotError
from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SchemaSnapshot, SqlType,
    TableSnapshot, TypeFamily, type_family
)

logger = logging.getLogger(__name__)


class EntitySchemaBuilder:
    """
    Builds the desired SchemaSnapshot from entity declarations.
    Single Responsibility: Entity -> snapshot resolution.
    """

    def build(self, entities: Sequence[EntityDefinition]) -> SchemaSnapshot:
        """Resolve every entity, in declaration order, into one snapshot."""
        declared: Dict[str, EntityDefinition] = {}
        for entity in entities:
            if entity.table in declared:
                raise MalformedSnapshotError(
                    f"Entity table '{entity.table}' is declared more than once", table=entity.table
                )
            declared[entity.table] = entity

        tables = [self.build_table(entity, declared) for entity in entities]
        logger.info(f"[EntitySchemaBuilder] Built desired schema with {len(tables)} tables")
        return SchemaSnapshot.from_tables(tables)

    def build_table(self, entity: EntityDefinition, declared: Dict[str, EntityDefinition]) -> TableSnapshot:
        columns: List[ColumnDefinition] = []
        indexes: List[IndexDefinition] = []
        foreign_keys: List[ForeignKeyDefinition] = []

        for col in entity.columns:
            column = self._resolve_column(entity, col, declared)
            columns.append(column)
            if column.references:
                ref_table, ref_column = col.reference_parts
                foreign_keys.append(ForeignKeyDefinition(
                    name=f"fk_{entity.table}_{col.name}",
                    column=col.name,
                    referenced_table=ref_table,
                    referenced_column=ref_column,
                    on_delete=(col.on_delete or "NO ACTION").upper(),
                ))
                indexes.append(IndexDefinition(name=f"idx_{entity.table}_{col.name}", columns=(col.name,)))
            elif col.indexed and not col.unique and not col.primary_key:
                indexes.append(IndexDefinition(name=f"idx_{entity.table}_{col.name}", columns=(col.name,)))

        for index_columns in entity.indexes:
            index_columns = tuple(index_columns)
            name = f"idx_{entity.table}_{'_'.join(index_columns)}"
            if all(i.name != name for i in indexes):
                indexes.append(IndexDefinition(name=name, columns=index_columns))

        return TableSnapshot(name=entity.table, columns=columns, indexes=indexes, foreign_keys=foreign_keys)

    def _resolve_column(
        self,
        entity: EntityDefinition,
        col: EntityColumn,
        declared: Dict[str, EntityDefinition]
    ) -> ColumnDefinition:
        sql_type, size, scale, enum_values = col.sql_type, col.size, col.scale, col.enum_values

        if sql_type == SqlType.RELATION:
            target = self._referenced_column(entity, col, declared)
            sql_type, size, scale = target.sql_type, target.size, target.scale
            if sql_type == SqlType.RELATION:
                raise MalformedSnapshotError(
                    f"Relation '{entity.table}.{col.name}' points at another relation column",
                    table=entity.table, column=col.name,
                )
            if sql_type == SqlType.ENUM:
                raise MalformedSnapshotError(
                    f"Relation '{entity.table}.{col.name}' cannot reference an enum column",
                    table=entity.table, column=col.name,
                )
        elif col.references:
            self._referenced_column(entity, col, declared)

        if sql_type == SqlType.DECIMAL and size is not None and scale is None:
            scale = 0
        if sql_type == SqlType.ENUM and not enum_values:
            raise MalformedSnapshotError(
                f"Enum column '{entity.table}.{col.name}' declares no values",
                table=entity.table, column=col.name,
            )

        auto_increment = col.auto_increment
        if auto_increment is None:
            auto_increment = col.primary_key and type_family(sql_type) == TypeFamily.INTEGER \
                and col.sql_type != SqlType.RELATION

        return ColumnDefinition(
            name=col.name,
            sql_type=sql_type,
            size=size,
            scale=scale,
            nullable=False if col.primary_key else col.nullable,
            unique=col.unique and not col.primary_key,
            primary_key=col.primary_key,
            auto_increment=bool(auto_increment),
            foreign_key=col.references is not None,
            references=col.references,
            on_delete=col.on_delete,
            default=col.default,
            enum_values=enum_values,
        )

    def _referenced_column(
        self,
        entity: EntityDefinition,
        col: EntityColumn,
        declared: Dict[str, EntityDefinition]
    ) -> EntityColumn:
        parts = col.reference_parts
        if parts is None:
            raise MalformedSnapshotError(
                f"Relation '{entity.table}.{col.name}' has no 'references' target",
                table=entity.table, column=col.name,
            )
        ref_table, ref_column = parts
        target_entity = declared.get(ref_table)
        if target_entity is not None:
            for candidate in target_entity.columns:
                if candidate.name == ref_column:
                    return candidate
        raise MalformedSnapshotError(
            f"Relation '{entity.table}.{col.name}' references unknown column '{ref_table}.{ref_column}'",
            table=entity.table, column=col.name,
        )
