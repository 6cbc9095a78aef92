"""JSON-compatible encoding of schema operations for migration artifacts."""

from typing import Any, Dict, List, Sequence

from schemashift.domain.entities.schema import (
    ColumnDefinition, ForeignKeyDefinition, IndexDefinition, SqlType, TableSnapshot
)
from schemashift.domain.entities.operations import (
    SchemaOperation, CreateTable, DropTable, AddColumn, DropColumn, ModifyColumn,
    RenameColumn, AddIndex, DropIndex, AddForeignKey, DropForeignKey
)


def encode_column(column: ColumnDefinition) -> Dict[str, Any]:
    return {
        "name": column.name,
        "sql_type": column.sql_type.value,
        "size": column.size,
        "scale": column.scale,
        "nullable": column.nullable,
        "unique": column.unique,
        "primary_key": column.primary_key,
        "auto_increment": column.auto_increment,
        "foreign_key": column.foreign_key,
        "references": column.references,
        "on_delete": column.on_delete,
        "default": column.default,
        "enum_values": list(column.enum_values),
    }


def decode_column(data: Dict[str, Any]) -> ColumnDefinition:
    fields = dict(data)
    fields["sql_type"] = SqlType(fields["sql_type"])
    fields["enum_values"] = tuple(fields.get("enum_values") or ())
    return ColumnDefinition(**fields)


def encode_index(index: IndexDefinition) -> Dict[str, Any]:
    return {"name": index.name, "columns": list(index.columns), "unique": index.unique}


def decode_index(data: Dict[str, Any]) -> IndexDefinition:
    return IndexDefinition(name=data["name"], columns=tuple(data["columns"]), unique=data.get("unique", False))


def encode_foreign_key(fk: ForeignKeyDefinition) -> Dict[str, Any]:
    return {
        "name": fk.name,
        "column": fk.column,
        "referenced_table": fk.referenced_table,
        "referenced_column": fk.referenced_column,
        "on_delete": fk.on_delete,
        "on_update": fk.on_update,
    }


def decode_foreign_key(data: Dict[str, Any]) -> ForeignKeyDefinition:
    return ForeignKeyDefinition(**data)


def encode_table(table: TableSnapshot) -> Dict[str, Any]:
    return {
        "name": table.name,
        "columns": [encode_column(c) for c in table.columns],
        "indexes": [encode_index(i) for i in table.indexes],
        "foreign_keys": [encode_foreign_key(fk) for fk in table.foreign_keys],
    }


def decode_table(data: Dict[str, Any]) -> TableSnapshot:
    return TableSnapshot(
        name=data["name"],
        columns=[decode_column(c) for c in data.get("columns", [])],
        indexes=[decode_index(i) for i in data.get("indexes", [])],
        foreign_keys=[decode_foreign_key(fk) for fk in data.get("foreign_keys", [])],
    )


def encode_operation(op: SchemaOperation) -> Dict[str, Any]:
    data: Dict[str, Any] = {"type": op.change_type.value, "table": op.table}
    if isinstance(op, (CreateTable, DropTable)):
        data["definition"] = encode_table(op.definition)
    elif isinstance(op, (AddColumn, DropColumn)):
        data["column"] = encode_column(op.column)
    elif isinstance(op, ModifyColumn):
        data.update(old=encode_column(op.old), new=encode_column(op.new), lossy=op.lossy)
    elif isinstance(op, RenameColumn):
        data.update(old_name=op.old_name, new_name=op.new_name, is_enum=op.is_enum)
    elif isinstance(op, (AddIndex, DropIndex)):
        data["index"] = encode_index(op.index)
    elif isinstance(op, (AddForeignKey, DropForeignKey)):
        data["foreign_key"] = encode_foreign_key(op.foreign_key)
    else:
        raise TypeError(f"Operation cannot be stored: {op!r}")
    return data


def decode_operation(data: Dict[str, Any]) -> SchemaOperation:
    kind, table = data["type"], data["table"]
    if kind == "create_table":
        return CreateTable(table=table, definition=decode_table(data["definition"]))
    if kind == "drop_table":
        return DropTable(table=table, definition=decode_table(data["definition"]))
    if kind == "add_column":
        return AddColumn(table=table, column=decode_column(data["column"]))
    if kind == "drop_column":
        return DropColumn(table=table, column=decode_column(data["column"]))
    if kind == "modify_column":
        return ModifyColumn(
            table=table, old=decode_column(data["old"]), new=decode_column(data["new"]),
            lossy=data.get("lossy", False)
        )
    if kind == "rename_column":
        return RenameColumn(
            table=table, old_name=data["old_name"], new_name=data["new_name"],
            is_enum=data.get("is_enum", False)
        )
    if kind == "add_index":
        return AddIndex(table=table, index=decode_index(data["index"]))
    if kind == "drop_index":
        return DropIndex(table=table, index=decode_index(data["index"]))
    if kind == "add_foreign_key":
        return AddForeignKey(table=table, foreign_key=decode_foreign_key(data["foreign_key"]))
    if kind == "drop_foreign_key":
        return DropForeignKey(table=table, foreign_key=decode_foreign_key(data["foreign_key"]))
    raise ValueError(f"Unknown operation type '{kind}'")


def encode_operations(operations: Sequence[SchemaOperation]) -> List[Dict[str, Any]]:
    return [encode_operation(op) for op in operations]


def decode_operations(items: Sequence[Dict[str, Any]]) -> List[SchemaOperation]:
    return [decode_operation(item) for item in items]
