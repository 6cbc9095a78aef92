from typing import List, Tuple, Dict, Set
from difflib import SequenceMatcher
import logging

from schemashift.domain.entities.schema import (
    SchemaSnapshot, TableSnapshot, ColumnDefinition, SqlType, TypeFamily
)
from schemashift.domain.entities.operations import (
    SchemaOperation, SchemaDiff, CreateTable, DropTable, AddColumn, DropColumn,
    ModifyColumn, RenameCandidate, AddIndex, DropIndex, AddForeignKey, DropForeignKey
)

logger = logging.getLogger(__name__)

_INTEGER_RANK = {SqlType.SMALLINT: 1, SqlType.INTEGER: 2, SqlType.BIGINT: 3}
_FLOAT_RANK = {SqlType.REAL: 1, SqlType.DOUBLE: 2}
_TEXT_RANK = {SqlType.CHAR: 1, SqlType.VARCHAR: 2, SqlType.TEXT: 3}


def _shrinks(old_value, new_value) -> bool:
    """None means unbounded."""
    if new_value is None:
        return False
    if old_value is None:
        return True
    return new_value < old_value


def is_lossy_change(old: ColumnDefinition, new: ColumnDefinition) -> bool:
    """
    True when converting values from ``old`` to ``new`` can lose data:
    narrowing size/precision/scale, removing enum values, or a
    non-widening type change.
    """
    if old.sql_type == new.sql_type:
        if old.sql_type == SqlType.ENUM:
            return bool(set(old.enum_values) - set(new.enum_values))
        return _shrinks(old.size, new.size) or _shrinks(old.scale, new.scale)

    if new.sql_type == SqlType.TEXT:
        return False

    if old.family != new.family:
        if old.family == TypeFamily.INTEGER and new.sql_type == SqlType.DECIMAL:
            return False
        if old.family == TypeFamily.INTEGER and new.sql_type == SqlType.DOUBLE:
            return old.sql_type == SqlType.BIGINT
        return True

    family = old.family
    if family == TypeFamily.INTEGER:
        return _INTEGER_RANK[new.sql_type] < _INTEGER_RANK[old.sql_type]
    if family == TypeFamily.DECIMAL:
        if old.sql_type in _FLOAT_RANK and new.sql_type in _FLOAT_RANK:
            return _FLOAT_RANK[new.sql_type] < _FLOAT_RANK[old.sql_type]
        # float -> unbounded numeric keeps every value
        return not (new.sql_type == SqlType.DECIMAL and new.size is None)
    if family == TypeFamily.TEXT:
        if _TEXT_RANK[new.sql_type] < _TEXT_RANK[old.sql_type]:
            return True
        return _shrinks(old.size, new.size)
    if family == TypeFamily.TEMPORAL:
        if old.sql_type == SqlType.DATE:
            return new.sql_type not in (SqlType.TIMESTAMP, SqlType.TIMESTAMPTZ)
        return not {old.sql_type, new.sql_type} <= {SqlType.TIMESTAMP, SqlType.TIMESTAMPTZ}
    if family == TypeFamily.JSON:
        return False
    return True


class DiffEngine:
    """
    Computes the structural difference between a desired and an actual schema.
    Single Responsibility: Only handles diff computation.
    """

    NAME_WEIGHT = 0.4
    TYPE_WEIGHT = 0.25
    CONSTRAINT_WEIGHT = 0.2
    POSITION_WEIGHT = 0.15

    def __init__(self, rename_threshold: float = 0.6):
        self._rename_threshold = rename_threshold
        logger.info(f"[DiffEngine] Initialized with rename threshold {rename_threshold}")

    def compute_diff(self, desired: SchemaSnapshot, actual: SchemaSnapshot) -> SchemaDiff:
        """
        Compute the operations that turn ``actual`` into ``desired``.
        Structural mismatches never raise; only malformed snapshots do.
        """
        operations: List[SchemaOperation] = []

        for table_name, table in desired.tables.items():
            current = actual.get_table(table_name)
            if current is None:
                operations.extend(self._create_table_operations(table))
            else:
                operations.extend(self._compare_columns(table, current))
                operations.extend(self._compare_indexes(table, current))
                operations.extend(self._compare_foreign_keys(table, current))

        for table_name, table in actual.tables.items():
            if not desired.has_table(table_name):
                operations.extend(self._drop_table_operations(table))

        diff = SchemaDiff(operations)
        logger.info(
            f"[DiffEngine] {len(diff)} operations, "
            f"{len(diff.rename_candidates())} rename candidates, destructive={diff.is_destructive()}"
        )
        return diff

    def _create_table_operations(self, table: TableSnapshot) -> List[SchemaOperation]:
        """CreateTable carries columns only; indexes and FKs follow as their own operations."""
        operations: List[SchemaOperation] = [
            CreateTable(table=table.name, definition=TableSnapshot(name=table.name, columns=table.columns))
        ]
        operations.extend(AddIndex(table=table.name, index=index) for index in table.indexes)
        operations.extend(AddForeignKey(table=table.name, foreign_key=fk) for fk in table.foreign_keys)
        return operations

    def _drop_table_operations(self, table: TableSnapshot) -> List[SchemaOperation]:
        operations: List[SchemaOperation] = []
        operations.extend(DropForeignKey(table=table.name, foreign_key=fk) for fk in table.foreign_keys)
        operations.extend(DropIndex(table=table.name, index=index) for index in table.indexes)
        operations.append(
            DropTable(table=table.name, definition=TableSnapshot(name=table.name, columns=table.columns))
        )
        return operations

    def _compare_columns(self, desired: TableSnapshot, actual: TableSnapshot) -> List[SchemaOperation]:
        """Match columns by name, then pair leftovers into rename candidates."""
        operations: List[SchemaOperation] = []

        added = [c for c in desired.columns if not actual.has_column(c.name)]
        dropped = [c for c in actual.columns if not desired.has_column(c.name)]

        for column in desired.columns:
            existing = actual.get_column(column.name)
            if existing is not None and existing.shape_key() != column.shape_key():
                operations.append(ModifyColumn(
                    table=desired.name,
                    old=existing,
                    new=column,
                    lossy=is_lossy_change(existing, column),
                ))

        candidates = self._rename_candidates(desired, actual, added, dropped)
        paired_new = {c.new.name for c in candidates}
        paired_old = {c.old.name for c in candidates}
        operations.extend(candidates)

        operations.extend(
            AddColumn(table=desired.name, column=c) for c in added if c.name not in paired_new
        )
        operations.extend(
            DropColumn(table=desired.name, column=c) for c in dropped if c.name not in paired_old
        )
        return operations

    def _rename_candidates(
        self,
        desired: TableSnapshot,
        actual: TableSnapshot,
        added: List[ColumnDefinition],
        dropped: List[ColumnDefinition]
    ) -> List[RenameCandidate]:
        """Greedy pairing by descending score; each column used at most once."""
        scored: List[Tuple[float, int, RenameCandidate]] = []
        for old in dropped:
            for new in added:
                if old.family != new.family:
                    continue
                score, basis = self._rename_score(old, new, actual, desired)
                if score >= self._rename_threshold:
                    candidate = RenameCandidate(
                        table=desired.name, old=old, new=new,
                        similarity=round(score, 4), basis=basis
                    )
                    scored.append((score, len(scored), candidate))

        scored.sort(key=lambda item: (-item[0], item[1]))
        used_old: Set[str] = set()
        used_new: Set[str] = set()
        chosen: List[RenameCandidate] = []
        for score, _, candidate in scored:
            if candidate.old.name in used_old or candidate.new.name in used_new:
                continue
            used_old.add(candidate.old.name)
            used_new.add(candidate.new.name)
            chosen.append(candidate)
            logger.info(f"[DiffEngine] Rename candidate: {candidate.key} (score: {score:.3f})")
        return chosen

    def _rename_score(
        self,
        old: ColumnDefinition,
        new: ColumnDefinition,
        actual: TableSnapshot,
        desired: TableSnapshot
    ) -> Tuple[float, str]:
        parts: Dict[str, float] = {
            "name": self.NAME_WEIGHT * self._name_similarity(old.name, new.name),
            "type": self.TYPE_WEIGHT if (old.sql_type, old.size, old.scale) == (new.sql_type, new.size, new.scale) else 0.0,
            "constraints": self.CONSTRAINT_WEIGHT if (
                (old.nullable, old.unique, old.primary_key) == (new.nullable, new.unique, new.primary_key)
            ) else 0.0,
            "position": self.POSITION_WEIGHT if actual.position_of(old.name) == desired.position_of(new.name) else 0.0,
        }
        basis = ", ".join(f"{k}={v:.2f}" for k, v in parts.items() if v > 0)
        return sum(parts.values()), basis

    def _name_similarity(self, a: str, b: str) -> float:
        def singularize(s: str) -> str:
            return s[:-1] if s.endswith('s') else s
        a, b = a.lower(), b.lower()
        return max(
            SequenceMatcher(None, a, b).ratio(),
            SequenceMatcher(None, singularize(a), singularize(b)).ratio()
        )

    def _compare_indexes(self, desired: TableSnapshot, actual: TableSnapshot) -> List[SchemaOperation]:
        """Indexes are matched by structure, not by name."""
        operations: List[SchemaOperation] = []
        actual_keys = {index.structural_key() for index in actual.indexes}
        desired_keys = {index.structural_key() for index in desired.indexes}

        for index in desired.indexes:
            if index.structural_key() not in actual_keys:
                operations.append(AddIndex(table=desired.name, index=index))
        for index in actual.indexes:
            if index.structural_key() not in desired_keys:
                operations.append(DropIndex(table=desired.name, index=index))
        return operations

    def _compare_foreign_keys(self, desired: TableSnapshot, actual: TableSnapshot) -> List[SchemaOperation]:
        operations: List[SchemaOperation] = []
        actual_keys = {fk.structural_key() for fk in actual.foreign_keys}
        desired_keys = {fk.structural_key() for fk in desired.foreign_keys}

        for fk in desired.foreign_keys:
            if fk.structural_key() not in actual_keys:
                operations.append(AddForeignKey(table=desired.name, foreign_key=fk))
        for fk in actual.foreign_keys:
            if fk.structural_key() not in desired_keys:
                operations.append(DropForeignKey(table=desired.name, foreign_key=fk))
        return operations
