"""
Turns a SchemaDiff into a reversible MigrationRecord.

Rename candidates are resolved first from explicit decisions; a candidate
without a decision aborts generation before any SQL is rendered.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union
import logging

from schemashift.domain.entities.errors import DiffAmbiguityError
from schemashift.domain.entities.migration import MigrationRecord, sql_migration
from schemashift.domain.entities.operations import (
    SchemaDiff, SchemaOperation, RenameCandidate, RenameColumn, ModifyColumn, AddColumn, DropColumn
)
from schemashift.domain.entities.schema import SqlType
from schemashift.domain.repositories.interfaces import ISQLValidator
from schemashift.domain.services.diff_engine import is_lossy_change
from schemashift.domain.services.migration_builder import MigrationBuilder

logger = logging.getLogger(__name__)

VERSION_FORMAT = "%Y%m%d%H%M%S"

RenameDecisions = Union[Dict[str, bool], Callable[[RenameCandidate], Optional[bool]], None]


@dataclass
class GeneratedMigration:
    """A generated record together with the warnings raised while validating its SQL."""
    record: MigrationRecord
    warnings: List[str] = field(default_factory=list)
    path: Optional[str] = None

    @property
    def version(self) -> str:
        return self.record.version


def next_version(existing_versions: Iterable[str], now: Optional[datetime] = None) -> str:
    """UTC timestamp version, bumped one second at a time past every existing version."""
    moment = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    existing = set(existing_versions)
    latest = max(existing) if existing else ""
    candidate = moment.strftime(VERSION_FORMAT)
    if candidate <= latest:
        try:
            moment = datetime.strptime(latest, VERSION_FORMAT)
        except ValueError:
            raise ValueError(f"Cannot generate a timestamp version after '{latest}'")
        candidate = moment.strftime(VERSION_FORMAT)
    while candidate in existing or candidate <= latest:
        moment += timedelta(seconds=1)
        candidate = moment.strftime(VERSION_FORMAT)
    return candidate


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return re.sub(r"_+", "_", slug) or "migration"


class MigrationGenerator:
    """
    Produces migration records from diffs.
    Single Responsibility: Diff -> record translation.
    """

    def __init__(self, builder: MigrationBuilder, validator: Optional[ISQLValidator] = None):
        self._builder = builder
        self._validator = validator

    def generate(
        self,
        diff: SchemaDiff,
        decisions: RenameDecisions = None,
        name: str = "auto",
        requires_backup: Optional[bool] = None,
        existing_versions: Iterable[str] = (),
        now: Optional[datetime] = None
    ) -> GeneratedMigration:
        """Generate a record from ``diff`` with rename candidates resolved by ``decisions``."""
        if diff.is_empty():
            raise ValueError("Cannot generate a migration from an empty diff")

        operations = self.resolve_renames(diff, decisions)
        up_sql = self._builder.build_migration(operations)
        down_sql = self._builder.build_rollback(operations)

        warnings: List[str] = []
        if self._validator is not None:
            warnings.extend(self._validator.validate_statements(up_sql))

        resolved = SchemaDiff(operations)
        version = next_version(existing_versions, now)
        record = sql_migration(
            version,
            up_sql,
            down_sql,
            name=slugify(name),
            is_destructive=resolved.is_destructive(),
            requires_backup=requires_backup,
            operations=resolved.operations,
        )
        if record.is_destructive:
            warnings.append(
                "Destructive migration: " + ", ".join(op.describe() for op in resolved if op.destructive)
            )
        logger.info(
            f"[MigrationGenerator] Generated {record.id}: {len(up_sql)} statements, "
            f"destructive={record.is_destructive}, backup={record.requires_backup}"
        )
        return GeneratedMigration(record=record, warnings=warnings)

    def resolve_renames(self, diff: SchemaDiff, decisions: RenameDecisions) -> List[SchemaOperation]:
        """Replace every rename candidate by a confirmed rename or an explicit drop + add."""
        candidates = diff.rename_candidates()
        verdicts: Dict[str, bool] = {}
        undecided: List[str] = []
        for candidate in candidates:
            verdict = self._decision_for(candidate, decisions)
            if verdict is None:
                undecided.append(candidate.key)
            else:
                verdicts[candidate.key] = verdict
        if undecided:
            raise DiffAmbiguityError(
                f"Rename candidates need a decision: {', '.join(undecided)}",
                candidates=undecided,
            )

        operations: List[SchemaOperation] = []
        for op in diff:
            if not isinstance(op, RenameCandidate):
                operations.append(op)
                continue
            if verdicts[op.key]:
                logger.info(f"[MigrationGenerator] Rename confirmed: {op.key}")
                operations.append(RenameColumn(
                    table=op.table,
                    old_name=op.old.name,
                    new_name=op.new.name,
                    is_enum=op.old.sql_type == SqlType.ENUM,
                ))
                renamed = op.old.renamed(op.new.name)
                if renamed.shape_key() != op.new.shape_key():
                    operations.append(ModifyColumn(
                        table=op.table, old=renamed, new=op.new, lossy=is_lossy_change(renamed, op.new)
                    ))
            else:
                logger.info(f"[MigrationGenerator] Rename rejected: {op.key}")
                operations.append(DropColumn(table=op.table, column=op.old))
                operations.append(AddColumn(table=op.table, column=op.new))
        return SchemaDiff(operations).operations

    def _decision_for(self, candidate: RenameCandidate, decisions: RenameDecisions) -> Optional[bool]:
        if decisions is None:
            return None
        if callable(decisions):
            return decisions(candidate)
        return decisions.get(candidate.key)
