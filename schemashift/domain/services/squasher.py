from dataclasses import dataclass
from typing import Collection, Dict, List, Optional, Sequence, Tuple
import logging

from schemashift.domain.entities.errors import (
    MigrationDependencyError, MigrationNotFoundError, SquashError
)
from schemashift.domain.entities.migration import MigrationRecord, sql_migration
from schemashift.domain.entities.operations import (
    AddColumn, CreateTable, DropColumn, DropTable, RenameColumn, SchemaDiff
)
from schemashift.domain.entities.schema import SchemaSnapshot, SqlType
from schemashift.domain.services.diff_engine import DiffEngine
from schemashift.domain.services.migration_builder import MigrationBuilder
from schemashift.domain.services.migration_generator import MigrationGenerator
from schemashift.domain.services.schema_replayer import SchemaReplayer

logger = logging.getLogger(__name__)


@dataclass
class SquashPlan:
    """Baseline record replacing a contiguous run of records."""
    baseline: MigrationRecord
    squashed: List[MigrationRecord]
    executed: bool

    @property
    def squashed_versions(self) -> List[str]:
        return [r.version for r in self.squashed]


class MigrationSquasher:
    """
    Collapses a contiguous run of operation-backed records into one baseline.
    Single Responsibility: Squash planning (no I/O).
    """

    def __init__(
        self,
        diff_engine: DiffEngine,
        builder: MigrationBuilder,
        replayer: Optional[SchemaReplayer] = None
    ):
        self._diff_engine = diff_engine
        self._builder = builder
        self._generator = MigrationGenerator(builder)
        self._replayer = replayer or SchemaReplayer()

    def plan(
        self,
        records: Sequence[MigrationRecord],
        to_version: str,
        from_version: Optional[str] = None,
        executed_versions: Collection[str] = ()
    ) -> SquashPlan:
        """
        Build the baseline for ``records[from..to]``. ``records`` is every known
        record; ``executed_versions`` the successfully executed ones.
        """
        ordered = sorted(records, key=lambda r: r.version)
        versions = [r.version for r in ordered]
        if not ordered:
            raise SquashError("There are no migrations to squash")
        from_version = from_version or versions[0]
        for v in (from_version, to_version):
            if v not in versions:
                raise MigrationNotFoundError(f"Migration {v} not found", version=v)

        start, end = versions.index(from_version), versions.index(to_version)
        if end - start < 1:
            raise SquashError(
                f"Squash needs at least two migrations, got {from_version}..{to_version}",
                version=to_version,
            )
        run = ordered[start:end + 1]
        run_versions = {r.version for r in run}

        for record in ordered[:end + 1]:
            if not record.has_operations:
                raise SquashError(
                    f"Migration {record.version} has no structural operations and cannot be replayed",
                    version=record.version,
                )

        executed = [v for v in run_versions if v in executed_versions]
        if executed and len(executed) != len(run):
            raise SquashError(
                f"Cannot squash a partially executed run: executed {sorted(executed)}",
                version=to_version,
            )

        for record in ordered:
            if record.version in run_versions:
                continue
            blocked = sorted((record.depends_on & run_versions) - {to_version})
            if blocked:
                raise MigrationDependencyError(
                    f"Migration {record.version} depends on {', '.join(blocked)}, which the squash removes",
                    version=record.version,
                    missing_dependencies=blocked,
                )

        before = self._replayer.replay(ordered[:start])
        after = self._replayer.replay(run, start=before)
        renames = self._net_renames(run, before, after)
        renamed_before = self._replayer.apply(before, renames)
        diff = self._diff_engine.compute_diff(after, renamed_before)
        if diff.is_empty() and not renames:
            raise SquashError(
                f"Migrations {from_version}..{to_version} have no net effect", version=to_version
            )

        # leftover candidates were explicit drop + add inside the run
        operations = SchemaDiff(renames + self._generator.resolve_renames(diff, lambda c: False)).operations
        resolved = SchemaDiff(operations)
        baseline = sql_migration(
            to_version,
            self._builder.build_migration(operations),
            self._builder.build_rollback(operations),
            name=f"squashed_{from_version}_{to_version}",
            is_destructive=resolved.is_destructive(),
            auto_rollback_on_error=all(r.auto_rollback_on_error for r in run),
            depends_on=frozenset().union(*(r.depends_on for r in run)) - run_versions,
            conflicts_with=frozenset().union(*(r.conflicts_with for r in run)) - run_versions,
            can_run_in_parallel=all(r.can_run_in_parallel for r in run),
            operations=operations,
            squashed_from=tuple(r.version for r in run),
        )
        logger.info(
            f"[MigrationSquasher] {len(run)} migrations -> {baseline.id} "
            f"({len(operations)} operations, executed={bool(executed)})"
        )
        return SquashPlan(baseline=baseline, squashed=list(run), executed=bool(executed))

    def _net_renames(
        self,
        run: Sequence[MigrationRecord],
        before: SchemaSnapshot,
        after: SchemaSnapshot
    ) -> List[RenameColumn]:
        """Compose the run's renames into one rename per surviving column, following chains."""
        origin: Dict[Tuple[str, str], Optional[str]] = {}
        for record in run:
            for op in record.operations:
                if isinstance(op, RenameColumn):
                    origin[(op.table, op.new_name)] = origin.pop((op.table, op.old_name), op.old_name)
                elif isinstance(op, (AddColumn, DropColumn)):
                    # a column added in the run has no counterpart before it
                    origin[(op.table, op.column.name)] = None
                elif isinstance(op, CreateTable):
                    for column in op.definition.columns:
                        origin[(op.table, column.name)] = None
                elif isinstance(op, DropTable):
                    for key in [k for k in origin if k[0] == op.table]:
                        origin[key] = None

        renames: List[RenameColumn] = []
        for (table_name, final), source in origin.items():
            if source is None or source == final:
                continue
            old_table, new_table = before.get_table(table_name), after.get_table(table_name)
            if old_table is None or new_table is None or not old_table.has_column(source) \
                    or not new_table.has_column(final):
                continue
            if new_table.has_column(source) or old_table.has_column(final):
                raise SquashError(
                    f"Cannot squash renames that reuse column names: {table_name}.{source} -> {final}"
                )
            renames.append(RenameColumn(
                table=table_name,
                old_name=source,
                new_name=final,
                is_enum=old_table.get_column(source).sql_type == SqlType.ENUM,
            ))
        return renames
