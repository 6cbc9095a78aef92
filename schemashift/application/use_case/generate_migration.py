"""Use case for generating a migration from entity declarations."""
from typing import Optional
import logging

from schemashift.domain.entities.operations import SchemaDiff
from schemashift.domain.entities.schema import SchemaSnapshot
from schemashift.domain.repositories.interfaces import (
    IDatabaseInspector, IEntityRepository, IMigrationLedger, IMigrationRepository
)
from schemashift.domain.services.diff_engine import DiffEngine
from schemashift.domain.services.entity_schema_builder import EntitySchemaBuilder
from schemashift.domain.services.migration_generator import (
    GeneratedMigration, MigrationGenerator, RenameDecisions
)
from schemashift.domain.services.schema_replayer import SchemaReplayer

logger = logging.getLogger(__name__)


class GenerateMigrationUseCase:
    """
    Use case: Diff entities against the database and store a new migration.
    Single Responsibility: Generate migration artifacts.
    """

    def __init__(
        self,
        entity_repository: IEntityRepository,
        inspector: IDatabaseInspector,
        migration_repository: IMigrationRepository,
        ledger: IMigrationLedger,
        schema_builder: EntitySchemaBuilder,
        diff_engine: DiffEngine,
        generator: MigrationGenerator,
        replayer: Optional[SchemaReplayer] = None
    ):
        self._entities = entity_repository
        self._inspector = inspector
        self._migrations = migration_repository
        self._ledger = ledger
        self._schema_builder = schema_builder
        self._diff_engine = diff_engine
        self._generator = generator
        self._replayer = replayer or SchemaReplayer()

    def compute_diff(self) -> SchemaDiff:
        """Diff the declared entities against the database plus any pending migrations."""
        desired = self._schema_builder.build(self._entities.load())
        actual = self._expected_schema()
        return self._diff_engine.compute_diff(desired, actual)

    def execute(
        self,
        diff: Optional[SchemaDiff] = None,
        decisions: RenameDecisions = None,
        name: str = "auto",
        requires_backup: Optional[bool] = None
    ) -> Optional[GeneratedMigration]:
        """Execute migration generation; returns ``None`` when nothing changed."""
        diff = diff if diff is not None else self.compute_diff()
        if diff.is_empty():
            logger.info("[GenerateMigrationUseCase] Schema is up to date")
            return None

        existing_versions = [r.version for r in self._migrations.all()]
        generated = self._generator.generate(
            diff,
            decisions,
            name=name,
            requires_backup=requires_backup,
            existing_versions=existing_versions,
        )
        generated.path = self._migrations.save(generated.record)
        return generated

    def _expected_schema(self) -> SchemaSnapshot:
        """Live schema with the operations of not-yet-executed migrations applied on top."""
        actual = self._inspector.get_schema()
        self._ledger.ensure_table()
        executed = {e.version for e in self._ledger.entries() if e.success}
        pending = [r for r in self._migrations.all() if r.version not in executed]
        if not pending:
            return actual
        if all(r.has_operations for r in pending):
            logger.info(f"[GenerateMigrationUseCase] Accounting for {len(pending)} pending migrations")
            return self._replayer.replay(pending, start=actual)
        logger.warning(
            "[GenerateMigrationUseCase] Pending hand-written migrations cannot be replayed; "
            "run migration:migrate first for an accurate diff"
        )
        return actual
