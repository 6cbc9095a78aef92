"""Use case for squashing a run of migrations into a baseline."""
from typing import Any, List, Optional
import logging

from schemashift.domain.entities.migration import LedgerEntry, MigrationRecord
from schemashift.domain.repositories.interfaces import IMigrationLedger, IMigrationRepository
from schemashift.domain.services.squasher import MigrationSquasher, SquashPlan
from schemashift.infrastructure.database.connection import TransactionScope

logger = logging.getLogger(__name__)


class SquashMigrationsUseCase:
    """
    Use case: Replace a contiguous run of migrations by one baseline.
    Single Responsibility: Apply a squash plan to artifacts and ledger.
    """

    def __init__(
        self,
        pool: Any,
        migration_repository: IMigrationRepository,
        ledger: IMigrationLedger,
        squasher: MigrationSquasher
    ):
        self._pool = pool
        self._migrations = migration_repository
        self._ledger = ledger
        self._squasher = squasher

    def execute(self, to_version: str, from_version: Optional[str] = None) -> SquashPlan:
        self._ledger.ensure_table()
        entries = [e for e in self._ledger.entries() if e.success]
        executed = {e.version for e in entries}
        plan = self._squasher.plan(self._migrations.all(), to_version, from_version, executed)

        scope = TransactionScope(self._pool)
        try:
            if plan.executed:
                squashed = set(plan.squashed_versions)
                run_entries = [e for e in entries if e.version in squashed]
                self._ledger.replace(scope.connection, plan.squashed_versions, LedgerEntry(
                    version=plan.baseline.version,
                    executed_at=max(e.executed_at for e in run_entries),
                    success=True,
                    execution_time_ms=sum(e.execution_time_ms or 0 for e in run_entries),
                ))
            self._swap_artifacts(plan.squashed, plan.baseline)
            scope.commit()
        finally:
            scope.close()

        logger.info(
            f"[SquashMigrationsUseCase] Squashed {', '.join(plan.squashed_versions)} into {plan.baseline.id}"
        )
        return plan

    def _swap_artifacts(self, squashed: List[MigrationRecord], baseline: MigrationRecord) -> None:
        """Delete the run's artifacts and write the baseline; put them back if that fails."""
        deleted: List[MigrationRecord] = []
        try:
            for record in squashed:
                self._migrations.delete(record.version)
                deleted.append(record)
            self._migrations.save(baseline)
        except Exception:
            logger.error("[SquashMigrationsUseCase] Squash failed, restoring deleted migrations")
            for record in deleted:
                if self._migrations.get(record.version) is None:
                    self._migrations.save(record)
            raise
