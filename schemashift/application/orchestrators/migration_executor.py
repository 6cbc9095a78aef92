"""
Applies and reverts migration records against a live database.

Every ``up``/``down`` runs inside exactly one TransactionScope. The ledger row
is written as the last statement of that transaction, so the commit is the
only durability boundary: an interrupted migration leaves no ledger trace.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
import logging

from schemashift.domain.entities.errors import (
    BackupError, DestructiveWithoutForceError, MigrationConflictError, MigrationDependencyError,
    MigrationNotFoundError, MigrationValidationError, SchemaShiftError, TransactionError
)
from schemashift.domain.entities.migration import (
    BackupFile, LedgerEntry, MigrationDirection, MigrationRecord, MigrationResult,
    MigrationState, MigrationStatus
)
from schemashift.domain.repositories.interfaces import (
    IDatabaseInspector, IMigrationLedger, IMigrationRepository
)
from schemashift.infrastructure.backup.backup_manager import BackupManager
from schemashift.infrastructure.database.connection import TransactionScope

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationExecutor:
    """
    Runs pending migrations, rollbacks, refresh and fresh.
    Single Responsibility: Migration execution with transactional guarantees.
    """

    def __init__(
        self,
        pool: Any,
        ledger: IMigrationLedger,
        repository: IMigrationRepository,
        backup_manager: Optional[BackupManager] = None,
        inspector: Optional[IDatabaseInspector] = None,
        max_parallel: int = 4,
        clock: Callable[[], datetime] = _utcnow
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._pool = pool
        self._ledger = ledger
        self._repository = repository
        self._backup_manager = backup_manager
        self._inspector = inspector
        self._max_parallel = max_parallel
        self._clock = clock

    # ------------------------------------------------------------------ migrate

    def migrate(self, dry_run: bool = False) -> List[MigrationResult]:
        """Run every pending record in version order."""
        self._ledger.ensure_table()
        records = self._repository.all()
        executed = {e.version for e in self._ledger.entries() if e.success}
        pending = sorted((r for r in records if r.version not in executed), key=lambda r: r.version)

        if not pending:
            logger.info("[MigrationExecutor] Nothing to migrate")
            return []

        self._check_dependencies(pending, executed)
        self._check_conflicts(records, pending, executed)
        self._run_validations(pending)

        if dry_run:
            return [self._preview(record) for record in pending]

        logger.info(f"[MigrationExecutor] {len(pending)} pending migrations")
        results: List[MigrationResult] = []
        index = 0
        while index < len(pending):
            group = self._next_group(pending, index)
            if len(group) > 1:
                results.extend(self._run_group(group))
            else:
                results.append(self._run_one(group[0]))
            index += len(group)
        return results

    def _check_dependencies(self, pending: Sequence[MigrationRecord], executed: Set[str]) -> None:
        """Each dependency must be executed, or pending and sorted earlier."""
        pending_versions = {r.version for r in pending}
        for record in pending:
            missing = sorted(
                dep for dep in record.depends_on
                if dep not in executed and not (dep in pending_versions and dep < record.version)
            )
            if missing:
                raise MigrationDependencyError(
                    f"Migration {record.version} depends on unmet migrations: {', '.join(missing)}",
                    version=record.version,
                    missing_dependencies=missing,
                )

    def _check_conflicts(
        self,
        records: Sequence[MigrationRecord],
        pending: Sequence[MigrationRecord],
        executed: Set[str]
    ) -> None:
        """Undirected conflicts: no two pending records in one component, no pending/executed pair."""
        graph: Dict[str, Set[str]] = {}
        for record in records:
            for other in record.conflicts_with:
                graph.setdefault(record.version, set()).add(other)
                graph.setdefault(other, set()).add(record.version)

        pending_versions = {r.version for r in pending}
        for record in pending:
            clash = sorted(graph.get(record.version, set()) & executed)
            if clash:
                raise MigrationConflictError(
                    f"Migration {record.version} conflicts with executed migrations: {', '.join(clash)}",
                    version=record.version,
                    conflicting_migrations=[record.version] + clash,
                )

        seen: Set[str] = set()
        for start in sorted(pending_versions):
            if start in seen or start not in graph:
                continue
            component, stack = set(), [start]
            while stack:
                node = stack.pop()
                if node in component:
                    continue
                component.add(node)
                stack.extend(graph.get(node, set()) - component)
            seen |= component
            clash = sorted(component & pending_versions)
            if len(clash) > 1:
                raise MigrationConflictError(
                    f"Pending migrations conflict with each other: {', '.join(clash)}",
                    version=clash[0],
                    conflicting_migrations=clash,
                )

    def _run_validations(self, pending: Sequence[MigrationRecord]) -> None:
        validating = [r for r in pending if r.validate is not None]
        if not validating or self._inspector is None:
            return
        snapshot = self._inspector.get_schema()
        for record in validating:
            result = record.validate(snapshot)
            for warning in result.warnings:
                logger.warning(f"[MigrationExecutor] {record.version}: {warning}")
            if not result.valid:
                raise MigrationValidationError(
                    f"Migration {record.version} failed validation: {'; '.join(result.errors)}",
                    version=record.version,
                    validation_errors=list(result.errors),
                )

    def _preview(self, record: MigrationRecord) -> MigrationResult:
        started = self._clock()
        statements: List[str] = []
        if record.dry_run is not None:
            with self._pool.connection() as conn:
                statements = list(record.dry_run(conn))
        else:
            logger.info(f"[MigrationExecutor] {record.version} does not support dry run")
        return MigrationResult(
            version=record.version,
            direction=MigrationDirection.UP,
            status=MigrationStatus.DRY_RUN,
            started_at=started,
            completed_at=self._clock(),
            statements=statements,
        )

    def _can_join_group(self, record: MigrationRecord) -> bool:
        return record.can_run_in_parallel and not record.requires_backup and record.touched_tables is not None

    def _next_group(self, pending: Sequence[MigrationRecord], start: int) -> List[MigrationRecord]:
        """Maximal prefix of parallel-capable, backup-free, mutually independent records."""
        first = pending[start]
        if self._max_parallel == 1 or not self._can_join_group(first):
            return [first]
        group = [first]
        versions = {first.version}
        tables = set(first.touched_tables)
        for record in pending[start + 1:]:
            if len(group) >= self._max_parallel or not self._can_join_group(record):
                break
            if record.depends_on & versions or record.touched_tables & tables:
                break
            group.append(record)
            versions.add(record.version)
            tables |= record.touched_tables
        return group

    def _run_one(self, record: MigrationRecord) -> MigrationResult:
        """Backup (if required), up, ledger row, commit; failure handling otherwise."""
        started = self._clock()
        backup = self._create_backup(record) if record.requires_backup else None

        scope = TransactionScope(self._pool)
        try:
            logger.info(f"[MigrationExecutor] Migrating {record.id}")
            record.up(scope.connection)
            self._ledger.record(scope.connection, self._entry(record, started, success=True))
            scope.commit()
        except Exception as e:
            scope.close()
            self._handle_failure(record, started, e)
        finally:
            scope.close()

        logger.info(f"[MigrationExecutor] Migrated {record.id}")
        return MigrationResult(
            version=record.version,
            direction=MigrationDirection.UP,
            status=MigrationStatus.COMPLETED,
            started_at=started,
            completed_at=self._clock(),
            backup=backup,
        )

    def _run_group(self, group: List[MigrationRecord]) -> List[MigrationResult]:
        """Run members concurrently; commit in version order only if every member succeeded."""
        started = self._clock()
        logger.info(f"[MigrationExecutor] Running parallel group: {', '.join(r.version for r in group)}")
        scopes = [TransactionScope(self._pool) for _ in group]
        try:
            with ThreadPoolExecutor(max_workers=len(group)) as workers:
                futures = [workers.submit(r.up, s.connection) for r, s in zip(group, scopes)]
            errors = [(r, f.exception()) for r, f in zip(group, futures) if f.exception() is not None]

            if errors:
                for scope in scopes:
                    scope.close()
                for record, error in errors[1:]:
                    logger.error(f"[MigrationExecutor] {record.version} failed in parallel group: {error}")
                    self._handle_failure(record, started, error, raise_error=False)
                record, error = errors[0]
                self._handle_failure(record, started, error, group=[r.version for r in group])

            for record, scope in zip(group, scopes):
                try:
                    self._ledger.record(scope.connection, self._entry(record, started, success=True))
                    scope.commit()
                except Exception as e:
                    for open_scope in scopes:
                        open_scope.close()
                    self._handle_failure(record, started, e)
        finally:
            for scope in scopes:
                scope.close()

        completed = self._clock()
        return [
            MigrationResult(
                version=r.version,
                direction=MigrationDirection.UP,
                status=MigrationStatus.COMPLETED,
                started_at=started,
                completed_at=completed,
            )
            for r in group
        ]

    def _create_backup(self, record: MigrationRecord) -> Optional[BackupFile]:
        if self._backup_manager is None:
            raise BackupError(
                f"Migration {record.version} requires a backup but no backup manager is configured"
            )
        return self._backup_manager.create(record.version)

    def _handle_failure(
        self,
        record: MigrationRecord,
        started: datetime,
        error: BaseException,
        raise_error: bool = True,
        group: Optional[List[str]] = None
    ) -> None:
        """Best-effort down, backup restore and failed ledger entry; then raise TransactionError."""
        statement = getattr(error, "statement", None)
        logger.error(f"[MigrationExecutor] Migration {record.version} failed: {error}")

        restored = None
        if record.auto_rollback_on_error:
            self._attempt_down(record)
            restored = self._restore_backup(record)

        try:
            with TransactionScope(self._pool) as scope:
                self._ledger.record(scope.connection, self._entry(record, started, success=False))
        except Exception as ledger_error:
            logger.error(f"[MigrationExecutor] Could not record failure of {record.version}: {ledger_error}")

        if raise_error:
            context = {"group": group} if group else None
            raise TransactionError(
                f"Migration {record.version} failed: {error}",
                version=record.version,
                direction=MigrationDirection.UP.value,
                statement=statement,
                restored_backup=restored,
                original_error=error,
                context=context,
            ) from error

    def _attempt_down(self, record: MigrationRecord) -> None:
        try:
            with TransactionScope(self._pool) as scope:
                record.down(scope.connection)
            logger.info(f"[MigrationExecutor] Ran down for failed migration {record.version}")
        except Exception as e:
            logger.warning(f"[MigrationExecutor] Best-effort down for {record.version} failed: {e}")

    def _restore_backup(self, record: MigrationRecord) -> Optional[str]:
        if self._backup_manager is None:
            return None
        backup = self._backup_manager.find(record.version)
        if backup is None:
            return None
        try:
            self._backup_manager.restore(record.version)
            return backup.file_id
        except BackupError as e:
            logger.error(f"[MigrationExecutor] Backup restore for {record.version} failed: {e}")
            return None

    def _entry(self, record: MigrationRecord, started: datetime, success: bool) -> LedgerEntry:
        now = self._clock()
        return LedgerEntry(
            version=record.version,
            executed_at=now,
            success=success,
            execution_time_ms=int((now - started).total_seconds() * 1000),
        )

    # ----------------------------------------------------------------- rollback

    def rollback(self, steps: Optional[int] = None, version: Optional[str] = None) -> List[MigrationResult]:
        """Revert the most recent ``steps`` migrations, or everything down to ``version``."""
        if steps is not None and version is not None:
            raise ValueError("Pass either steps or version, not both")
        self._ledger.ensure_table()
        executed = [e for e in self._ledger.entries() if e.success]
        newest_first = list(reversed(executed))

        if version is not None:
            versions = [e.version for e in newest_first]
            if version not in versions:
                raise MigrationNotFoundError(f"Migration {version} has not been executed", version=version)
            targets = newest_first[:versions.index(version) + 1]
        else:
            steps = 1 if steps is None else steps
            if steps < 1:
                raise ValueError(f"steps must be >= 1, got {steps}")
            targets = newest_first[:steps]
        return self._revert_entries(targets)

    def rollback_all(self) -> List[MigrationResult]:
        self._ledger.ensure_table()
        executed = [e for e in self._ledger.entries() if e.success]
        return self._revert_entries(list(reversed(executed)))

    def _revert_entries(self, entries: Sequence[LedgerEntry]) -> List[MigrationResult]:
        if not entries:
            logger.info("[MigrationExecutor] Nothing to roll back")
            return []
        records = {r.version: r for r in self._repository.all()}
        missing = [e.version for e in entries if e.version not in records]
        if missing:
            raise MigrationNotFoundError(
                f"No migration record for executed versions: {', '.join(missing)}",
                version=missing[0],
            )
        return [self._revert(records[e.version]) for e in entries]

    def _revert(self, record: MigrationRecord) -> MigrationResult:
        """down + ledger delete in one transaction."""
        started = self._clock()
        scope = TransactionScope(self._pool)
        try:
            logger.info(f"[MigrationExecutor] Rolling back {record.id}")
            record.down(scope.connection)
            self._ledger.delete(scope.connection, record.version)
            scope.commit()
        except Exception as e:
            scope.rollback()
            raise TransactionError(
                f"Rollback of {record.version} failed: {e}",
                version=record.version,
                direction=MigrationDirection.DOWN.value,
                statement=getattr(e, "statement", None),
                original_error=e,
            ) from e
        finally:
            scope.close()
        return MigrationResult(
            version=record.version,
            direction=MigrationDirection.DOWN,
            status=MigrationStatus.ROLLED_BACK,
            started_at=started,
            completed_at=self._clock(),
        )

    # ------------------------------------------------------------------- status

    def status(self) -> List[MigrationState]:
        """Every known record plus orphaned ledger entries, in version order."""
        self._ledger.ensure_table()
        entries = {e.version: e for e in self._ledger.entries()}
        states = []
        known = set()
        for record in self._repository.all():
            known.add(record.version)
            entry = entries.get(record.version)
            executed = entry is not None and entry.success
            states.append(MigrationState(
                version=record.version,
                name=record.name,
                executed=executed,
                executed_at=entry.executed_at if executed else None,
                last_attempt_failed=entry is not None and not entry.success,
            ))
        for version, entry in entries.items():
            if version not in known:
                states.append(MigrationState(
                    version=version,
                    name="",
                    executed=entry.success,
                    executed_at=entry.executed_at if entry.success else None,
                    last_attempt_failed=not entry.success,
                    orphaned=True,
                ))
        return sorted(states, key=lambda s: s.version)

    # ------------------------------------------------------------ refresh/fresh

    def refresh(self, force: bool = False) -> List[MigrationResult]:
        """Roll everything back, then migrate."""
        if not force:
            raise DestructiveWithoutForceError("migration:refresh")
        results = self.rollback_all()
        results.extend(self.migrate())
        return results

    def fresh(self, force: bool = False) -> List[MigrationResult]:
        """Drop every table and enum type, reset the ledger, then migrate."""
        if not force:
            raise DestructiveWithoutForceError("migration:fresh")
        if self._inspector is None:
            raise SchemaShiftError("migration:fresh needs a database inspector")

        self._ledger.ensure_table()
        tables = self._inspector.get_schema().table_names
        enum_types = self._inspector.list_enum_types()
        logger.warning(f"[MigrationExecutor] Dropping {len(tables)} tables and {len(enum_types)} enum types")

        with TransactionScope(self._pool) as scope:
            with scope.connection.cursor() as cur:
                for table in tables:
                    cur.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
                for enum_type in enum_types:
                    cur.execute(f"DROP TYPE IF EXISTS {enum_type} CASCADE")
            self._ledger.reset(scope.connection)
        return self.migrate()
