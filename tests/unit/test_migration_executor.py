"""Unit tests for MigrationExecutor against the in-memory database."""

import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from schemashift.application.orchestrators.migration_executor import MigrationExecutor
from schemashift.domain.entities.errors import (
    BackupError, DestructiveWithoutForceError, MigrationConflictError, MigrationDependencyError,
    MigrationNotFoundError, MigrationValidationError, TransactionError
)
from schemashift.domain.entities.migration import MigrationStatus, ValidationResult, sql_migration
from schemashift.domain.entities.operations import DropColumn
from schemashift.infrastructure.backup.backup_manager import BackupManager
from tests.fixtures.fake_database import FakeDatabase, FakePool
from tests.fixtures.mock_services import (
    FakeDumper, FakeInspector, InMemoryLedger, InMemoryMigrationRepository
)
from tests.fixtures.test_data import EPOCH, TestDataFactory


class TickingClock:
    """Clock advancing one second per call."""

    def __init__(self):
        self.ticks = 0

    def __call__(self):
        self.ticks += 1
        return EPOCH + timedelta(seconds=self.ticks)


def drop_email_migration(version: str = "003"):
    return sql_migration(
        version,
        ["ALTER TABLE users DROP COLUMN email"],
        ["ALTER TABLE users ADD COLUMN email VARCHAR(255)"],
        name="drop_email",
        is_destructive=True,
        operations=[DropColumn(table="users", column=TestDataFactory.email_column())],
    )


class ExecutorTestCase(unittest.TestCase):
    """Shared wiring: fake pool, in-memory ledger and repository."""

    def setUp(self):
        self.db = FakeDatabase()
        self.pool = FakePool(self.db)
        self.ledger = InMemoryLedger()
        self.dumper = FakeDumper()
        self._tmp = tempfile.TemporaryDirectory()
        self.backups = BackupManager(self._tmp.name, "app", self.dumper)

    def tearDown(self):
        self._tmp.cleanup()

    def make_executor(self, *records, max_parallel: int = 4, with_backups: bool = True) -> MigrationExecutor:
        self.repo = InMemoryMigrationRepository(records)
        return MigrationExecutor(
            pool=self.pool,
            ledger=self.ledger,
            repository=self.repo,
            backup_manager=self.backups if with_backups else None,
            inspector=FakeInspector(database=self.db),
            max_parallel=max_parallel,
            clock=TickingClock(),
        )


class TestMigrate(ExecutorTestCase):
    """Test migrate()."""

    def test_runs_pending_migrations_in_order(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
        )

        results = executor.migrate()

        self.assertEqual([r.version for r in results], ["001", "002"])
        self.assertTrue(all(r.status == MigrationStatus.COMPLETED for r in results))
        self.assertEqual(self.ledger.versions(), ["001", "002"])
        self.assertEqual(self.db.tables["users"], ["id", "name", "email"])
        self.assertEqual(self.pool.checked_out, 0)

    def test_second_run_is_a_no_op(self):
        executor = self.make_executor(TestDataFactory.create_users_migration("001"))
        executor.migrate()
        executed = len(self.db.executed)

        self.assertEqual(executor.migrate(), [])
        self.assertEqual(len(self.db.executed), executed)

    def test_failure_leaves_no_success_entry(self):
        self.db.fail_on = "ADD COLUMN email"
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
        )

        with self.assertRaises(TransactionError) as ctx:
            executor.migrate()

        error = ctx.exception
        self.assertEqual(error.version, "002")
        self.assertEqual(error.direction, "up")
        self.assertEqual(error.statement, "ALTER TABLE users ADD COLUMN email VARCHAR(255) NOT NULL")
        self.assertIsNotNone(error.__cause__)
        entries = {e.version: e for e in self.ledger.entries()}
        self.assertTrue(entries["001"].success)
        self.assertFalse(entries["002"].success)
        self.assertEqual(self.db.tables["users"], ["id", "name"])
        self.assertEqual(self.pool.checked_out, 0)

    def test_failed_migration_can_be_retried(self):
        self.db.fail_on = "ADD COLUMN email"
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
        )
        with self.assertRaises(TransactionError):
            executor.migrate()

        self.db.fail_on = None
        results = executor.migrate()

        self.assertEqual([r.version for r in results], ["002"])
        self.assertTrue(all(e.success for e in self.ledger.entries()))

    def test_failure_without_auto_rollback_skips_down(self):
        self.db.fail_on = "ADD COLUMN email"
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002", auto_rollback_on_error=False),
        )
        with self.assertRaises(TransactionError):
            executor.migrate()
        self.assertNotIn("ALTER TABLE users DROP COLUMN email", self.db.executed)

    def test_destructive_migration_takes_backup(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
            drop_email_migration("003"),
        )

        results = executor.migrate()

        self.assertIsNotNone(results[-1].backup)
        self.assertEqual(results[-1].backup.version, "003")
        self.assertEqual(len(self.dumper.dumps), 1)
        self.assertEqual(self.db.tables["users"], ["id", "name"])

    def test_failed_destructive_migration_restores_backup(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
            drop_email_migration("003"),
        )
        self.db.fail_on = "DROP COLUMN email"

        with self.assertRaises(TransactionError) as ctx:
            executor.migrate()

        self.assertIsNotNone(ctx.exception.restored_backup)
        self.assertEqual(len(self.dumper.restores), 1)
        self.assertEqual(Path(self.dumper.restores[0]).name, ctx.exception.restored_backup)

    def test_backup_required_without_manager(self):
        executor = self.make_executor(drop_email_migration("003"), with_backups=False)
        with self.assertRaises(BackupError):
            executor.migrate()
        self.assertEqual(self.db.executed, [])

    def test_dry_run_executes_nothing(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
        )

        results = executor.migrate(dry_run=True)

        self.assertEqual([r.status for r in results], [MigrationStatus.DRY_RUN] * 2)
        self.assertEqual(results[1].statements, ["ALTER TABLE users ADD COLUMN email VARCHAR(255) NOT NULL"])
        self.assertEqual(self.db.executed, [])
        self.assertEqual(self.ledger.entries(), [])


class TestPreconditions(ExecutorTestCase):
    """Dependency, conflict and validation checks run before any SQL."""

    def test_missing_dependency(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002", depends_on={"000"}),
        )
        with self.assertRaises(MigrationDependencyError) as ctx:
            executor.migrate()
        self.assertEqual(ctx.exception.missing_dependencies, ["000"])
        self.assertEqual(self.db.executed, [])

    def test_dependency_on_later_version(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001", depends_on={"002"}),
            TestDataFactory.create_table_migration("002", "tags"),
        )
        with self.assertRaises(MigrationDependencyError):
            executor.migrate()

    def test_pending_conflict(self):
        executor = self.make_executor(
            TestDataFactory.create_table_migration("001", "tags", conflicts_with={"002"}),
            TestDataFactory.create_table_migration("002", "labels"),
        )
        with self.assertRaises(MigrationConflictError) as ctx:
            executor.migrate()
        self.assertEqual(ctx.exception.conflicting_migrations, ["001", "002"])
        self.assertEqual(self.db.executed, [])

    def test_conflict_with_executed_migration(self):
        executor = self.make_executor(TestDataFactory.create_table_migration("001", "tags"))
        executor.migrate()
        self.repo.save(TestDataFactory.create_table_migration("002", "labels", conflicts_with={"001"}))

        with self.assertRaises(MigrationConflictError):
            executor.migrate()
        self.assertNotIn("labels", self.db.tables)

    def test_validation_failure(self):
        def validate(snapshot):
            if not snapshot.has_table("users"):
                return ValidationResult(valid=False, errors=("users table is missing",))
            return ValidationResult(valid=True)

        record = TestDataFactory.add_email_migration("002", validate=validate)
        executor = self.make_executor(record)

        with self.assertRaises(MigrationValidationError) as ctx:
            executor.migrate()
        self.assertEqual(ctx.exception.validation_errors, ["users table is missing"])


class TestParallelGroups(ExecutorTestCase):
    """Independent migrations run concurrently and commit together."""

    def _independent(self):
        return [
            TestDataFactory.create_table_migration("001", "tags"),
            TestDataFactory.create_table_migration("002", "labels"),
            TestDataFactory.create_table_migration("003", "notes"),
        ]

    def test_independent_migrations_share_a_group(self):
        executor = self.make_executor(*self._independent())

        results = executor.migrate()

        self.assertEqual(len(results), 3)
        self.assertEqual(self.pool.max_checked_out, 3)
        self.assertEqual(self.ledger.versions(), ["001", "002", "003"])
        self.assertEqual(sorted(self.db.tables), ["labels", "notes", "tags"])
        self.assertEqual(self.pool.checked_out, 0)

    def test_group_size_is_bounded(self):
        executor = self.make_executor(*self._independent(), max_parallel=2)
        executor.migrate()
        self.assertEqual(self.pool.max_checked_out, 2)

    def test_sequential_when_max_parallel_is_one(self):
        executor = self.make_executor(*self._independent(), max_parallel=1)
        executor.migrate()
        self.assertEqual(self.pool.max_checked_out, 1)

    def test_shared_table_forces_sequential_run(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
        )
        executor.migrate()
        self.assertEqual(self.pool.max_checked_out, 1)

    def test_failure_in_group_commits_nothing(self):
        self.db.fail_on = "CREATE TABLE labels"
        executor = self.make_executor(*self._independent())

        with self.assertRaises(TransactionError) as ctx:
            executor.migrate()

        self.assertEqual(ctx.exception.version, "002")
        self.assertEqual(ctx.exception.context["group"], ["001", "002", "003"])
        self.assertEqual(self.db.tables, {})
        self.assertFalse(any(e.success for e in self.ledger.entries()))
        self.assertEqual(self.pool.checked_out, 0)


class TestRollback(ExecutorTestCase):
    """Test rollback(), refresh() and fresh()."""

    def _migrated(self):
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
            TestDataFactory.create_table_migration("003", "tags"),
        )
        executor.migrate()
        return executor

    def test_rollback_steps(self):
        executor = self._migrated()

        results = executor.rollback(steps=2)

        self.assertEqual([r.version for r in results], ["003", "002"])
        self.assertTrue(all(r.status == MigrationStatus.ROLLED_BACK for r in results))
        self.assertEqual(self.ledger.versions(), ["001"])
        self.assertEqual(self.db.tables, {"users": ["id", "name"]})

    def test_rollback_defaults_to_one_step(self):
        executor = self._migrated()
        executor.rollback()
        self.assertEqual(self.ledger.versions(), ["001", "002"])

    def test_rollback_to_version(self):
        executor = self._migrated()
        executor.rollback(version="002")
        self.assertEqual(self.ledger.versions(), ["001"])

    def test_rollback_unknown_version(self):
        executor = self._migrated()
        with self.assertRaises(MigrationNotFoundError):
            executor.rollback(version="999")

    def test_rollback_needs_the_record(self):
        executor = self._migrated()
        self.repo.delete("003")
        with self.assertRaises(MigrationNotFoundError):
            executor.rollback()
        self.assertEqual(self.ledger.versions(), ["001", "002", "003"])

    def test_failed_down_keeps_ledger_entry(self):
        executor = self._migrated()
        self.db.fail_on = "DROP TABLE tags"

        with self.assertRaises(TransactionError) as ctx:
            executor.rollback()

        self.assertEqual(ctx.exception.direction, "down")
        self.assertEqual(self.ledger.versions(), ["001", "002", "003"])
        self.assertIn("tags", self.db.tables)

    def test_refresh_requires_force(self):
        executor = self._migrated()
        with self.assertRaises(DestructiveWithoutForceError):
            executor.refresh()
        with self.assertRaises(DestructiveWithoutForceError):
            executor.fresh()

    def test_refresh_reruns_everything(self):
        executor = self._migrated()

        results = executor.refresh(force=True)

        self.assertEqual(len(results), 6)
        self.assertEqual(self.ledger.versions(), ["001", "002", "003"])
        self.assertEqual(self.db.tables["users"], ["id", "name", "email"])

    def test_fresh_drops_everything_and_migrates(self):
        executor = self._migrated()
        with self.pool.connection() as conn:
            conn.execute("CREATE TABLE stray (id INTEGER)")
            conn.commit()

        results = executor.fresh(force=True)

        self.assertEqual(len(results), 3)
        self.assertIn("DROP TABLE IF EXISTS stray CASCADE", self.db.executed)
        self.assertNotIn("stray", self.db.tables)
        self.assertEqual(self.ledger.versions(), ["001", "002", "003"])


class TestStatus(ExecutorTestCase):

    def test_status_reports_pending_failed_and_orphaned(self):
        self.ledger = InMemoryLedger([
            TestDataFactory.ledger_entry("000", minutes=0),
            TestDataFactory.ledger_entry("001", minutes=1),
            TestDataFactory.ledger_entry("003", minutes=2, success=False),
        ])
        executor = self.make_executor(
            TestDataFactory.create_users_migration("001"),
            TestDataFactory.add_email_migration("002"),
            TestDataFactory.create_table_migration("003", "tags"),
        )

        states = {s.version: s for s in executor.status()}

        self.assertEqual(list(states), ["000", "001", "002", "003"])
        self.assertTrue(states["000"].orphaned)
        self.assertTrue(states["001"].executed)
        self.assertFalse(states["002"].executed)
        self.assertFalse(states["002"].last_attempt_failed)
        self.assertTrue(states["003"].last_attempt_failed)


if __name__ == '__main__':
    unittest.main()
