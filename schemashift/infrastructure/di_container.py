"""Dependency Injection Container."""

from typing import Optional
import logging

from schemashift.infrastructure.config import Settings

logger = logging.getLogger(__name__)


class DIContainer:
    """
    Dependency Injection Container.
    Follows Dependency Inversion Principle.
    """

    def __init__(self):
        self._settings: Optional[Settings] = None
        self._services = {}

    def configure(self, settings: Settings):
        """Configure the container."""
        self._settings = settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    def get_pool(self):
        """Get connection pool."""
        if "pool" not in self._services:
            from schemashift.infrastructure.database.connection import ConnectionPool
            self._services["pool"] = ConnectionPool(self.settings.database_url, max_size=self.settings.pool_size)
        return self._services["pool"]

    def get_inspector(self):
        """Get database inspector."""
        if "inspector" not in self._services:
            from schemashift.infrastructure.database.inspector import PostgresInspector
            self._services["inspector"] = PostgresInspector(self.get_pool())
        return self._services["inspector"]

    def get_ledger(self):
        """Get migration ledger."""
        if "ledger" not in self._services:
            from schemashift.infrastructure.repositories.ledger_repository import PostgresMigrationLedger
            self._services["ledger"] = PostgresMigrationLedger(self.get_pool())
        return self._services["ledger"]

    def get_migration_repository(self):
        """Get migration repository."""
        if "migration_repository" not in self._services:
            from schemashift.infrastructure.repositories.migration_repository import FileMigrationRepository
            self._services["migration_repository"] = FileMigrationRepository(self.settings.migrations_dir)
        return self._services["migration_repository"]

    def get_entity_repository(self):
        """Get entity repository."""
        if "entity_repository" not in self._services:
            from schemashift.infrastructure.repositories.entity_repository import EntityRepository
            if not self.settings.entities:
                raise ValueError("No entity module configured; set SCHEMASHIFT_ENTITIES or pass --entities")
            self._services["entity_repository"] = EntityRepository(self.settings.entities)
        return self._services["entity_repository"]

    def get_backup_manager(self):
        """Get backup manager."""
        if "backup_manager" not in self._services:
            from schemashift.infrastructure.backup.backup_manager import BackupManager
            from schemashift.infrastructure.backup.pg_dumper import PgDumpDumper

            dumper = PgDumpDumper(self.settings.database_url)
            self._services["backup_manager"] = BackupManager(
                self.settings.backup_dir,
                self.settings.database_name,
                dumper,
            )
        return self._services["backup_manager"]

    def get_diff_engine(self):
        """Get diff engine."""
        if "diff_engine" not in self._services:
            from schemashift.domain.services.diff_engine import DiffEngine
            self._services["diff_engine"] = DiffEngine()
        return self._services["diff_engine"]

    def get_builder(self):
        """Get migration builder."""
        if "builder" not in self._services:
            from schemashift.domain.services.migration_builder import MigrationBuilder
            self._services["builder"] = MigrationBuilder()
        return self._services["builder"]

    def get_validator(self):
        """Get SQL validator."""
        if "validator" not in self._services:
            from schemashift.infrastructure.validators.sql_validator import SQLValidator
            self._services["validator"] = SQLValidator()
        return self._services["validator"]

    def get_generator(self):
        """Get migration generator."""
        if "generator" not in self._services:
            from schemashift.domain.services.migration_generator import MigrationGenerator
            self._services["generator"] = MigrationGenerator(self.get_builder(), self.get_validator())
        return self._services["generator"]

    def get_squasher(self):
        """Get migration squasher."""
        if "squasher" not in self._services:
            from schemashift.domain.services.squasher import MigrationSquasher
            self._services["squasher"] = MigrationSquasher(self.get_diff_engine(), self.get_builder())
        return self._services["squasher"]

    def get_executor(self):
        """Get migration executor."""
        if "executor" not in self._services:
            from schemashift.application.orchestrators.migration_executor import MigrationExecutor

            # One pooled connection stays free for failure handling
            max_parallel = max(1, min(self.settings.max_parallel, self.settings.pool_size - 1))
            self._services["executor"] = MigrationExecutor(
                pool=self.get_pool(),
                ledger=self.get_ledger(),
                repository=self.get_migration_repository(),
                backup_manager=self.get_backup_manager(),
                inspector=self.get_inspector(),
                max_parallel=max_parallel,
            )
            logger.info(f"[DIContainer] Executor ready (max_parallel={max_parallel})")
        return self._services["executor"]

    def get_generate_migration_use_case(self):
        """Get generate migration use case."""
        if "generate_migration" not in self._services:
            from schemashift.application.use_case.generate_migration import GenerateMigrationUseCase
            from schemashift.domain.services.entity_schema_builder import EntitySchemaBuilder

            self._services["generate_migration"] = GenerateMigrationUseCase(
                entity_repository=self.get_entity_repository(),
                inspector=self.get_inspector(),
                migration_repository=self.get_migration_repository(),
                ledger=self.get_ledger(),
                schema_builder=EntitySchemaBuilder(),
                diff_engine=self.get_diff_engine(),
                generator=self.get_generator(),
            )
        return self._services["generate_migration"]

    def get_squash_migrations_use_case(self):
        """Get squash migrations use case."""
        if "squash_migrations" not in self._services:
            from schemashift.application.use_case.squash_migrations import SquashMigrationsUseCase
            self._services["squash_migrations"] = SquashMigrationsUseCase(
                pool=self.get_pool(),
                migration_repository=self.get_migration_repository(),
                ledger=self.get_ledger(),
                squasher=self.get_squasher(),
            )
        return self._services["squash_migrations"]

    def close(self):
        """Release pooled connections."""
        pool = self._services.get("pool")
        if pool is not None and hasattr(pool, "close"):
            pool.close()
