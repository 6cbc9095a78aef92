"""
Error taxonomy for schema diffing, migration execution and backups.

Every error carries enough context (versions, statements, the original
driver error) for callers to branch on it programmatically. The CLI turns
any of them into a non-zero exit with the message.
"""

from typing import Optional, List, Dict, Any


class SchemaShiftError(Exception):
    """Base exception for all schemashift errors."""

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


class MalformedSnapshotError(SchemaShiftError):
    """Raised when a snapshot cannot be diffed (e.g. duplicate column names)."""

    def __init__(self, message: str, table: Optional[str] = None, column: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.table = table
        self.column = column


class DiffAmbiguityError(SchemaShiftError):
    """Raised when a rename candidate reaches the generator without a decision."""

    def __init__(self, message: str, candidates: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.candidates = candidates or []


class MigrationError(SchemaShiftError):
    """Base exception for migration-related errors."""

    def __init__(self, message: str, version: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.version = version


class MigrationNotFoundError(MigrationError):
    """Raised when a ledger entry or requested version has no migration record."""


class MigrationDependencyError(MigrationError):
    """Raised when migration dependencies are not satisfied."""

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        missing_dependencies: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, version=version, **kwargs)
        self.missing_dependencies = missing_dependencies or []


class MigrationConflictError(MigrationError):
    """Raised when pending migrations are mutually exclusive."""

    def __init__(self, message: str, conflicting_migrations: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.conflicting_migrations = conflicting_migrations or []


class MigrationValidationError(MigrationError):
    """Raised when a migration's validate hook rejects the current schema."""

    def __init__(self, message: str, version: Optional[str] = None, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, version=version, **kwargs)
        self.validation_errors = validation_errors or []


class TransactionError(MigrationError):
    """Raised when the database rejects a statement inside a migration transaction."""

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        direction: str = "up",
        statement: Optional[str] = None,
        restored_backup: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, version=version, **kwargs)
        self.direction = direction
        self.statement = statement
        self.restored_backup = restored_backup


class SquashError(MigrationError):
    """Raised when a run of migrations cannot be squashed."""


class DestructiveWithoutForceError(SchemaShiftError):
    """Raised when fresh/refresh is invoked without explicit confirmation."""

    def __init__(self, operation: str):
        super().__init__(
            f"'{operation}' discards data; re-run with --force to confirm",
            context={"operation": operation},
        )
        self.operation = operation


class BackupError(SchemaShiftError):
    """Raised when a backup cannot be created or restored."""

    def __init__(self, message: str, backup_path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.backup_path = backup_path


class BackupNotFoundError(BackupError):
    """Raised when no backup is tagged with the requested version."""

    def __init__(self, version: str, database: Optional[str] = None):
        where = f" for database '{database}'" if database else ""
        super().__init__(f"No backup found for migration version {version}{where}")
        self.version = version
        self.database = database
