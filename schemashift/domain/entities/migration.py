"""
Migration records, ledger entries and backup descriptors.

A MigrationRecord is plain data: safety flags are fields, and the optional
``dry_run``/``validate`` capabilities are ``None`` when a record does not
provide them. Records produced by the generator also carry the structural
operations they apply, which is what makes replay and squash possible.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from schemashift.domain.entities.operations import SchemaOperation


class MigrationDirection(Enum):
    """Direction of migration execution."""
    UP = "up"
    DOWN = "down"


class MigrationStatus(Enum):
    """Outcome of executing one migration."""
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class ValidationResult:
    """Result of a migration's validate hook."""
    valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class StatementExecutionError(Exception):
    """A statement failed; keeps the SQL text for error context."""

    def __init__(self, statement: str, original: BaseException):
        super().__init__(f"{original} [statement: {statement}]")
        self.statement = statement
        self.original = original


def run_statements(connection: Any, statements: Iterable[str]) -> None:
    """Execute statements in order on a DB-API connection, without committing."""
    with connection.cursor() as cur:
        for statement in statements:
            try:
                cur.execute(statement)
            except Exception as e:
                raise StatementExecutionError(statement, e) from e


MigrationStep = Callable[[Any], None]


@dataclass(frozen=True)
class MigrationRecord:
    """A versioned, reversible schema change."""
    version: str
    up: MigrationStep
    down: MigrationStep
    name: str = ""
    is_destructive: bool = False
    requires_backup: Optional[bool] = None
    auto_rollback_on_error: bool = True
    depends_on: FrozenSet[str] = frozenset()
    conflicts_with: FrozenSet[str] = frozenset()
    can_run_in_parallel: bool = True
    dry_run: Optional[Callable[[Any], List[str]]] = None
    validate: Optional[Callable[[Any], ValidationResult]] = None
    operations: Tuple[SchemaOperation, ...] = ()
    squashed_from: Tuple[str, ...] = ()
    up_sql: Tuple[str, ...] = ()
    down_sql: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.version:
            raise ValueError("Migration version must not be empty")
        if "__" in self.version:
            raise ValueError(f"Migration version '{self.version}' must not contain '__'")
        if self.requires_backup is None:
            object.__setattr__(self, "requires_backup", self.is_destructive)
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "conflicts_with", frozenset(self.conflicts_with))
        object.__setattr__(self, "operations", tuple(self.operations))
        object.__setattr__(self, "squashed_from", tuple(self.squashed_from))
        object.__setattr__(self, "up_sql", tuple(self.up_sql))
        object.__setattr__(self, "down_sql", tuple(self.down_sql))

    @property
    def id(self) -> str:
        return f"{self.version}_{self.name}" if self.name else self.version

    @property
    def supports_dry_run(self) -> bool:
        return self.dry_run is not None

    @property
    def has_operations(self) -> bool:
        return bool(self.operations)

    @property
    def touched_tables(self) -> Optional[FrozenSet[str]]:
        """Tables the operations lock, including FK targets; ``None`` when unknown."""
        if not self.operations:
            return None
        tables = set()
        for op in self.operations:
            tables.add(op.table)
            foreign_key = getattr(op, "foreign_key", None)
            if foreign_key is not None:
                tables.add(foreign_key.referenced_table)
        return frozenset(tables)

    def __str__(self) -> str:
        return f"Migration({self.id})"


def sql_migration(
    version: str,
    up_sql: Sequence[str],
    down_sql: Sequence[str],
    **flags
) -> MigrationRecord:
    """Build a record whose up/down execute fixed SQL lists."""
    up_statements = tuple(up_sql)
    down_statements = tuple(down_sql)

    def up(connection):
        run_statements(connection, up_statements)

    def down(connection):
        run_statements(connection, down_statements)

    def dry_run(connection):
        return list(up_statements)

    return MigrationRecord(
        version=version,
        up=up,
        down=down,
        dry_run=dry_run,
        up_sql=up_statements,
        down_sql=down_statements,
        **flags
    )


@dataclass(frozen=True)
class LedgerEntry:
    """One row of the migration ledger."""
    version: str
    executed_at: datetime
    success: bool
    execution_time_ms: Optional[int] = None


@dataclass(frozen=True)
class BackupFile:
    """A point-in-time export tagged with the migration that triggered it."""
    file_id: str
    path: str
    database: str
    size_bytes: int
    created_at: datetime
    version: Optional[str] = None


@dataclass
class MigrationResult:
    """Result of migration execution."""
    version: str
    direction: MigrationDirection
    status: MigrationStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    statements: List[str] = field(default_factory=list)
    backup: Optional[BackupFile] = None

    @property
    def duration(self) -> Optional[float]:
        """Get migration execution duration in seconds."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass(frozen=True)
class MigrationState:
    """Status row for one known migration."""
    version: str
    name: str
    executed: bool
    executed_at: Optional[datetime] = None
    last_attempt_failed: bool = False
    orphaned: bool = False
