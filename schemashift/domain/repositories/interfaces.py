from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from schemashift.domain.entities.entity import EntityDefinition
from schemashift.domain.entities.schema import SchemaSnapshot
from schemashift.domain.entities.migration import LedgerEntry, MigrationRecord


class IDatabaseInspector(ABC):
    """Interface for live schema introspection."""

    @abstractmethod
    def get_schema(self) -> SchemaSnapshot:
        """Retrieve the current database schema."""
        pass

    @abstractmethod
    def list_enum_types(self) -> List[str]:
        """Names of user-defined enum types in the inspected schema."""
        pass


class IEntityRepository(ABC):
    """Interface for entity declaration access."""

    @abstractmethod
    def load(self) -> List[EntityDefinition]:
        """Entity declarations in declaration order."""
        pass


class IMigrationLedger(ABC):
    """
    Interface for the persistent record of executed migrations.
    Writes take the caller's connection so they share its transaction.
    """

    @abstractmethod
    def ensure_table(self) -> None:
        """Create the ledger table if it does not exist."""
        pass

    @abstractmethod
    def entries(self) -> List[LedgerEntry]:
        """All entries ordered by execution time."""
        pass

    @abstractmethod
    def record(self, connection: Any, entry: LedgerEntry) -> None:
        """Insert an entry, replacing a failed one for the same version."""
        pass

    @abstractmethod
    def delete(self, connection: Any, version: str) -> None:
        """Remove the entry for a version."""
        pass

    @abstractmethod
    def reset(self, connection: Any) -> None:
        """Remove every entry."""
        pass

    @abstractmethod
    def replace(self, connection: Any, versions: Sequence[str], entry: LedgerEntry) -> None:
        """Swap the entries of ``versions`` for a single entry."""
        pass


class IMigrationRepository(ABC):
    """Interface for migration artifact storage."""

    @abstractmethod
    def all(self) -> List[MigrationRecord]:
        """Every known record, sorted by version."""
        pass

    @abstractmethod
    def get(self, version: str) -> Optional[MigrationRecord]:
        pass

    @abstractmethod
    def save(self, record: MigrationRecord) -> str:
        """Persist a generated record; returns its location."""
        pass

    @abstractmethod
    def delete(self, version: str) -> None:
        pass


class IDumper(ABC):
    """Interface for exporting and importing database content."""

    @abstractmethod
    def dump(self, target_path: str, tables: Optional[Sequence[str]] = None) -> None:
        """Write a gzip-compressed SQL dump to ``target_path``."""
        pass

    @abstractmethod
    def restore(self, source_path: str) -> None:
        """Replace the database content with a dump."""
        pass


class ISQLValidator(ABC):
    """Interface for static checks on generated SQL."""

    @abstractmethod
    def validate_statements(self, statements: Sequence[str]) -> List[str]:
        """Return warnings; raise for statements that must never run."""
        pass
