"""
File-backed migration repository.

Three artifact kinds live side by side in the migrations directory:
``V<version>__<name>.json`` (generated), ``.sql`` (hand-written, ``-- UP`` /
``-- DOWN`` sections) and ``.py`` (a module exposing ``migration``).
"""

import importlib.util
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import logging

import sqlparse
from pydantic import BaseModel, Field

from schemashift.domain.entities.errors import MigrationError, MigrationNotFoundError
from schemashift.domain.entities.migration import MigrationRecord, sql_migration
from schemashift.domain.repositories.interfaces import IMigrationRepository
from schemashift.infrastructure.repositories.operation_codec import decode_operations, encode_operations

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = (".json", ".sql", ".py")


class MigrationArtifact(BaseModel):
    """On-disk form of a generated migration record."""
    version: str = Field(..., description="Sortable migration version")
    name: str = Field("", description="Human readable slug")
    is_destructive: bool = False
    requires_backup: bool = False
    auto_rollback_on_error: bool = True
    can_run_in_parallel: bool = True
    depends_on: List[str] = Field(default_factory=list)
    conflicts_with: List[str] = Field(default_factory=list)
    up: List[str] = Field(default_factory=list, description="Forward SQL statements")
    down: List[str] = Field(default_factory=list, description="Reverse SQL statements")
    operations: List[Dict[str, Any]] = Field(default_factory=list, description="Structural operations")
    squashed_from: List[str] = Field(default_factory=list)
    generated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: MigrationRecord) -> "MigrationArtifact":
        return cls(
            version=record.version,
            name=record.name,
            is_destructive=record.is_destructive,
            requires_backup=bool(record.requires_backup),
            auto_rollback_on_error=record.auto_rollback_on_error,
            can_run_in_parallel=record.can_run_in_parallel,
            depends_on=sorted(record.depends_on),
            conflicts_with=sorted(record.conflicts_with),
            up=list(record.up_sql),
            down=list(record.down_sql),
            operations=encode_operations(record.operations),
            squashed_from=list(record.squashed_from),
            generated_at=datetime.now(timezone.utc),
        )

    def to_record(self) -> MigrationRecord:
        return sql_migration(
            self.version,
            self.up,
            self.down,
            name=self.name,
            is_destructive=self.is_destructive,
            requires_backup=self.requires_backup,
            auto_rollback_on_error=self.auto_rollback_on_error,
            can_run_in_parallel=self.can_run_in_parallel,
            depends_on=frozenset(self.depends_on),
            conflicts_with=frozenset(self.conflicts_with),
            operations=decode_operations(self.operations),
            squashed_from=tuple(self.squashed_from),
        )


def parse_artifact_name(filename: str) -> Optional[Tuple[str, str]]:
    """``V20240101120000__add_email.json`` -> (``20240101120000``, ``add_email``)."""
    stem, suffix = os.path.splitext(filename)
    if suffix not in ARTIFACT_SUFFIXES or not stem.startswith("V") or "__" not in stem:
        return None
    version, name = stem[1:].split("__", 1)
    if not version:
        return None
    return version, name


def split_statements(sql: str) -> List[str]:
    """Split a SQL section into statements, without comments, trailing semicolons or empty fragments."""
    statements = []
    for raw in sqlparse.split(sql):
        statement = sqlparse.format(raw, strip_comments=True).strip().rstrip(";").strip()
        if statement:
            statements.append(statement)
    return statements


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> frozenset:
    return frozenset(v.strip() for v in value.split(",") if v.strip())


class FileMigrationRepository(IMigrationRepository):
    """
    Loads and stores migration artifacts in a directory.
    Single Responsibility: Migration artifact persistence.
    """

    def __init__(self, migrations_dir: str):
        self._dir = Path(migrations_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    def all(self) -> List[MigrationRecord]:
        """Every artifact in the directory, sorted by version."""
        if not self._dir.exists():
            return []
        records: Dict[str, MigrationRecord] = {}
        for path in sorted(self._dir.iterdir()):
            parsed = parse_artifact_name(path.name)
            if parsed is None or not path.is_file():
                continue
            version, name = parsed
            if version in records:
                raise MigrationError(
                    f"Duplicate migration version {version} ({path.name})", version=version
                )
            records[version] = self._load(path, version, name)
        logger.debug(f"[FileMigrationRepository] Loaded {len(records)} migrations from {self._dir}")
        return [records[v] for v in sorted(records)]

    def get(self, version: str) -> Optional[MigrationRecord]:
        path = self.path_for(version)
        if path is None:
            return None
        _, name = parse_artifact_name(path.name)
        return self._load(path, version, name)

    def path_for(self, version: str) -> Optional[Path]:
        if not self._dir.exists():
            return None
        for path in self._dir.iterdir():
            parsed = parse_artifact_name(path.name)
            if parsed and parsed[0] == version:
                return path
        return None

    def save(self, record: MigrationRecord) -> str:
        """Write a record as a JSON artifact."""
        if not record.up_sql and not record.operations:
            raise MigrationError(
                f"Migration {record.version} has no SQL to store", version=record.version
            )
        self._dir.mkdir(parents=True, exist_ok=True)
        existing = self.path_for(record.version)
        if existing is not None:
            raise MigrationError(
                f"Migration version {record.version} already exists ({existing.name})",
                version=record.version,
            )
        path = self._dir / f"V{record.version}__{record.name or 'migration'}.json"
        artifact = MigrationArtifact.from_record(record)
        path.write_text(json.dumps(artifact.model_dump(mode="json"), indent=2), encoding="utf-8")
        logger.info(f"[FileMigrationRepository] Saved {path.name}")
        return str(path)

    def delete(self, version: str) -> None:
        path = self.path_for(version)
        if path is None:
            raise MigrationNotFoundError(f"Migration {version} not found", version=version)
        path.unlink()
        logger.info(f"[FileMigrationRepository] Deleted {path.name}")

    def _load(self, path: Path, version: str, name: str) -> MigrationRecord:
        if path.suffix == ".json":
            return self._load_json_migration(path, version)
        if path.suffix == ".sql":
            return self._load_sql_migration(path, version, name)
        return self._load_python_migration(path, version)

    def _load_json_migration(self, path: Path, version: str) -> MigrationRecord:
        artifact = MigrationArtifact.model_validate(json.loads(path.read_text(encoding="utf-8")))
        if artifact.version != version:
            raise MigrationError(
                f"{path.name} declares version {artifact.version}", version=version
            )
        return artifact.to_record()

    def _load_sql_migration(self, path: Path, version: str, name: str) -> MigrationRecord:
        """Load SQL migration from file."""
        content = path.read_text(encoding="utf-8")
        flags = self._parse_sql_metadata(content)
        up_sql, down_sql = self._split_sql_migration(content)
        up_statements = split_statements(up_sql)
        if not up_statements:
            raise MigrationError(f"No UP section found in migration: {path.name}", version=version)
        return sql_migration(version, up_statements, split_statements(down_sql), name=name, **flags)

    def _parse_sql_metadata(self, content: str) -> Dict[str, Any]:
        """Parse record flags from SQL header comments."""
        flags: Dict[str, Any] = {}
        for line in content.split('\n'):
            line = line.strip()
            if line.startswith('-- Depends:'):
                flags["depends_on"] = _parse_list(line[11:])
            elif line.startswith('-- Conflicts:'):
                flags["conflicts_with"] = _parse_list(line[13:])
            elif line.startswith('-- Destructive:'):
                flags["is_destructive"] = _parse_bool(line[15:])
            elif line.startswith('-- Backup:'):
                flags["requires_backup"] = _parse_bool(line[10:])
            elif line.startswith('-- Parallel:'):
                flags["can_run_in_parallel"] = _parse_bool(line[12:])
            elif line.startswith('-- AutoRollback:'):
                flags["auto_rollback_on_error"] = _parse_bool(line[16:])
        return flags

    def _split_sql_migration(self, content: str) -> Tuple[str, str]:
        """Split SQL migration into UP and DOWN sections."""
        up_lines = []
        down_lines = []
        current_section = None

        for line in content.split('\n'):
            line_upper = line.strip().upper()

            if line_upper.startswith('-- UP'):
                current_section = 'up'
                continue
            elif line_upper.startswith('-- DOWN'):
                current_section = 'down'
                continue

            if current_section == 'up':
                up_lines.append(line)
            elif current_section == 'down':
                down_lines.append(line)
            elif current_section is None and not line.strip().startswith('--'):
                # no section markers yet: treat as UP
                up_lines.append(line)

        return '\n'.join(up_lines).strip(), '\n'.join(down_lines).strip()

    def _load_python_migration(self, path: Path, version: str) -> MigrationRecord:
        """Load a Python migration module exposing ``migration``."""
        spec = importlib.util.spec_from_file_location(f"schemashift_migration_{version}", path)
        if not spec or not spec.loader:
            raise MigrationError(f"Cannot load migration module: {path.name}", version=version)

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        record = getattr(module, "migration", None)
        if not isinstance(record, MigrationRecord):
            raise MigrationError(f"No MigrationRecord named 'migration' in: {path.name}", version=version)
        if record.version != version:
            raise MigrationError(
                f"{path.name} declares version {record.version}", version=version
            )
        return record
