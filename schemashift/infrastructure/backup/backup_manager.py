"""
Point-in-time backups taken before risky migrations.

Files are named ``backup__<database>__<version>__<YYYYMMDDHHMMSSffffff>.sql.gz``;
the creation time and version are read back from the name, so listing and
retention never depend on filesystem timestamps.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence
import logging

from schemashift.domain.entities.errors import BackupError, BackupNotFoundError
from schemashift.domain.entities.migration import BackupFile
from schemashift.domain.repositories.interfaces import IDumper

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup__"
BACKUP_SUFFIX = ".sql.gz"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupManager:
    """
    Creates, lists, restores and expires database backups.
    Single Responsibility: Backup file lifecycle.
    """

    def __init__(
        self,
        backup_dir: str,
        database_name: str,
        dumper: IDumper,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._dir = Path(backup_dir)
        self._database = database_name
        self._dumper = dumper
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._dir

    def create(self, version: str, tables: Optional[Sequence[str]] = None) -> BackupFile:
        """Full (or table-selective) compressed export tagged with ``version``."""
        if tables is not None and not tables:
            raise ValueError("No tables specified for selective backup")
        self._dir.mkdir(parents=True, exist_ok=True)
        created_at = self._clock()
        filename = f"{BACKUP_PREFIX}{self._database}__{version}__{created_at.strftime(TIMESTAMP_FORMAT)}{BACKUP_SUFFIX}"
        path = self._dir / filename

        scope = f"tables {', '.join(tables)}" if tables else "full database"
        logger.info(f"[BackupManager] Creating backup {filename} ({scope})")
        try:
            self._dumper.dump(str(path), tables)
        except Exception as e:
            if path.exists():
                path.unlink()
            if isinstance(e, BackupError):
                raise
            raise BackupError(
                f"Backup creation failed: {e}", backup_path=str(path), original_error=e
            ) from e

        backup = self._describe(path)
        logger.info(f"[BackupManager] Backup created: {filename} ({self.format_size(backup.size_bytes)})")
        return backup

    def list(self) -> List[BackupFile]:
        """Backups of this database, most recent first."""
        if not self._dir.exists():
            return []
        backups = []
        for path in self._dir.iterdir():
            backup = self._describe(path)
            if backup is not None and backup.database == self._database:
                backups.append(backup)
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    def find(self, version: str) -> Optional[BackupFile]:
        """The most recent backup tagged exactly with ``version``."""
        for backup in self.list():
            if backup.version == version:
                return backup
        return None

    def restore(self, version: str) -> BackupFile:
        """Replace the database content with the most recent backup for ``version``."""
        backup = self.find(version)
        if backup is None:
            raise BackupNotFoundError(version, self._database)

        logger.warning(f"[BackupManager] Restoring from backup: {backup.file_id}")
        try:
            self._dumper.restore(backup.path)
        except BackupError:
            raise
        except Exception as e:
            raise BackupError(
                f"Restore failed: {e}", backup_path=backup.path, original_error=e
            ) from e
        logger.info(f"[BackupManager] Database restored from {backup.file_id}")
        return backup

    def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete backups created at or before ``now - retention_days``; returns the count."""
        if retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {retention_days}")
        now = now or self._clock()
        try:
            cutoff = now - timedelta(days=retention_days)
        except OverflowError:
            return 0

        deleted = 0
        for backup in self.list():
            if backup.created_at <= cutoff:
                Path(backup.path).unlink()
                logger.info(f"[BackupManager] Deleted old backup: {backup.file_id}")
                deleted += 1

        if deleted:
            logger.info(f"[BackupManager] Cleaned up {deleted} old backup(s)")
        return deleted

    def total_size(self) -> int:
        return sum(b.size_bytes for b in self.list())

    @staticmethod
    def format_size(size_bytes: int) -> str:
        """Format bytes to human-readable size."""
        units = ['B', 'KB', 'MB', 'GB']
        size = float(size_bytes)
        unit_index = 0
        while size >= 1024 and unit_index < len(units) - 1:
            size /= 1024
            unit_index += 1
        return f"{size:.2f} {units[unit_index]}"

    def _describe(self, path: Path) -> Optional[BackupFile]:
        name = path.name
        if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)) or not path.is_file():
            return None
        stem = name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
        parts = stem.rsplit("__", 2)
        if len(parts) != 3:
            return None
        database, version, stamp = parts
        try:
            created_at = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug(f"[BackupManager] Ignoring file with unreadable timestamp: {name}")
            return None
        return BackupFile(
            file_id=name,
            path=str(path),
            database=database,
            size_bytes=path.stat().st_size,
            created_at=created_at,
            version=version or None,
        )
