"""Unit tests for BackupManager."""

import gzip
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from schemashift.domain.entities.errors import BackupError, BackupNotFoundError
from schemashift.infrastructure.backup.backup_manager import BackupManager
from tests.fixtures.mock_services import FakeDumper

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


class TestBackupManager(unittest.TestCase):
    """Test backup lifecycle."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.backup_dir = Path(self._tmp.name) / "backups"
        self.clock = FixedClock(NOW)
        self.dumper = FakeDumper()
        self.manager = BackupManager(str(self.backup_dir), "app", self.dumper, clock=self.clock)

    def tearDown(self):
        self._tmp.cleanup()

    def _create_aged(self, version: str, days: int):
        self.clock.moment = NOW - timedelta(days=days)
        backup = self.manager.create(version)
        self.clock.moment = NOW
        return backup

    def test_create_writes_compressed_file(self):
        backup = self.manager.create("20240101000000")

        self.assertTrue(Path(backup.path).exists())
        self.assertEqual(backup.version, "20240101000000")
        self.assertEqual(backup.database, "app")
        self.assertEqual(backup.created_at, NOW)
        self.assertTrue(backup.file_id.startswith("backup__app__20240101000000__"))
        self.assertTrue(backup.file_id.endswith(".sql.gz"))
        with gzip.open(backup.path, "rt", encoding="utf-8") as handle:
            self.assertIn("fake dump", handle.read())

    def test_selective_backup_passes_tables(self):
        self.manager.create("001", tables=["users", "posts"])
        self.assertEqual(self.dumper.dumps[0]["tables"], ["users", "posts"])

    def test_empty_table_list_is_rejected(self):
        with self.assertRaises(ValueError):
            self.manager.create("001", tables=[])

    def test_failed_dump_leaves_no_file(self):
        manager = BackupManager(str(self.backup_dir), "app", FakeDumper(fail_dump=True, partial_write=True))

        with self.assertRaises(BackupError) as ctx:
            manager.create("001")

        self.assertIsNotNone(ctx.exception.original_error)
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_list_is_newest_first_and_per_database(self):
        self._create_aged("001", days=3)
        self._create_aged("002", days=1)
        other = BackupManager(str(self.backup_dir), "other", FakeDumper(), clock=self.clock)
        other.create("003")

        versions = [b.version for b in self.manager.list()]

        self.assertEqual(versions, ["002", "001"])
        self.assertEqual([b.version for b in other.list()], ["003"])

    def test_unrelated_files_are_ignored(self):
        self.backup_dir.mkdir(parents=True)
        (self.backup_dir / "notes.txt").write_text("hello")
        (self.backup_dir / "backup__app__001__garbage.sql.gz").write_bytes(b"")
        self.assertEqual(self.manager.list(), [])

    def test_cleanup_retention_window(self):
        """Backups aged 10, 40 and 90 days with 30 days retention."""
        for version, days in (("001", 10), ("002", 40), ("003", 90)):
            self._create_aged(version, days)

        deleted = self.manager.cleanup(30, now=NOW)

        self.assertEqual(deleted, 2)
        self.assertEqual([b.version for b in self.manager.list()], ["001"])

    def test_cleanup_zero_deletes_everything(self):
        self._create_aged("001", days=1)
        self.manager.create("002")
        self.assertEqual(self.manager.cleanup(0), 2)
        self.assertEqual(self.manager.list(), [])

    def test_cleanup_large_retention_deletes_nothing(self):
        self._create_aged("001", days=400)
        self.assertEqual(self.manager.cleanup(9999), 0)
        self.assertEqual(len(self.manager.list()), 1)

    def test_cleanup_negative_retention(self):
        with self.assertRaises(ValueError):
            self.manager.cleanup(-1)

    def test_restore_uses_latest_backup_for_version(self):
        self._create_aged("001", days=2)
        newest = self.manager.create("001")

        restored = self.manager.restore("001")

        self.assertEqual(restored.file_id, newest.file_id)
        self.assertEqual(self.dumper.restores, [newest.path])
        self.assertTrue(Path(newest.path).exists())

    def test_restore_unknown_version(self):
        with self.assertRaises(BackupNotFoundError) as ctx:
            self.manager.restore("404")
        self.assertEqual(ctx.exception.version, "404")

    def test_restore_failure_is_wrapped(self):
        self.manager.create("001")
        self.dumper.fail_restore = True
        with self.assertRaises(BackupError):
            self.manager.restore("001")

    def test_total_and_format_size(self):
        self.manager.create("001")
        self.assertGreater(self.manager.total_size(), 0)
        self.assertEqual(BackupManager.format_size(512), "512.00 B")
        self.assertEqual(BackupManager.format_size(1536), "1.50 KB")
        self.assertEqual(BackupManager.format_size(5 * 1024 * 1024), "5.00 MB")


if __name__ == '__main__':
    unittest.main()
