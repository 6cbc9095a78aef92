"""pg_dump / psql based export and import."""

import gzip
import os
import shutil
import subprocess
import tempfile
from typing import Dict, List, Optional, Sequence
import logging

import psycopg2
from psycopg2.extensions import parse_dsn

from schemashift.domain.entities.errors import BackupError
from schemashift.domain.repositories.interfaces import IDumper

logger = logging.getLogger(__name__)

# libpq connection keywords and the environment variables the client tools read them from
_LIBPQ_ENV = {
    "host": "PGHOST",
    "hostaddr": "PGHOSTADDR",
    "port": "PGPORT",
    "user": "PGUSER",
    "password": "PGPASSWORD",
    "dbname": "PGDATABASE",
    "sslmode": "PGSSLMODE",
    "connect_timeout": "PGCONNECT_TIMEOUT",
    "application_name": "PGAPPNAME",
}


class PgDumpDumper(IDumper):
    """
    Streams ``pg_dump`` output through gzip and feeds it back through ``psql``.
    Single Responsibility: Process-level dump/restore.
    """

    def __init__(self, dsn: str, pg_dump: str = "pg_dump", psql: str = "psql"):
        self._dsn = dsn
        self._pg_dump = pg_dump
        self._psql = psql

    def environment(self) -> Dict[str, str]:
        """Process environment carrying the connection, so credentials never reach argv."""
        try:
            params = parse_dsn(self._dsn)
        except psycopg2.ProgrammingError as e:
            raise BackupError(f"Invalid database URL: {e}", original_error=e) from e
        env = dict(os.environ)
        for key, value in params.items():
            if key in _LIBPQ_ENV:
                env[_LIBPQ_ENV[key]] = value
            else:
                logger.debug(f"[PgDumpDumper] Ignoring connection option '{key}'")
        return env

    def dump_command(self, tables: Optional[Sequence[str]] = None) -> List[str]:
        command = [self._pg_dump, "--clean", "--if-exists", "--no-owner"]
        for table in tables or ():
            command.extend(["--table", table])
        return command

    def restore_command(self) -> List[str]:
        return [self._psql, "--quiet", "-v", "ON_ERROR_STOP=1"]

    def dump(self, target_path: str, tables: Optional[Sequence[str]] = None) -> None:
        command = self.dump_command(tables)
        env = self.environment()
        logger.debug(f"[PgDumpDumper] Running {self._pg_dump} into {target_path}")
        # stderr goes to a file so a chatty process cannot block on a full pipe
        with tempfile.TemporaryFile() as errors:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=errors, env=env)
            except OSError as e:
                raise BackupError(
                    f"Cannot run {self._pg_dump}: {e}", backup_path=target_path, original_error=e
                ) from e

            with process.stdout, gzip.open(target_path, "wb") as f_out:
                shutil.copyfileobj(process.stdout, f_out)
            if process.wait() != 0:
                raise BackupError(
                    f"{self._pg_dump} failed: {self._read(errors)}", backup_path=target_path
                )

    def restore(self, source_path: str) -> None:
        command = self.restore_command()
        env = self.environment()
        logger.debug(f"[PgDumpDumper] Restoring {source_path} through {self._psql}")
        with tempfile.TemporaryFile() as errors:
            try:
                process = subprocess.Popen(
                    command, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=errors, env=env
                )
            except OSError as e:
                raise BackupError(
                    f"Cannot run {self._psql}: {e}", backup_path=source_path, original_error=e
                ) from e

            try:
                with gzip.open(source_path, "rb") as f_in:
                    shutil.copyfileobj(f_in, process.stdin)
            except BrokenPipeError:
                logger.debug("[PgDumpDumper] psql closed its input early")
            finally:
                process.stdin.close()
            if process.wait() != 0:
                raise BackupError(
                    f"{self._psql} failed: {self._read(errors)}", backup_path=source_path
                )

    @staticmethod
    def _read(errors) -> str:
        errors.seek(0)
        return errors.read().decode("utf-8", errors="replace").strip()
