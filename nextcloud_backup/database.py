"""MySQL dump, compression and connection checks."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from .config import BackupConfig
from .exceptions import CompressionError, ConnectivityError, DumpError

MYSQLDUMP_TIMEOUT = 3600
GZIP_TIMEOUT = 1800
MYSQL_CHECK_TIMEOUT = 30


class MySQLDumper:
    """Handles mysqldump, gzip and mysql client invocations."""

    def __init__(self, config: BackupConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def _credentials_file(self) -> Iterator[str]:
        """
        Write client credentials to a private option file.

        Passing the file through --defaults-extra-file keeps the password out
        of the process list.
        """
        fd, temp_path = tempfile.mkstemp(suffix=".cnf", text=True)
        try:
            os.chmod(temp_path, 0o600)
            lines = ["[client]"]
            if self.config.db_user:
                lines.append(f"user={self.config.db_user}")
            if self.config.db_password:
                # Quoted so that '#' and spaces survive option file parsing
                password = self.config.db_password.replace("\\", "\\\\").replace('"', '\\"')
                lines.append(f'password="{password}"')
            os.write(fd, ("\n".join(lines) + "\n").encode("utf-8"))
            os.close(fd)
            fd = -1
            yield temp_path
        finally:
            if fd >= 0:
                os.close(fd)
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def build_dump_command(self, credentials_file: str) -> List[str]:
        # --defaults-extra-file must come first
        return [
            "mysqldump",
            f"--defaults-extra-file={credentials_file}",
            "--single-transaction",
            self.config.db_name,
        ]

    def _discard(self, *paths: Path) -> None:
        """Remove partial dump files left by a failed step."""
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                self.logger.warning(f"Could not remove {path}: {e}")

    def dump(self, dump_file: Path) -> Path:
        """
        Dump the configured database into dump_file.

        The partial file is removed if the dump fails.

        Raises:
            DumpError: if mysqldump cannot be run or exits non-zero
        """
        self.logger.info(f"Creating MySQL dump for database: {self.config.db_name}")
        try:
            self._run_dump(dump_file)
        except DumpError:
            self._discard(dump_file)
            raise
        return dump_file

    def _run_dump(self, dump_file: Path) -> None:
        try:
            with self._credentials_file() as credentials_file:
                cmd = self.build_dump_command(credentials_file)
                with open(dump_file, "w", encoding="utf-8") as f:
                    result = subprocess.run(
                        cmd,
                        stdout=f,
                        stderr=subprocess.PIPE,
                        text=True,
                        timeout=MYSQLDUMP_TIMEOUT,
                    )
        except subprocess.TimeoutExpired:
            raise DumpError("mysqldump timed out")
        except (OSError, subprocess.SubprocessError) as e:
            raise DumpError(f"Could not run mysqldump: {e}")

        if result.returncode != 0:
            self.logger.error(f"mysqldump stderr: {(result.stderr or '').strip()}")
            raise DumpError(f"Failed to create MySQL dump (exit code {result.returncode})")

    def compress(self, dump_file: Path) -> Path:
        """
        Compress a dump in place with gzip and return the .gz path.

        Both the plain dump and any partial archive are removed on failure.

        Raises:
            CompressionError: if gzip cannot be run or exits non-zero
        """
        compressed = dump_file.with_name(dump_file.name + ".gz")
        try:
            self._run_gzip(dump_file)
        except CompressionError:
            self._discard(dump_file, compressed)
            raise

        self.logger.info(f"MySQL dump created and compressed: {compressed}")
        return compressed

    def _run_gzip(self, dump_file: Path) -> None:
        try:
            result = subprocess.run(
                ["gzip", str(dump_file)],
                capture_output=True,
                text=True,
                timeout=GZIP_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            raise CompressionError("gzip timed out")
        except (OSError, subprocess.SubprocessError) as e:
            raise CompressionError(f"Could not run gzip: {e}")

        if result.returncode != 0:
            self.logger.error(f"gzip stderr: {(result.stderr or '').strip()}")
            raise CompressionError(f"Failed to compress MySQL dump (exit code {result.returncode})")

    def check_connection(self) -> None:
        """
        Verify that the credentials work and the database can be selected.

        Raises:
            ConnectivityError: if the mysql client fails
        """
        try:
            with self._credentials_file() as credentials_file:
                result = subprocess.run(
                    [
                        "mysql",
                        f"--defaults-extra-file={credentials_file}",
                        "--batch",
                        "--skip-column-names",
                        "-e",
                        "SELECT 1;",
                        self.config.db_name,
                    ],
                    capture_output=True,
                    text=True,
                    timeout=MYSQL_CHECK_TIMEOUT,
                )
        except subprocess.TimeoutExpired:
            raise ConnectivityError("mysql connection check timed out")
        except (OSError, subprocess.SubprocessError) as e:
            raise ConnectivityError(f"Could not run mysql: {e}")

        if result.returncode != 0:
            self.logger.debug(f"mysql stderr: {(result.stderr or '').strip()}")
            raise ConnectivityError(
                f"MySQL connection failed (database: {self.config.db_name}, "
                f"user: {self.config.db_user or 'default'})"
            )
