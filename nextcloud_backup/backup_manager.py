"""Core backup orchestration: dump, transfer, directory sync and cleanup."""

import logging
import os
import posixpath
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .config import BackupConfig, directory_name
from .database import MySQLDumper
from .exceptions import BackupError
from .ntfs import INCOMPATIBLE_REASON, find_incompatible_paths, rsync_exclude_pattern
from .remote import DEFAULT_EXCLUDES, RemoteManager
from .retention import RemoteDumpRetentionPolicy


def format_size(size_bytes: float) -> str:
    """Format byte size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0

    return f"{size_bytes:.1f} PB"


class StepOutcome:
    """Outcome of one step of a backup run."""

    def __init__(self, name: str, success: bool, message: str = ""):
        self.name = name
        self.success = success
        self.message = message

    def __repr__(self) -> str:
        state = "ok" if self.success else "failed"
        return f"StepOutcome({self.name!r}, {state}, {self.message!r})"


class SkippedFileRecord:
    """A path left out of a transfer and why."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason

    def format_line(self, when: datetime) -> str:
        return f"{when.strftime('%Y-%m-%d %H:%M:%S')} - SKIPPED: {self.path} - {self.reason}"


class SkippedFilesLog:
    """Append-only log of skipped paths, read back by the 'skipped' command."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: SkippedFileRecord, when: Optional[datetime] = None) -> None:
        line = record.format_line(when or datetime.now())
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()

    def tail(self, lines: int = 50) -> List[str]:
        if lines <= 0:
            return []
        return self.read_lines()[-lines:]

    def count(self) -> int:
        return len(self.read_lines())


class BackupRun:
    """State of one backup execution."""

    def __init__(self, start_time: datetime):
        self.start_time = start_time
        self.steps: List[StepOutcome] = []
        self.skipped: List[SkippedFileRecord] = []
        self.warnings: List[str] = []
        self.status = "running"
        self._lock = threading.Lock()

    def record_step(self, name: str, success: bool, message: str = "") -> None:
        with self._lock:
            self.steps.append(StepOutcome(name, success, message))

    def add_skipped(self, record: SkippedFileRecord) -> None:
        with self._lock:
            self.skipped.append(record)

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)


class BackupSummary:
    """Result of a successful backup run."""

    def __init__(
        self,
        run: BackupRun,
        dump_file: str,
        synced_dirs: List[str],
        missing_dirs: List[str],
        bytes_transferred: int = 0,
        deleted_dumps: Optional[List[str]] = None,
        execution_time: float = 0.0,
    ):
        self.run = run
        self.dump_file = dump_file
        self.synced_dirs = synced_dirs
        self.missing_dirs = missing_dirs
        self.bytes_transferred = bytes_transferred
        self.deleted_dumps = deleted_dumps or []
        self.execution_time = execution_time

    @property
    def skipped_count(self) -> int:
        return len(self.run.skipped)


class BackupManager:
    """Main backup orchestration class."""

    def __init__(
        self,
        config: BackupConfig,
        dumper: Optional[MySQLDumper] = None,
        remote: Optional[RemoteManager] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.dumper = dumper or MySQLDumper(config)
        self.remote = remote or RemoteManager(config)
        self.retention = RemoteDumpRetentionPolicy(config.mysql_retention_days)
        self.skipped_log = SkippedFilesLog(config.skipped_log_file)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def _step(self, run: BackupRun, name: str) -> Iterator[None]:
        try:
            yield
        except BackupError as e:
            run.record_step(name, False, str(e))
            self.logger.error(f"ERROR: {e}")
            raise
        run.record_step(name, True)

    def run_backup(self) -> BackupSummary:
        """
        Run one complete backup.

        Steps run in order and the first fatal failure aborts the run. A
        missing source directory only produces a warning, and the remote
        retention cleanup never fails the run.

        Raises:
            BackupError: the subclass matching the step that failed
        """
        start_time = self.clock()
        run = BackupRun(start_time)
        destination = self.config.destination

        try:
            with self._step(run, "prepare"):
                Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
                Path(self.config.temp_dir).mkdir(parents=True, exist_ok=True)

            self.logger.info("Starting backup process...")

            timestamp = start_time.strftime(destination.timestamp_format)
            dump_file = Path(self.config.temp_dir) / f"mysql_dump_{timestamp}.sql"

            with self._step(run, "dump"):
                self.dumper.dump(dump_file)

            with self._step(run, "compress"):
                compressed = self.dumper.compress(dump_file)

            bytes_transferred = 0
            with self._step(run, "transfer_dump"):
                self.logger.info("Syncing MySQL dump to remote server...")
                self.remote.ensure_remote_dir(self.config.remote_db_dir)
                bytes_transferred += self.remote.rsync(
                    str(compressed), self.config.remote_db_dir
                )

            with self._step(run, "sync_directories"):
                self.logger.info("Starting incremental directory backup...")
                synced, missing, dir_bytes = self._sync_directories(run)
                bytes_transferred += dir_bytes

        except BackupError:
            run.status = "failed"
            raise

        self._cleanup_local_dumps()
        run.record_step("cleanup_local", True)

        deleted = self._cleanup_remote_dumps()
        run.record_step("retention", True, f"{len(deleted)} expired dumps deleted")

        if run.skipped:
            self.logger.warning(
                f"WARNING: {len(run.skipped)} files were skipped due to NTFS incompatibility"
            )
            self.logger.warning(f"Check {self.skipped_log.path} for details")

        run.status = "success"
        execution_time = (self.clock() - start_time).total_seconds()
        self.logger.info("Backup process completed successfully")

        return BackupSummary(
            run=run,
            dump_file=compressed.name,
            synced_dirs=synced,
            missing_dirs=missing,
            bytes_transferred=bytes_transferred,
            deleted_dumps=deleted,
            execution_time=execution_time,
        )

    def _sync_directories(self, run: BackupRun) -> Tuple[List[str], List[str], int]:
        """Sync every configured directory, sequentially or on a bounded pool."""
        dirs = self.config.backup_dirs
        results: Dict[str, Optional[int]] = {}

        if self.config.dir_sync_workers <= 1 or len(dirs) <= 1:
            for source_dir in dirs:
                results[source_dir] = self._sync_directory(run, source_dir)
        else:
            executor = ThreadPoolExecutor(max_workers=self.config.dir_sync_workers)
            try:
                futures = {
                    executor.submit(self._sync_directory, run, source_dir): source_dir
                    for source_dir in dirs
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            finally:
                # Pending directories are dropped once one transfer has failed
                executor.shutdown(wait=True, cancel_futures=True)

        synced = [d for d in dirs if results.get(d) is not None]
        missing = [d for d in dirs if d in results and results[d] is None]
        total = sum(results[d] for d in synced)
        return synced, missing, total

    def remote_path_for(self, source_dir: str) -> str:
        """Remote target for a source directory: <root>/directories/<basename>."""
        dir_name = directory_name(source_dir)
        return posixpath.join(self.config.remote_directories_root, dir_name)

    def _sync_directory(self, run: BackupRun, source_dir: str) -> Optional[int]:
        """
        Sync one directory to the remote host.

        Returns:
            Bytes transferred, or None when the directory does not exist
        """
        if not Path(source_dir).is_dir():
            message = f"WARNING: Directory not found: {source_dir}"
            self.logger.warning(message)
            run.add_warning(message)
            return None

        self.logger.info(f"Backing up directory: {source_dir}")
        remote_dir = self.remote_path_for(source_dir)
        self.remote.ensure_remote_dir(remote_dir)

        source = source_dir.rstrip("/") + "/"
        destination = self.config.destination

        if not destination.restricts_filenames:
            self.logger.info("Using standard rsync (no NTFS compatibility mode)")
            transferred = self.remote.rsync(
                source, remote_dir, delete=True, excludes=DEFAULT_EXCLUDES
            )
        else:
            self.logger.info("Using NTFS compatibility mode - checking for incompatible files...")
            excluded = self._collect_incompatible(run, source_dir)
            if excluded:
                self.logger.info(f"Excluding {len(excluded)} incompatible items")
                transferred = self._rsync_with_exclude_list(source, remote_dir, excluded)
            else:
                self.logger.info("No incompatible files found")
                transferred = self.remote.rsync(
                    source, remote_dir, delete=True, excludes=DEFAULT_EXCLUDES
                )

        self.logger.info(f"Successfully backed up directory: {source_dir}")
        return transferred

    def _collect_incompatible(self, run: BackupRun, source_dir: str) -> List[str]:
        accepts = self.config.destination.accepts_path
        excluded = []
        for rel_path in find_incompatible_paths(source_dir, accepts):
            full_path = os.path.join(source_dir, rel_path)
            record = SkippedFileRecord(full_path, INCOMPATIBLE_REASON)
            run.add_skipped(record)
            self.skipped_log.append(record)
            self.logger.info(f"SKIPPED: {full_path} (NTFS incompatible)")
            excluded.append(rel_path)
        return excluded

    def _rsync_with_exclude_list(
        self, source: str, remote_dir: str, excluded: List[str]
    ) -> int:
        with tempfile.NamedTemporaryFile(
            "w",
            dir=self.config.temp_dir,
            prefix="ntfs_excludes_",
            suffix=".txt",
            delete=False,
            encoding="utf-8",
        ) as f:
            for rel_path in excluded:
                f.write(rsync_exclude_pattern(rel_path) + "\n")
            exclude_file = f.name

        try:
            return self.remote.rsync(
                source,
                remote_dir,
                delete=True,
                excludes=DEFAULT_EXCLUDES,
                exclude_from=exclude_file,
            )
        finally:
            os.unlink(exclude_file)

    def _cleanup_local_dumps(self) -> None:
        """Remove compressed dumps left in the temp directory."""
        for leftover in Path(self.config.temp_dir).glob("*.sql.gz"):
            try:
                leftover.unlink()
            except OSError as e:
                self.logger.warning(f"Could not remove {leftover}: {e}")

    def _cleanup_remote_dumps(self) -> List[str]:
        """Delete remote dumps past the retention window (best effort)."""
        try:
            dumps = self.remote.list_dumps(self.config.remote_db_dir)
            expired = self.retention.select_expired(dumps, self.clock().timestamp())
            paths = [dump.path for dump in expired]
            if paths:
                self.remote.delete_files(paths)
                for path in paths:
                    self.logger.info(f"Deleted expired dump: {path}")
            return paths
        except (BackupError, OSError) as e:
            self.logger.debug(f"Remote retention cleanup failed: {e}")
            return []
