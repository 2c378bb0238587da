"""ssh and rsync operations against the backup host."""

from __future__ import annotations

import logging
import posixpath
import re
import shlex
import subprocess
from typing import List, NamedTuple, Optional, Sequence

from .config import BackupConfig
from .exceptions import ConnectivityError, TransferError

SSH_TIMEOUT = 300
SSH_PROBE_CONNECT_TIMEOUT = 10
RSYNC_TIMEOUT = 6 * 3600

DEFAULT_EXCLUDES = (".git", ".DS_Store", "*.tmp")
WRITE_TEST_DIR_NAME = ".nextcloud-backup-write-test"

_TRANSFERRED_PATTERN = re.compile(r"Total transferred file size:\s*([\d,.]+)")


class RemoteDump(NamedTuple):
    """A database dump found on the remote host."""

    path: str
    mtime: float


class RemoteManager:
    """Handles ssh and rsync operations against the configured target."""

    def __init__(self, config: BackupConfig):
        self.config = config
        self.target = config.ssh_target
        self.logger = logging.getLogger(__name__)

    def _ssh(
        self,
        remote_args: Sequence[str],
        timeout: int = SSH_TIMEOUT,
        ssh_options: Sequence[str] = (),
    ) -> subprocess.CompletedProcess:
        # ssh joins its arguments into one remote shell command line
        remote_command = shlex.join(remote_args)
        cmd = ["ssh", *ssh_options, self.target, remote_command]
        self.logger.debug(f"Running ssh command: {' '.join(cmd)}")
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)

    def ensure_remote_dir(self, remote_path: str) -> None:
        """
        Create a directory on the remote host if it is missing.

        Raises:
            TransferError: if ssh fails
        """
        try:
            result = self._ssh(["mkdir", "-p", "--", remote_path])
        except subprocess.TimeoutExpired:
            raise TransferError(f"Timed out creating remote directory: {remote_path}")
        except (OSError, subprocess.SubprocessError) as e:
            raise TransferError(f"Could not run ssh: {e}")

        if result.returncode != 0:
            self.logger.error(f"ssh stderr: {result.stderr.strip()}")
            raise TransferError(f"Failed to create remote directory: {remote_path}")

    def build_rsync_command(
        self,
        source: str,
        remote_dir: str,
        delete: bool = False,
        excludes: Sequence[str] = (),
        exclude_from: Optional[str] = None,
    ) -> List[str]:
        cmd = ["rsync", "-avz", "--protect-args", "--stats"]
        if delete:
            cmd.append("--delete")
        if exclude_from:
            cmd.append(f"--exclude-from={exclude_from}")
        for pattern in excludes:
            cmd.append(f"--exclude={pattern}")

        modify_window = self.config.destination.modify_window
        if modify_window > 0:
            cmd.append(f"--modify-window={modify_window}")

        cmd.extend([source, f"{self.target}:{remote_dir.rstrip('/')}/"])
        return cmd

    def rsync(
        self,
        source: str,
        remote_dir: str,
        delete: bool = False,
        excludes: Sequence[str] = (),
        exclude_from: Optional[str] = None,
    ) -> int:
        """
        Copy a file or directory to the remote host with rsync.

        Returns:
            Bytes transferred, as reported by rsync --stats

        Raises:
            TransferError: if rsync cannot be run or exits non-zero
        """
        cmd = self.build_rsync_command(
            source, remote_dir, delete=delete, excludes=excludes, exclude_from=exclude_from
        )
        self.logger.debug(f"Running rsync command: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=RSYNC_TIMEOUT
            )
        except subprocess.TimeoutExpired:
            raise TransferError(f"rsync of {source} timed out")
        except (OSError, subprocess.SubprocessError) as e:
            raise TransferError(f"Could not run rsync: {e}")

        if result.returncode != 0:
            self.logger.error(f"rsync stderr: {result.stderr.strip()}")
            raise TransferError(
                f"rsync of {source} failed with exit code {result.returncode}"
            )

        return self._parse_rsync_stats(result.stdout)

    def _parse_rsync_stats(self, output: str) -> int:
        """Parse rsync --stats output to extract bytes transferred."""
        match = _TRANSFERRED_PATTERN.search(output or "")
        if not match:
            return 0
        try:
            return int(match.group(1).replace(",", "").replace(".", ""))
        except ValueError:
            return 0

    def list_dumps(self, remote_dir: str) -> List[RemoteDump]:
        """
        List compressed dumps below a remote directory with their mtimes.

        Raises:
            TransferError: if the listing fails
        """
        try:
            result = self._ssh(
                ["find", remote_dir, "-type", "f", "-name", "*.sql.gz", "-printf", r"%T@ %p\n"]
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise TransferError(f"Could not list remote dumps: {e}")

        if result.returncode != 0:
            raise TransferError(f"Listing remote dumps failed: {result.stderr.strip()}")

        dumps = []
        for line in result.stdout.splitlines():
            mtime, _, path = line.strip().partition(" ")
            if not path:
                continue
            try:
                dumps.append(RemoteDump(path=path, mtime=float(mtime)))
            except ValueError:
                continue
        return dumps

    def delete_files(self, paths: Sequence[str]) -> None:
        """
        Delete files on the remote host.

        Raises:
            TransferError: if ssh fails
        """
        if not paths:
            return
        try:
            result = self._ssh(["rm", "-f", "--", *paths])
        except (OSError, subprocess.SubprocessError) as e:
            raise TransferError(f"Could not delete remote files: {e}")

        if result.returncode != 0:
            raise TransferError(f"Deleting remote files failed: {result.stderr.strip()}")

    def probe(self) -> None:
        """
        Check that the target accepts a non-interactive ssh login.

        Raises:
            ConnectivityError: if the connection fails
        """
        try:
            result = self._ssh(
                ["echo", "SSH OK"],
                timeout=SSH_PROBE_CONNECT_TIMEOUT * 3,
                ssh_options=[
                    "-o",
                    f"ConnectTimeout={SSH_PROBE_CONNECT_TIMEOUT}",
                    "-o",
                    "BatchMode=yes",
                ],
            )
        except subprocess.TimeoutExpired:
            raise ConnectivityError(f"SSH connection to {self.target} timed out")
        except (OSError, subprocess.SubprocessError) as e:
            raise ConnectivityError(f"Could not run ssh: {e}")

        if result.returncode != 0:
            raise ConnectivityError(f"SSH connection failed to {self.target}")

    def check_writable(self, remote_dir: str) -> None:
        """
        Create, write and remove a marker directory under remote_dir.

        Raises:
            ConnectivityError: if any part of the round trip fails
        """
        marker_dir = posixpath.join(remote_dir, WRITE_TEST_DIR_NAME)
        marker_file = posixpath.join(marker_dir, "test.txt")
        script = (
            f"mkdir -p {shlex.quote(marker_dir)}"
            f" && echo test > {shlex.quote(marker_file)}"
            f" && rm -rf {shlex.quote(marker_dir)}"
        )
        try:
            result = self._ssh(["sh", "-c", script])
        except subprocess.TimeoutExpired:
            raise ConnectivityError(f"Timed out writing to {remote_dir}")
        except (OSError, subprocess.SubprocessError) as e:
            raise ConnectivityError(f"Could not run ssh: {e}")

        if result.returncode != 0:
            raise ConnectivityError(f"Cannot write to remote backup directory: {remote_dir}")
