"""systemd service, timer and logrotate management for scheduled backups."""

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .config import INSTALLED_CONFIG_PATH, BackupConfig
from .exceptions import ConfigMissingError, ServiceError

SERVICE_NAME = "backup.service"
TIMER_NAME = "backup.timer"

LAUNCHER_PATH = Path("/usr/local/bin/nextcloud-backup-core")
SERVICE_FILE = Path("/etc/systemd/system") / SERVICE_NAME
TIMER_FILE = Path("/etc/systemd/system") / TIMER_NAME
LOGROTATE_FILE = Path("/etc/logrotate.d/backup")

SYSTEMCTL_TIMEOUT = 60

SERVICE_TEMPLATE = """\
[Unit]
Description=Nextcloud Backup Service - Incremental backup of directories and MySQL to remote server
After=network.target mysql.service
Wants=network.target

[Service]
Type=oneshot
User={user}
Group={user}
WorkingDirectory={working_dir}
ExecStart={launcher} backup
StandardOutput=journal
StandardError=journal
TimeoutSec=3600
Environment="PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
Environment="HOME={home}"
"""

TIMER_TEMPLATE = """\
[Unit]
Description=Run Nextcloud backup service daily
Requires={service}

[Timer]
OnCalendar=daily
Persistent=true
RandomizedDelaySec=300

[Install]
WantedBy=timers.target
"""

LOGROTATE_TEMPLATE = """\
{log_dir}/*.log {{
    daily
    rotate 30
    compress
    delaycompress
    missingok
    notifempty
    create 644 {user} {user}
}}
"""

LAUNCHER_TEMPLATE = """\
#!/bin/sh
exec "{python}" "{entry_point}" --config "{config}" "$@"
"""


class SystemdController:
    """Thin wrapper around systemctl and journalctl."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _run(self, cmd: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        self.logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                list(cmd), capture_output=True, text=True, timeout=SYSTEMCTL_TIMEOUT
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ServiceError(f"Could not run {cmd[0]}: {e}")

        if check and result.returncode != 0:
            raise ServiceError(f"'{' '.join(cmd)}' failed: {result.stderr.strip()}")
        return result

    def systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self._run(["systemctl", *args], check=check)

    def daemon_reload(self) -> None:
        self.systemctl("daemon-reload")

    def enable_timer(self) -> None:
        self.systemctl("enable", TIMER_NAME)
        self.systemctl("start", TIMER_NAME)

    def disable_timer(self) -> None:
        self.systemctl("disable", TIMER_NAME, check=False)
        self.systemctl("stop", TIMER_NAME, check=False)

    def start_service(self) -> None:
        self.systemctl("start", SERVICE_NAME)

    def stop_service(self) -> None:
        self.systemctl("stop", SERVICE_NAME, check=False)

    def status(self) -> str:
        """Service and timer status plus the next scheduled runs."""
        sections = [
            ("Backup Service Status", ["status", SERVICE_NAME, "--no-pager", "-l"]),
            ("Backup Timer Status", ["status", TIMER_NAME, "--no-pager", "-l"]),
            ("Next Scheduled Runs", ["list-timers", TIMER_NAME, "--no-pager"]),
        ]
        output = []
        for title, args in sections:
            # systemctl status exits non-zero for inactive units
            result = self.systemctl(*args, check=False)
            output.append(f"=== {title} ===")
            output.append((result.stdout or result.stderr).rstrip())
            output.append("")
        return "\n".join(output)

    def journal(self, lines: int = 50) -> str:
        result = self._run(
            ["journalctl", "-u", SERVICE_NAME, "-n", str(lines), "--no-pager"], check=False
        )
        return (result.stdout or result.stderr).rstrip()


class ServiceInstaller:
    """
    Installs and removes the scheduled backup job.

    config may be None when only uninstalling.
    """

    def __init__(
        self,
        config: Optional[BackupConfig],
        entry_point: Path,
        controller: Optional[SystemdController] = None,
        root: Path = Path("/"),
        python: str = sys.executable,
    ):
        self.config = config
        self.entry_point = Path(entry_point)
        self.controller = controller or SystemdController()
        self.root = Path(root)
        self.python = python
        self.logger = logging.getLogger(__name__)

    def _path(self, path: Path) -> Path:
        """Place an absolute system path under the installation root."""
        if not path.is_absolute():
            return path
        return self.root / path.relative_to("/")

    @property
    def config_path(self) -> Path:
        return self._path(INSTALLED_CONFIG_PATH)

    @property
    def launcher_path(self) -> Path:
        return self._path(LAUNCHER_PATH)

    @property
    def service_file(self) -> Path:
        return self._path(SERVICE_FILE)

    @property
    def timer_file(self) -> Path:
        return self._path(TIMER_FILE)

    @property
    def logrotate_file(self) -> Path:
        return self._path(LOGROTATE_FILE)

    def is_installed(self) -> bool:
        return self.service_file.exists()

    def _home_dir(self) -> str:
        user = self.config.backup_user
        return "/root" if user == "root" else f"/home/{user}"

    def render_service_unit(self) -> str:
        return SERVICE_TEMPLATE.format(
            user=self.config.backup_user,
            working_dir=LAUNCHER_PATH.parent,
            launcher=LAUNCHER_PATH,
            home=self._home_dir(),
        )

    def render_timer_unit(self) -> str:
        return TIMER_TEMPLATE.format(service=SERVICE_NAME)

    def render_logrotate(self) -> str:
        log_dir = self.config.log_dir.rstrip("/") or "/"
        return LOGROTATE_TEMPLATE.format(log_dir=log_dir, user=self.config.backup_user)

    def render_launcher(self) -> str:
        return LAUNCHER_TEMPLATE.format(
            python=self.python,
            entry_point=self.entry_point,
            config=INSTALLED_CONFIG_PATH,
        )

    def _write(self, path: Path, content: str, mode: int = 0o644) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        os.chmod(path, mode)
        self.logger.debug(f"Wrote {path}")

    def _copy_private(self, source: Path, destination: Path) -> None:
        """Copy a file so that it is never readable by other users."""
        if destination.exists():
            os.chmod(destination, 0o600)
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with open(fd, "wb") as dst, open(source, "rb") as src:
            shutil.copyfileobj(src, dst)

    def install(self, source_config: Path) -> List[Path]:
        """
        Install the config, launcher, systemd units and logrotate policy.

        Returns:
            The files written

        Raises:
            ConfigMissingError: if source_config does not exist
            ServiceError: if systemd cannot be reloaded
        """
        source_config = Path(source_config)
        if self.config is None or not source_config.exists():
            raise ConfigMissingError(f"Configuration file not found: {source_config}")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        if not (self.config_path.exists() and self.config_path.samefile(source_config)):
            self._copy_private(source_config, self.config_path)
        # Also covers a config installed in place
        os.chmod(self.config_path, 0o600)

        self._write(self.launcher_path, self.render_launcher(), mode=0o755)
        self._write(self.service_file, self.render_service_unit())
        self._write(self.timer_file, self.render_timer_unit())
        self._write(self.logrotate_file, self.render_logrotate())

        log_dir = self._path(Path(self.config.log_dir))
        log_dir.mkdir(parents=True, exist_ok=True)
        try:
            shutil.chown(log_dir, self.config.backup_user, self.config.backup_user)
        except (LookupError, PermissionError) as e:
            self.logger.warning(f"Could not hand {log_dir} to {self.config.backup_user}: {e}")

        self.controller.daemon_reload()

        return [
            self.config_path,
            self.launcher_path,
            self.service_file,
            self.timer_file,
            self.logrotate_file,
        ]

    def uninstall(self) -> List[Path]:
        """
        Stop the schedule and remove every installed file.

        Log files are left in place.
        """
        self.controller.disable_timer()
        self.controller.stop_service()

        removed = []
        for path in (
            self.launcher_path,
            self.config_path,
            self.service_file,
            self.timer_file,
            self.logrotate_file,
        ):
            if path.exists():
                path.unlink()
                removed.append(path)

        self.controller.daemon_reload()
        return removed
