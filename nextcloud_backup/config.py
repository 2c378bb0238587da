"""Configuration management for the nextcloud-backup system."""

from __future__ import annotations

import os
import posixpath
from pathlib import Path
from typing import Any, List, Literal, Optional

import yaml
from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigMissingError
from .ntfs import is_ntfs_compatible

CONFIG_ENV_VAR = "NEXTCLOUD_BACKUP_CONFIG"
INSTALLED_CONFIG_PATH = Path("/usr/local/etc/nextcloud-backup/backup.conf")
DEFAULT_CONFIG_PATH = Path("backup.conf")

LOG_FILE_NAME = "backup.log"
SKIPPED_LOG_FILE_NAME = "backup_skipped.log"

TRUE_VALUES = {"true", "1", "yes", "on"}


def directory_name(source_dir: str) -> str:
    """Name a source directory gets under the remote directories root."""
    return os.path.basename(os.path.normpath(source_dir))


class DestinationCapabilities(BaseModel):
    """What the filesystem behind the remote backup directory can store."""

    model_config = ConfigDict(frozen=True)

    filename_rules: Literal["posix", "ntfs"] = Field(
        default="posix", description="Which filenames the destination accepts"
    )
    timestamp_resolution_seconds: Literal[1, 2] = Field(
        default=1, description="Granularity of modification times on the destination"
    )

    @classmethod
    def from_ntfs_flag(cls, ntfs_compatibility: bool) -> DestinationCapabilities:
        """Build the descriptor matching the NTFS_COMPATIBILITY setting."""
        if ntfs_compatibility:
            return cls(filename_rules="ntfs", timestamp_resolution_seconds=2)
        return cls()

    @property
    def restricts_filenames(self) -> bool:
        return self.filename_rules == "ntfs"

    @property
    def modify_window(self) -> int:
        """Seconds of mtime difference rsync should tolerate (0 = exact)."""
        return self.timestamp_resolution_seconds - 1

    @property
    def timestamp_format(self) -> str:
        """strftime format for timestamps embedded in file names."""
        if self.restricts_filenames:
            return "%Y%m%d_%H%M%S"
        return "%Y-%m-%d_%H:%M:%S"

    def accepts_path(self, path: str) -> bool:
        """Check whether the destination can store a path."""
        if self.restricts_filenames:
            return is_ntfs_compatible(path)
        return True


class BackupConfig(BaseModel):
    """Main application configuration."""

    model_config = ConfigDict(frozen=True)

    backup_dirs: List[str] = Field(
        description="Local directories to sync (comma-separated in the config file)"
    )
    remote_host: str = Field(default="", description="Remote host name or address")
    remote_user: str = Field(default="", description="User on the remote host")
    ssh_host: str = Field(
        default="",
        description="Host alias from ~/.ssh/config, overrides remote_user@remote_host",
    )
    remote_backup_dir: str = Field(description="Backup root directory on the remote host")
    db_name: str = Field(description="Name of the Nextcloud database")
    db_user: str = Field(default="", description="Database user (empty = client default)")
    db_password: str = Field(default="", description="Database password")
    log_dir: str = Field(default="/var/log/backup", description="Local log directory")
    temp_dir: str = Field(default="/tmp/backup", description="Local scratch directory")
    backup_user: str = Field(
        default="root", description="System user the scheduled service runs as"
    )
    ntfs_compatibility: bool = Field(
        default=False,
        description="Whether the remote backup directory lives on an NTFS filesystem",
    )
    mysql_retention_days: int = Field(
        default=7, ge=0, description="Days to keep database dumps on the remote host"
    )
    dir_sync_workers: int = Field(
        default=1, ge=1, description="Directories synced in parallel (1 = sequential)"
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @model_validator(mode="before")
    @classmethod
    def drop_blank_values(cls, data: Any) -> Any:
        """Treat empty assignments (KEY=) as if the key were not set."""
        if isinstance(data, dict):
            return {
                key: value
                for key, value in data.items()
                if value is not None and not (isinstance(value, str) and not value.strip())
            }
        return data

    @field_validator("backup_dirs", mode="before")
    @classmethod
    def split_backup_dirs(cls, v: Any) -> Any:
        """Accept the comma-separated form used in the config file."""
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [str(item).strip() for item in v if str(item).strip()]
        return v

    @field_validator("ntfs_compatibility", mode="before")
    @classmethod
    def parse_flag(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() in TRUE_VALUES
        return v

    @field_validator("remote_backup_dir")
    @classmethod
    def normalize_remote_backup_dir(cls, v: str) -> str:
        """Strip trailing slashes so joined remote paths stay clean."""
        v = v.strip()
        if len(v) > 1:
            v = v.rstrip("/") or "/"
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @model_validator(mode="after")
    def validate_required_targets(self) -> BackupConfig:
        """A run needs at least one directory and somewhere to send it."""
        if not self.backup_dirs:
            raise ValueError("BACKUP_DIRS must list at least one directory")
        if not self.ssh_host and not self.remote_host:
            raise ValueError("Either SSH_HOST or REMOTE_HOST must be set")
        return self

    @model_validator(mode="after")
    def validate_directory_names_unique(self) -> BackupConfig:
        """Each directory is synced to <root>/directories/<basename> with --delete."""
        names = [directory_name(d) for d in self.backup_dirs]
        if "" in names:
            raise ValueError("BACKUP_DIRS entries must not be the filesystem root")
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"BACKUP_DIRS entries must have distinct directory names: {', '.join(duplicates)}"
            )
        return self

    @property
    def ssh_target(self) -> str:
        """Destination argument for ssh and rsync."""
        if self.ssh_host:
            return self.ssh_host
        if self.remote_user:
            return f"{self.remote_user}@{self.remote_host}"
        return self.remote_host

    @property
    def destination(self) -> DestinationCapabilities:
        return DestinationCapabilities.from_ntfs_flag(self.ntfs_compatibility)

    @property
    def remote_db_dir(self) -> str:
        return posixpath.join(self.remote_backup_dir, "mysql")

    @property
    def remote_directories_root(self) -> str:
        return posixpath.join(self.remote_backup_dir, "directories")

    @property
    def log_file(self) -> Path:
        return Path(self.log_dir) / LOG_FILE_NAME

    @property
    def skipped_log_file(self) -> Path:
        return Path(self.log_dir) / SKIPPED_LOG_FILE_NAME


def resolve_config_path(explicit: Optional[str] = None) -> Path:
    """
    Pick the configuration file to use.

    Order: explicit path, the NEXTCLOUD_BACKUP_CONFIG environment variable,
    the installed system config if present, then ./backup.conf.
    """
    if explicit:
        return Path(explicit)

    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env)

    if INSTALLED_CONFIG_PATH.exists():
        return INSTALLED_CONFIG_PATH

    return DEFAULT_CONFIG_PATH


def read_config_values(config_file: Path) -> dict[str, Any]:
    """Read raw settings from a KEY=value file or a YAML mapping."""
    if config_file.suffix in {".yaml", ".yml"}:
        with open(config_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is None:
            raise ValueError("Configuration file is empty")
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping")
    else:
        data = dotenv_values(config_file)

    return {str(key).lower(): value for key, value in data.items()}


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> BackupConfig:
    """Load and validate configuration from a KEY=value or YAML file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise ConfigMissingError(f"Configuration file not found: {config_path}")

    try:
        config_data = read_config_values(config_file)
        return BackupConfig(**config_data)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format in config file: {e}")
    except ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")
