"""Errors raised while loading configuration or running a backup."""


class BackupError(Exception):
    """Base class for every fatal backup failure."""


class ConfigMissingError(BackupError):
    """The configuration file could not be found."""


class DumpError(BackupError):
    """mysqldump failed to produce a database dump."""


class CompressionError(BackupError):
    """gzip failed to compress the database dump."""


class TransferError(BackupError):
    """Creating a remote directory or an rsync transfer failed."""


class ConnectivityError(BackupError):
    """A self-test check could not reach its target."""


class ServiceError(BackupError):
    """systemctl could not change the state of the backup service."""
