"""
nextcloud-backup: Nightly Nextcloud backups to a remote host over SSH.

This package dumps the Nextcloud MySQL database, syncs the configured
directories with rsync and manages the systemd timer that schedules it all.
"""

__version__ = "0.1.0"
