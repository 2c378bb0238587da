"""Tests for the pre-flight self test."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from unittest.mock import Mock

from nextcloud_backup.exceptions import ConnectivityError
from nextcloud_backup.self_test import SelfTest


def make_self_test(config, **kwargs) -> SelfTest:
    return SelfTest(config, dumper=Mock(), remote=Mock(), **kwargs)


def test_all_checks_pass(make_config) -> None:
    self_test = make_self_test(make_config())
    results = self_test.run()

    assert [result.name for result in results] == ["ssh", "database", "directory", "remote_write"]
    assert SelfTest.passed(results)
    self_test.remote.check_writable.assert_called_once_with("/mnt/backup")


def test_failures_do_not_stop_other_checks(make_config, tmp_path: Path) -> None:
    config = make_config(backup_dirs=[str(tmp_path / "missing")])
    self_test = make_self_test(config)
    self_test.remote.probe.side_effect = ConnectivityError("SSH connection failed to backup@raspi")
    self_test.dumper.check_connection.side_effect = ConnectivityError("MySQL connection failed")

    results = self_test.run()

    assert not SelfTest.passed(results)
    assert [result.passed for result in results] == [False, False, False, True]
    assert results[0].hint == "Run: ssh-copy-id backup@raspi"
    assert results[2].message == f"Directory not found: {tmp_path / 'missing'}"
    self_test.remote.check_writable.assert_called_once()


def test_ssh_alias_hint(make_config) -> None:
    self_test = make_self_test(make_config(ssh_host="nas"))
    self_test.remote.probe.side_effect = ConnectivityError("SSH connection failed to nas")

    result = self_test.check_ssh()

    assert not result.passed
    assert result.hint == "Check your SSH config for host: nas"


def test_remote_write_check_can_be_skipped(make_config) -> None:
    self_test = make_self_test(make_config(), check_remote_write=False)
    results = self_test.run()

    assert "remote_write" not in [result.name for result in results]
    self_test.remote.check_writable.assert_not_called()


def test_describe_ntfs_mode(make_config) -> None:
    now = datetime(2026, 10, 19, 3, 0, 0)

    ntfs_lines = make_self_test(make_config(ntfs_compatibility=True, ssh_host="nas")).describe(now)
    assert ntfs_lines == [
        "NTFS compatibility mode: ENABLED (skipping incompatible files)",
        "NTFS-safe timestamp format: 20261019_030000",
        "Using SSH host from config: nas",
    ]

    posix_lines = make_self_test(make_config()).describe(now)
    assert posix_lines == [
        "NTFS compatibility mode: DISABLED",
        "Using direct connection: backup@raspi",
    ]
