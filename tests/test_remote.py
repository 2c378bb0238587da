"""Tests for ssh/rsync command construction and output parsing."""

from __future__ import annotations

import shlex

import pytest

from nextcloud_backup.exceptions import ConnectivityError, TransferError
from nextcloud_backup.remote import DEFAULT_EXCLUDES, RemoteDump, RemoteManager

RSYNC_STATS = """\
sending incremental file list

Number of files: 3 (reg: 2, dir: 1)
Number of regular files transferred: 1
Total file size: 12,345 bytes
Total transferred file size: 1,234 bytes
Literal data: 1,234 bytes
"""


def test_rsync_command_standard(make_config) -> None:
    remote = RemoteManager(make_config())
    cmd = remote.build_rsync_command("/tmp/backup/dump.sql.gz", "/mnt/backup/mysql")

    assert cmd[:4] == ["rsync", "-avz", "--protect-args", "--stats"]
    assert not any(part.startswith("--modify-window") for part in cmd)
    assert cmd[-2:] == ["/tmp/backup/dump.sql.gz", "backup@raspi:/mnt/backup/mysql/"]


def test_rsync_command_ntfs_directory(make_config) -> None:
    remote = RemoteManager(make_config(ntfs_compatibility=True, ssh_host="nas"))
    cmd = remote.build_rsync_command(
        "/data/",
        "/mnt/backup/directories/data",
        delete=True,
        excludes=DEFAULT_EXCLUDES,
        exclude_from="/tmp/backup/ntfs_excludes.txt",
    )

    assert "--delete" in cmd
    assert "--modify-window=1" in cmd
    assert "--exclude-from=/tmp/backup/ntfs_excludes.txt" in cmd
    assert ["--exclude=.git", "--exclude=.DS_Store", "--exclude=*.tmp"] == [
        part for part in cmd if part.startswith("--exclude=")
    ]
    assert cmd[-1] == "nas:/mnt/backup/directories/data/"


def test_rsync_returns_transferred_bytes(make_config, fake_run) -> None:
    fake_run.respond("rsync", stdout=RSYNC_STATS)
    remote = RemoteManager(make_config())

    assert remote.rsync("/data/", "/mnt/backup/directories/data") == 1234


def test_rsync_failure_raises_transfer_error(make_config, fake_run) -> None:
    fake_run.respond("rsync", returncode=23, stderr="some files vanished")
    remote = RemoteManager(make_config())

    with pytest.raises(TransferError, match="exit code 23"):
        remote.rsync("/data/", "/mnt/backup/directories/data")


def test_remote_paths_are_quoted(make_config, fake_run) -> None:
    remote = RemoteManager(make_config())
    remote.ensure_remote_dir("/mnt/backup/directories/my dir;rm -rf ~")

    cmd = fake_run.calls[-1]
    assert cmd[:2] == ["ssh", "backup@raspi"]
    assert shlex.split(cmd[-1]) == [
        "mkdir",
        "-p",
        "--",
        "/mnt/backup/directories/my dir;rm -rf ~",
    ]


def test_ensure_remote_dir_failure(make_config, fake_run) -> None:
    fake_run.respond("ssh", returncode=255, stderr="Connection refused")
    remote = RemoteManager(make_config())

    with pytest.raises(TransferError):
        remote.ensure_remote_dir("/mnt/backup/mysql")


def test_list_dumps_parses_find_output(make_config, fake_run) -> None:
    fake_run.respond(
        "ssh",
        stdout=(
            "1700000000.5000000000 /mnt/backup/mysql/mysql_dump_a.sql.gz\n"
            "garbage\n"
            "1700086400.0000000000 /mnt/backup/mysql/with space.sql.gz\n"
        ),
        match="find",
    )
    remote = RemoteManager(make_config())

    assert remote.list_dumps("/mnt/backup/mysql") == [
        RemoteDump("/mnt/backup/mysql/mysql_dump_a.sql.gz", 1700000000.5),
        RemoteDump("/mnt/backup/mysql/with space.sql.gz", 1700086400.0),
    ]
    remote_args = shlex.split(fake_run.calls[-1][-1])
    assert remote_args[:2] == ["find", "/mnt/backup/mysql"]
    assert "*.sql.gz" in remote_args


def test_delete_files(make_config, fake_run) -> None:
    remote = RemoteManager(make_config())
    remote.delete_files(["/mnt/backup/mysql/a.sql.gz", "/mnt/backup/mysql/b.sql.gz"])

    assert shlex.split(fake_run.calls[-1][-1]) == [
        "rm",
        "-f",
        "--",
        "/mnt/backup/mysql/a.sql.gz",
        "/mnt/backup/mysql/b.sql.gz",
    ]


def test_delete_nothing_skips_ssh(make_config, fake_run) -> None:
    RemoteManager(make_config()).delete_files([])
    assert fake_run.calls == []


def test_probe_is_non_interactive(make_config, fake_run) -> None:
    RemoteManager(make_config()).probe()

    cmd = fake_run.calls[-1]
    assert "BatchMode=yes" in cmd
    assert "ConnectTimeout=10" in cmd


def test_probe_failure(make_config, fake_run) -> None:
    fake_run.respond("ssh", returncode=255)
    with pytest.raises(ConnectivityError):
        RemoteManager(make_config()).probe()


def test_check_writable_uses_marker_directory(make_config, fake_run) -> None:
    RemoteManager(make_config()).check_writable("/mnt/backup")

    remote_args = shlex.split(fake_run.calls[-1][-1])
    assert remote_args[:2] == ["sh", "-c"]
    assert "/mnt/backup/.nextcloud-backup-write-test" in remote_args[2]
    assert "rm -rf" in remote_args[2]


def test_check_writable_failure(make_config, fake_run) -> None:
    fake_run.respond("ssh", returncode=1)
    with pytest.raises(ConnectivityError, match="Cannot write"):
        RemoteManager(make_config()).check_writable("/mnt/backup")
