"""Shared fixtures: a recording stand-in for subprocess.run and config builders."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable

import pytest

from nextcloud_backup.config import BackupConfig


class FakeRunner:
    """Records argument vectors and simulates the external tools."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.rules: list[tuple[str, str | None, int, str, str]] = []
        self.exclude_lists: list[str] = []

    def respond(
        self,
        program: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        match: str | None = None,
    ) -> None:
        """Register a response; rules added later take precedence."""
        self.rules.insert(0, (program, match, returncode, stdout, stderr))

    def _rule_for(self, cmd: list[str]) -> tuple[int, str, str]:
        joined = " ".join(cmd)
        for program, match, returncode, stdout, stderr in self.rules:
            if cmd[0] == program and (match is None or match in joined):
                return returncode, stdout, stderr
        return 0, "", ""

    def __call__(self, cmd, *args, **kwargs) -> subprocess.CompletedProcess:
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        returncode, stdout, stderr = self._rule_for(cmd)

        if cmd[0] == "mysqldump" and returncode == 0:
            kwargs["stdout"].write("-- MySQL dump\n")
            stdout = None
        if cmd[0] == "gzip" and returncode == 0:
            source = Path(cmd[1])
            source.with_name(source.name + ".gz").write_bytes(b"\x1f\x8b")
            source.unlink()
        if cmd[0] == "rsync":
            for part in cmd:
                if part.startswith("--exclude-from="):
                    self.exclude_lists.append(
                        Path(part.split("=", 1)[1]).read_text(encoding="utf-8")
                    )

        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)

    def programs(self) -> list[str]:
        return [cmd[0] for cmd in self.calls]

    def commands(self, program: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if cmd[0] == program]


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    runner = FakeRunner()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    (path / "file.txt").write_text("hello")
    return path


@pytest.fixture
def make_config(tmp_path: Path, data_dir: Path) -> Callable[..., BackupConfig]:
    def _make(**overrides) -> BackupConfig:
        values = {
            "backup_dirs": [str(data_dir)],
            "remote_host": "raspi",
            "remote_user": "backup",
            "remote_backup_dir": "/mnt/backup",
            "db_name": "nextcloud",
            "db_user": "nextcloud",
            "db_password": "secret",
            "log_dir": str(tmp_path / "log"),
            "temp_dir": str(tmp_path / "tmp"),
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _make
