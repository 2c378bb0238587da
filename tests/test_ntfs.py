"""Tests for the NTFS filename rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from nextcloud_backup.ntfs import (
    FORBIDDEN_CHARS,
    find_incompatible_paths,
    is_ntfs_compatible,
    rsync_exclude_pattern,
)


def test_forbidden_character_set() -> None:
    assert sorted(FORBIDDEN_CHARS) == sorted('<>:"|?*\\')


@pytest.mark.parametrize("char", list(FORBIDDEN_CHARS))
def test_forbidden_characters(char: str) -> None:
    assert not is_ntfs_compatible(f"photos/holiday{char}2024.jpg")
    assert not is_ntfs_compatible(f"dir{char}name/file.txt")


def test_trailing_spaces_and_periods() -> None:
    assert not is_ntfs_compatible("notes.")
    assert not is_ntfs_compatible("notes ")
    assert not is_ntfs_compatible("docs/notes. . ")
    assert is_ntfs_compatible("notes")
    assert is_ntfs_compatible("docs/notes.txt")


@pytest.mark.parametrize(
    "name", ["CON", "con.txt", "Com3", "lpt9.DAT", "nul", "AUX.tar.gz", "prn", "dir/LPT1"]
)
def test_reserved_device_names(name: str) -> None:
    assert not is_ntfs_compatible(name)


@pytest.mark.parametrize("name", ["console.txt", "COM0", "LPT10", "auxiliary", "icon.png"])
def test_names_resembling_reserved_ones(name: str) -> None:
    assert is_ntfs_compatible(name)


def test_reserved_name_only_checked_on_final_component() -> None:
    assert is_ntfs_compatible("con/readme.md")


def test_find_incompatible_paths(tmp_path: Path) -> None:
    (tmp_path / "good.txt").write_text("ok")
    (tmp_path / "bad:name.txt").write_text("x")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "CON.log").write_text("x")
    (tmp_path / "sub" / "fine.log").write_text("x")

    assert list(find_incompatible_paths(tmp_path)) == ["bad:name.txt", "sub/CON.log"]


def test_find_incompatible_paths_reports_directories_and_children(tmp_path: Path) -> None:
    (tmp_path / "a?b").mkdir()
    (tmp_path / "a?b" / "inner.txt").write_text("x")

    assert list(find_incompatible_paths(tmp_path)) == ["a?b", "a?b/inner.txt"]


def test_find_incompatible_paths_with_custom_predicate(tmp_path: Path) -> None:
    (tmp_path / "bad:name.txt").write_text("x")
    assert list(find_incompatible_paths(tmp_path, lambda path: True)) == []


def test_rsync_exclude_pattern() -> None:
    assert rsync_exclude_pattern("bad:name.txt") == "/bad:name.txt"
    assert rsync_exclude_pattern("sub/what?.txt") == "/sub/what\\?.txt"
    assert rsync_exclude_pattern("a\\b*c") == "/a\\\\b\\*c"
    assert rsync_exclude_pattern("back\\slash") == "/back\\slash"
