"""NTFS filename rules used to skip files a NTFS destination cannot store."""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator

INCOMPATIBLE_REASON = "NTFS incompatible filename"

FORBIDDEN_CHARS = '<>:"|?*\\'

_FORBIDDEN_PATTERN = re.compile("[" + re.escape(FORBIDDEN_CHARS) + "]")
_TRAILING_PATTERN = re.compile(r"[ .]+$")
_RESERVED_PATTERN = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


def is_ntfs_compatible(path: str) -> bool:
    """
    Check whether a path can be stored on an NTFS filesystem.

    Args:
        path: Path to check, usually relative to the directory being synced

    Returns:
        False if the path contains a forbidden character, if its final
        component ends in spaces or periods, or if that component is a
        reserved device name (with or without an extension).
    """
    if _FORBIDDEN_PATTERN.search(path):
        return False

    filename = PurePosixPath(path).name
    if _TRAILING_PATTERN.search(filename):
        return False

    if _RESERVED_PATTERN.match(filename):
        return False

    return True


def find_incompatible_paths(
    root: str | Path, accepts: Callable[[str], bool] = is_ntfs_compatible
) -> Iterator[str]:
    """
    Walk a directory tree and yield the relative paths a destination rejects.

    Both files and directories are checked. Children of a rejected directory
    are still visited, so each offending entry is reported.
    """
    root_path = Path(root)
    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames.sort()
        rel_dir = Path(dirpath).relative_to(root_path)
        for name in dirnames + sorted(filenames):
            rel_path = (rel_dir / name).as_posix()
            if not accepts(rel_path):
                yield rel_path


def rsync_exclude_pattern(rel_path: str) -> str:
    """
    Turn a relative path into an rsync exclude pattern matching only it.

    The pattern is anchored at the transfer root. rsync treats a backslash
    as an escape only when the pattern contains a wildcard, so escaping is
    applied in that case alone.
    """
    pattern = rel_path
    if any(char in pattern for char in "*?["):
        pattern = pattern.replace("\\", "\\\\")
        for char in "*?[":
            pattern = pattern.replace(char, "\\" + char)
    return "/" + pattern
