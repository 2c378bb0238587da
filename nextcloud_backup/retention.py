"""Retention policy for database dumps kept on the remote host."""

from __future__ import annotations

import time
from typing import List, Optional, Sequence

from .remote import RemoteDump

SECONDS_PER_DAY = 86400


class RemoteDumpRetentionPolicy:
    """Expire remote dumps older than a number of days."""

    def __init__(self, retention_days: int):
        self.retention_days = retention_days

    def age_in_days(self, dump: RemoteDump, now: float) -> int:
        """Whole days since the dump was last modified (rounded down)."""
        return int(max(now - dump.mtime, 0) // SECONDS_PER_DAY)

    def is_expired(self, dump: RemoteDump, now: Optional[float] = None) -> bool:
        """
        Check whether a dump falls outside the retention window.

        Mirrors find -mtime +N: a dump expires once its age in whole days is
        strictly greater than the window.
        """
        if now is None:
            now = time.time()
        return self.age_in_days(dump, now) > self.retention_days

    def select_expired(
        self, dumps: Sequence[RemoteDump], now: Optional[float] = None
    ) -> List[RemoteDump]:
        if now is None:
            now = time.time()
        return [dump for dump in dumps if self.is_expired(dump, now)]
