# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: count inet connections per process. psutil.net_connections() returns the whole system table
in one call, which is far cheaper than asking every process separately, so the table is read once
per scan cycle (refresh) and then answered from memory for every pid.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import threading
from collections import Counter

import psutil  # library for getting network connection information


class ConnectionIndex:
    """per-cycle index of TCP/UDP connections by owning pid"""

    def __init__(self, kind: str = "inet") -> None:
        self.kind = kind
        self._counts: Counter[int] = Counter()
        self._error: Exception | None = RuntimeError("connection table not loaded yet")
        self._lock = threading.Lock()

    def refresh(self) -> None:
        """re-read the system connection table; a failure is remembered, not raised"""
        try:
            conns = psutil.net_connections(kind=self.kind)
        except (psutil.AccessDenied, OSError) as exc:
            # macOS needs root for the system-wide table; lookups will report this per pid
            with self._lock:
                self._counts = Counter()
                self._error = exc
            return
        counts: Counter[int] = Counter(c.pid for c in conns if c.pid is not None)
        with self._lock:
            self._counts = counts
            self._error = None

    def count(self, pid: int) -> int:
        with self._lock:
            if self._error is not None:
                raise self._error
            return self._counts.get(pid, 0)

