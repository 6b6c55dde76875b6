# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: read the live process table and drive scan cycles on a schedule.

PsutilProcessSource.list_processes() returns one ProcessSnapshot per running process with its
threads. a process we are not allowed to inspect is still listed with whatever base fields psutil
could read; a process that exits while we walk the table is simply skipped. an unreadable thread
list is reported as an empty tuple with "threads" in snapshot.unresolved, so reconciliation keeps
the threads it already knew instead of reporting them all as removed. if the table itself
cannot be read the whole enumeration fails with EnumerationFailure.

ProcessMonitor calls a scan function every `interval_sec` seconds from a daemon thread. cycles never
overlap: a tick that comes due while a cycle is still running is dropped, not queued.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging
import os  # for reading per-thread stat files under /proc
import sys  # for checking the platform (Linux vs other)
import threading
import time  # for the fixed-rate schedule
from collections.abc import Callable  # type hint for the scan callback
from datetime import datetime, timedelta, timezone
from typing import Any

import psutil  # library for getting process and system information

from agent.errors import EnumerationFailure
from agent.models import THREADS, ProcessSnapshot, ThreadSnapshot

log = logging.getLogger("procwarden.scan")

# attributes fetched per process in one pass
PROC_ATTRS = [
    "pid",
    "name",
    "status",
    "cpu_percent",
    "memory_info",
    "create_time",
    "exe",
    "threads",
    "nice",
]

# single-letter states from /proc/<pid>/task/<tid>/stat
_LINUX_THREAD_STATES = {
    "R": "running",
    "S": "sleeping",
    "D": "disk-sleep",
    "Z": "zombie",
    "T": "stopped",
    "t": "tracing-stop",
    "X": "dead",
    "I": "idle",
    "P": "parked",
    "W": "waking",
}

_MB = 1024 * 1024


def _ts(epoch: float | None) -> datetime | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, timezone.utc)


def read_linux_thread(pid: int, tid: int, boot_time: float, proc_root: str = "/proc") -> dict:
    """
    parse /proc/<pid>/task/<tid>/stat into {"state", "priority", "start_time"}.
    returns {} when the thread is gone or the file is unreadable.
    """
    try:
        path = os.path.join(proc_root, str(pid), "task", str(tid), "stat")
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    except OSError:
        return {}
    # comm is wrapped in parens and may itself contain spaces or parens, so split after the last ")"
    _, sep, rest = raw.rpartition(")")
    if not sep:
        return {}
    parts = rest.split()
    out: dict[str, Any] = {}
    if parts:
        out["state"] = _LINUX_THREAD_STATES.get(parts[0], parts[0])
    if len(parts) > 15:
        try:
            out["priority"] = int(parts[15])  # field 18 of stat
        except ValueError:
            pass
    if len(parts) > 19:
        try:
            ticks = int(parts[19])  # field 22, start time in clock ticks after boot
            out["start_time"] = _ts(boot_time + ticks / os.sysconf("SC_CLK_TCK"))
        except (ValueError, OSError):
            pass
    return out


class PsutilProcessSource:
    """process source backed by psutil.process_iter"""

    def __init__(self, thread_details: bool | None = None, proc_root: str = "/proc") -> None:
        # per-thread state/priority is only exposed through procfs
        self.thread_details = (
            sys.platform.startswith("linux") if thread_details is None else thread_details
        )
        self.proc_root = proc_root

    def list_processes(self) -> list[ProcessSnapshot]:
        try:
            boot_time = psutil.boot_time()
            # AccessDenied fields come back as None; processes that vanish are dropped by psutil
            procs = list(psutil.process_iter(attrs=PROC_ATTRS, ad_value=None))
        except (psutil.Error, OSError) as exc:
            raise EnumerationFailure(f"could not enumerate processes: {exc}") from exc

        out: list[ProcessSnapshot] = []
        for p in procs:
            info = getattr(p, "info", None) or {}
            if info.get("status") == psutil.STATUS_ZOMBIE:
                continue  # already exited, only waiting to be reaped
            try:
                out.append(self._snapshot(p.pid, info, boot_time))
            except psutil.NoSuchProcess:
                continue  # exited between listing and reading
        return out

    def _snapshot(self, pid: int, info: dict[str, Any], boot_time: float) -> ProcessSnapshot:
        mem = info.get("memory_info")
        rss = getattr(mem, "rss", 0) or 0
        nice = info.get("nice")
        priority = int(nice) if isinstance(nice, (int, float)) else 0
        raw_threads = info.get("threads")  # None when psutil was denied the thread list
        return ProcessSnapshot(
            process_id=pid,
            name=info.get("name") or "",
            cpu_usage_percent=float(info.get("cpu_percent") or 0.0),
            memory_usage_mb=round(rss / _MB, 2),
            start_time=_ts(info.get("create_time")),
            execution_path=info.get("exe") or "",
            threads=self._threads(pid, raw_threads or [], priority, boot_time),
            unresolved=frozenset({THREADS}) if raw_threads is None else frozenset(),
        )

    def _threads(
        self, pid: int, raw: list, process_priority: int, boot_time: float
    ) -> tuple[ThreadSnapshot, ...]:
        threads: list[ThreadSnapshot] = []
        for t in raw:
            tid = getattr(t, "id", None)
            if tid is None:
                continue
            details: dict[str, Any] = {}
            if self.thread_details:
                details = read_linux_thread(pid, tid, boot_time, self.proc_root)
            threads.append(
                ThreadSnapshot(
                    thread_id=int(tid),
                    state=details.get("state", "unknown"),
                    priority=details.get("priority", process_priority),
                    start_time=details.get("start_time"),
                )
            )
        return tuple(threads)


class ProcessMonitor:
    """runs `run_cycle` on a fixed schedule in a daemon thread"""

    def __init__(
        self,
        run_cycle: Callable[[], Any],
        interval_sec: float = 5.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.run_cycle = run_cycle  # callback that performs one scan cycle
        self.interval = max(0.1, interval_sec)  # how many seconds between cycle starts
        self._stop_event = stop_event or threading.Event()
        self._cycle_lock = threading.Lock()  # held while a cycle runs
        self._thread: threading.Thread | None = None
        self.skipped = 0  # ticks dropped because a cycle was still running

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trigger(self) -> bool:
        """run one cycle now unless one is already running; returns whether it ran"""
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped += 1
            log.info("scan still running, skipping this trigger")
            return False
        try:
            self.run_cycle()
        except Exception:
            # the schedule must survive a broken cycle, the next tick retries
            log.exception("scan cycle failed")
        finally:
            self._cycle_lock.release()
        return True

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="ProcessMonitor")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()  # also tells a running cycle to cancel
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run(self) -> None:
        next_at = time.monotonic()
        while not self._stop_event.is_set():
            self.trigger()
            next_at += self.interval
            now = time.monotonic()
            if now > next_at:
                # the cycle overran; drop the ticks it swallowed instead of firing them back to back
                missed = int((now - next_at) // self.interval) + 1
                self.skipped += missed
                next_at += missed * self.interval
                log.info("scan took longer than %.1fs, skipped %d tick(s)", self.interval, missed)
            self._stop_event.wait(timeout=max(0.0, next_at - now))


def uptime() -> timedelta:
    return timedelta(seconds=max(0.0, time.time() - psutil.boot_time()))
