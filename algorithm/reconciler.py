# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: diff a fresh process scan against the previously known state and return a Changeset that
partitions every process id into added, updated or removed. pure function, no I/O, no logging.

how the diff works
both sides are indexed by process id once (hashed lookups, no nested scans), so the cost is linear
in the size of the two scans. the current scan is walked in order: ids the previous state does not
know are "added" with their threads as-is; ids present on both sides become an update carrying the
merged snapshot and a thread diff. the previous state is then walked in order and every id the
current scan did not report is "removed". identical inputs always produce the identical changeset.

merging rules for a process seen twice
- last write wins: cpu, memory, connection count and every other field come from the current scan
- exception: a field the current scan could only fill with its enrichment fallback (listed in
  snapshot.unresolved) keeps the previously known real value, so one failed lookup does not erase it
- threads: current-only threads are added, previous-only threads are removed, threads on both sides
  are refreshed (state, priority, last_updated) while cpu_utilization survives unless re-measured
  and start_time stays at the first observation
- an unreadable thread list (THREADS in snapshot.unresolved) keeps the previous threads with an
  empty thread diff instead of reporting every known thread as removed

process id reuse
the OS recycles ids, so an "update" can really be a different process. when both start times are
known and disagree, the update is kept (the partition stays intact) but flagged with an anomaly,
all old threads count as removed, all new threads as added, and nothing is carried over.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import fields, replace
from datetime import timedelta

from agent.errors import ReconciliationAnomaly
from agent.models import (
    THREADS,
    Changeset,
    ProcessSnapshot,
    ProcessUpdate,
    ThreadDiff,
    ThreadSnapshot,
)

Snapshots = Mapping[int, ProcessSnapshot] | Iterable[ProcessSnapshot]
OnError = Callable[[int, Exception], None]

# fields compared to decide whether an update actually changed anything
COMPARED_FIELDS: tuple[str, ...] = tuple(
    f.name
    for f in fields(ProcessSnapshot)
    if f.name not in ("process_id", "threads", "unresolved", "last_updated")
)

# fields that should never change for a live process
IDENTITY_FIELDS: tuple[str, ...] = ("name", "execution_path")

# create_time is derived from boot time + ticks, allow a little jitter before calling it a reuse
START_TIME_TOLERANCE = timedelta(seconds=1)


def _index(
    snapshots: Snapshots, anomalies: list[ReconciliationAnomaly]
) -> dict[int, ProcessSnapshot]:
    items = snapshots.values() if isinstance(snapshots, Mapping) else snapshots
    out: dict[int, ProcessSnapshot] = {}
    for snap in items:
        if snap.process_id in out:
            anomalies.append(
                ReconciliationAnomaly(
                    snap.process_id,
                    ("process_id",),
                    "process id reported twice in one scan; keeping the last observation",
                )
            )
        out[snap.process_id] = snap
    return out


def _start_time_changed(previous: ProcessSnapshot, current: ProcessSnapshot) -> bool:
    if previous.start_time is None or current.start_time is None:
        return False
    return abs(previous.start_time - current.start_time) > START_TIME_TOLERANCE


def _identity_changes(previous: ProcessSnapshot, current: ProcessSnapshot) -> tuple[str, ...]:
    changed = []
    for name in IDENTITY_FIELDS:
        old, new = getattr(previous, name), getattr(current, name)
        if not old or not new:
            continue  # an unreadable value is not a change
        if old != new:
            changed.append(name)
    return tuple(changed)


def diff_threads(
    previous: ProcessSnapshot, current: ProcessSnapshot, reset: bool = False
) -> tuple[tuple[ThreadSnapshot, ...], ThreadDiff]:
    """
    thread-level diff for one process seen in both scans.
    returns the merged thread list (in current order) and the diff. with reset=True the previous
    threads are treated as belonging to another process entirely. when the current scan could not
    read the thread list (THREADS in current.unresolved) the previous threads are kept unchanged.
    """
    if THREADS in current.unresolved and not reset:
        return previous.threads, ThreadDiff()

    prev_by_id: dict[int, ThreadSnapshot] = {}
    if not reset:
        prev_by_id = {t.thread_id: t for t in previous.threads}

    merged: list[ThreadSnapshot] = []
    added: list[ThreadSnapshot] = []
    updated: list[ThreadSnapshot] = []
    seen: set[int] = set()
    for thread in current.threads:
        if thread.thread_id in seen:
            continue
        seen.add(thread.thread_id)
        old = prev_by_id.get(thread.thread_id)
        if old is None:
            added.append(thread)
            merged.append(thread)
            continue
        refreshed = replace(
            thread,
            cpu_utilization=(
                thread.cpu_utilization
                if thread.cpu_utilization is not None
                else old.cpu_utilization
            ),
            start_time=old.start_time or thread.start_time,
        )
        updated.append(refreshed)
        merged.append(refreshed)

    removed = tuple(
        t.thread_id for t in previous.threads if reset or t.thread_id not in seen
    )
    return tuple(merged), ThreadDiff(added=tuple(added), removed=removed, updated=tuple(updated))


def merge_process(
    previous: ProcessSnapshot, current: ProcessSnapshot
) -> tuple[ProcessUpdate, list[ReconciliationAnomaly]]:
    """merge one process seen in both scans into a ProcessUpdate plus any anomalies noticed"""
    anomalies: list[ReconciliationAnomaly] = []
    reused = _start_time_changed(previous, current)
    if reused:
        anomalies.append(
            ReconciliationAnomaly(
                current.process_id,
                ("start_time",),
                "start time changed between scans; the process id was likely reused",
            )
        )
    else:
        changed_identity = _identity_changes(previous, current)
        if changed_identity:
            anomalies.append(
                ReconciliationAnomaly(
                    current.process_id,
                    changed_identity,
                    "identity fields changed between scans: " + ", ".join(changed_identity),
                )
            )

    threads, thread_diff = diff_threads(previous, current, reset=reused)

    carried: dict[str, object] = {}
    kept: set[str] = set()
    if not reused:
        for name in current.unresolved - previous.unresolved:
            if name == THREADS:
                kept.add(name)  # already merged by diff_threads
            else:
                carried[name] = getattr(previous, name)
    unresolved = frozenset(current.unresolved - carried.keys() - kept)

    merged = replace(current, threads=threads, unresolved=unresolved, **carried)
    changed = tuple(f for f in COMPARED_FIELDS if getattr(merged, f) != getattr(previous, f))
    update = ProcessUpdate(
        process=merged, previous=previous, threads=thread_diff, changed_fields=changed
    )
    return update, anomalies


def reconcile(
    previous: Snapshots, current: Snapshots, on_error: OnError | None = None
) -> Changeset:
    """
    compute the changeset between two scans.
    a failure merging one process is reported through on_error and that process is still emitted
    as an update carrying the current observation unchanged (last write wins).
    """
    anomalies: list[ReconciliationAnomaly] = []
    prev_index = _index(previous, [])  # duplicates in stored state are not this scan's anomaly
    cur_index = _index(current, anomalies)

    added: list[ProcessSnapshot] = []
    updated: list[ProcessUpdate] = []
    for pid, snap in cur_index.items():
        old = prev_index.get(pid)
        if old is None:
            added.append(snap)
            continue
        try:
            update, found = merge_process(old, snap)
        except Exception as exc:
            if on_error is not None:
                on_error(pid, exc)
            update = ProcessUpdate(
                process=snap,
                previous=old,
                threads=ThreadDiff(updated=snap.threads),
                changed_fields=COMPARED_FIELDS,
            )
            found = []
        updated.append(update)
        anomalies.extend(found)

    removed = tuple(pid for pid in prev_index if pid not in cur_index)
    return Changeset(
        added=tuple(added),
        updated=tuple(updated),
        removed=removed,
        anomalies=tuple(anomalies),
    )
