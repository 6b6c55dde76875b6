# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: run one scan cycle end to end and hand the result to storage and viewers.

    enumerate -> enrich (parallel, bounded) -> reconcile -> evaluate -> emit

only a failed enumeration aborts a cycle. everything that goes wrong for a single process (a field
lookup, its enrichment task, its merge, its rule evaluation) is caught, logged, recorded as a
ScanError on the result, and the process still shows up in the changeset with best-effort values.
a stop request is honoured between enrichment tasks; a cancelled cycle persists nothing.

the previously known process table is an immutable mapping. a cycle reads it once at the start and
replaces it under a lock only after emitting, so readers of known_state() never see half a cycle.
every cycle stamps its snapshots with a timestamp strictly greater than the previous cycle's.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from agent.enrichment import EnrichmentGateway, GuardedLookups, enrich_process, fallback_snapshot
from agent.errors import (
    EnumerationFailure,
    LookupFailure,
    ScanCancelled,
    ScanError,
)
from agent.models import (
    AlertRule,
    Changeset,
    ProcessHistory,
    ProcessSnapshot,
    Verdict,
    utcnow,
)
from agent.repository import Repository
from agent.rules_engine import evaluate, partition_rules
from algorithm.reconciler import reconcile

log = logging.getLogger("procwarden.scan")

_TICK = timedelta(microseconds=1)


class ProcessSource(Protocol):
    def list_processes(self) -> list[ProcessSnapshot]: ...


class Broadcaster(Protocol):
    def publish(self, event: dict[str, Any]) -> None: ...


class ScanStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ScanResult:
    changeset: Changeset
    verdicts: dict[int, Verdict]
    errors: list[ScanError]
    started_at: datetime
    finished_at: datetime
    status: ScanStatus
    alerts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def suspicious(self) -> list[Verdict]:
        return [v for v in self.verdicts.values() if v.is_suspicious]

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "added": len(self.changeset.added),
            "updated": len(self.changeset.updated),
            "removed": len(self.changeset.removed),
            "suspicious": len(self.suspicious),
            "alerts": len(self.alerts),
            "errors": len(self.errors),
        }


class ScanOrchestrator:
    def __init__(
        self,
        source: ProcessSource,
        gateway: EnrichmentGateway,
        repository: Repository,
        broadcaster: Broadcaster | None = None,
        max_workers: int = 8,
        lookup_timeout: float = 2.0,
        stop_event: threading.Event | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.repository = repository
        self.broadcaster = broadcaster
        self.max_workers = max(1, max_workers)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        # twice the enrichment workers so a few hung lookups cannot starve the cycle
        self._lookups = GuardedLookups(
            gateway, timeout=lookup_timeout, max_workers=self.max_workers * 2
        )
        self._lock = threading.Lock()

        known = repository.list_processes()
        self._state: Mapping[int, ProcessSnapshot] = MappingProxyType(
            {p.process_id: p for p in known}
        )
        self._verdicts: dict[int, Verdict] = self._load_verdicts(known)
        stamps = [p.last_updated for p in known if p.last_updated is not None]
        self._last_stamp: datetime | None = max(stamps) if stamps else None

    def _load_verdicts(self, known: list[ProcessSnapshot]) -> dict[int, Verdict]:
        # the last history row says whether a restored process was already flagged
        out: dict[int, Verdict] = {}
        for proc in known:
            rows = self.repository.get_history(proc.process_id, limit=1)
            if rows and rows[0].is_suspicious:
                out[proc.process_id] = Verdict(proc.process_id, True, "")
        return out

    def known_state(self) -> Mapping[int, ProcessSnapshot]:
        with self._lock:
            return self._state

    def close(self) -> None:
        self._lookups.close()

    # ---------- cycle ----------

    def _stamp(self) -> datetime:
        now = self._clock()
        with self._lock:
            if self._last_stamp is not None and now <= self._last_stamp:
                now = self._last_stamp + _TICK
            self._last_stamp = now
        return now

    def _finish(
        self,
        started: datetime,
        status: ScanStatus,
        errors: list[ScanError],
        changeset: Changeset | None = None,
        verdicts: dict[int, Verdict] | None = None,
        alerts: list[dict[str, Any]] | None = None,
    ) -> ScanResult:
        return ScanResult(
            changeset=changeset or Changeset(),
            verdicts=verdicts or {},
            errors=errors,
            started_at=started,
            finished_at=self._clock(),
            status=status,
            alerts=alerts or [],
        )

    def run_scan_cycle(self) -> ScanResult:
        started = self._clock()
        errors: list[ScanError] = []
        previous = self.known_state()

        if self.stop_event.is_set():
            return self._finish(started, ScanStatus.CANCELLED, errors)

        # enumerate
        try:
            snapshots = list(self.source.list_processes())
        except Exception as exc:
            failure = exc if isinstance(exc, EnumerationFailure) else EnumerationFailure(str(exc))
            log.error("scan aborted, process enumeration failed: %s", failure)
            errors.append(ScanError(None, "enumerate", failure))
            return self._finish(started, ScanStatus.ABORTED, errors)

        rules = self._active_rules(errors)

        # enrich
        try:
            self._lookups.refresh()
        except Exception as exc:
            log.warning("enrichment refresh failed: %s", exc)
            errors.append(ScanError(None, "enrich", exc))
        try:
            enriched = self._enrich_all(snapshots, errors)
        except ScanCancelled:
            log.info("scan cancelled during enrichment, nothing persisted")
            return self._finish(started, ScanStatus.CANCELLED, errors)

        # reconcile
        stamp = self._stamp()
        stamped = [
            replace(
                p,
                last_updated=stamp,
                threads=tuple(replace(t, last_updated=stamp) for t in p.threads),
            )
            for p in enriched
        ]

        def _on_merge_error(pid: int, exc: Exception) -> None:
            log.warning("pid %s: merge failed, keeping the fresh observation: %s", pid, exc)
            errors.append(ScanError(pid, "reconcile", exc))

        changeset = reconcile(previous, stamped, on_error=_on_merge_error)
        for anomaly in changeset.anomalies:
            log.info("%s", anomaly)
            errors.append(ScanError(anomaly.process_id, "reconcile", anomaly))

        # evaluate
        verdicts: dict[int, Verdict] = {}
        for proc in changeset.current:
            try:
                verdicts[proc.process_id] = evaluate(proc, rules)
            except Exception as exc:
                log.warning("pid %s: rule evaluation failed: %s", proc.process_id, exc)
                errors.append(ScanError(proc.process_id, "evaluate", exc))
                verdicts[proc.process_id] = Verdict(proc.process_id)

        # emit
        try:
            self.repository.upsert_processes(changeset)
        except Exception as exc:
            # keep the old prior state so the next cycle recomputes (and retries) this changeset
            log.error("could not store changeset, it will be retried next cycle: %s", exc)
            errors.append(ScanError(None, "emit", exc))
            return self._finish(started, ScanStatus.COMPLETED, errors, changeset, verdicts)

        alerts = self._emit(changeset, verdicts, rules, stamp, errors)

        with self._lock:
            self._state = MappingProxyType({p.process_id: p for p in changeset.current})
            self._verdicts = verdicts

        result = self._finish(started, ScanStatus.COMPLETED, errors, changeset, verdicts, alerts)
        log.info(
            "scan completed: %d added, %d updated, %d removed, %d suspicious, %d error(s)",
            len(changeset.added),
            len(changeset.updated),
            len(changeset.removed),
            len(result.suspicious),
            len(errors),
        )
        return result

    # ---------- stages ----------

    def _active_rules(self, errors: list[ScanError]) -> list[AlertRule]:
        try:
            rules = self.repository.list_rules(enabled_only=True)
        except Exception as exc:
            log.warning("could not list rules, evaluating with none: %s", exc)
            errors.append(ScanError(None, "rules", exc))
            return []
        valid, bad = partition_rules(rules)
        for exc in bad:
            log.warning("%s", exc)
            errors.append(ScanError(None, "rules", exc))
        return valid

    def _enrich_one(self, snapshot: ProcessSnapshot) -> tuple[ProcessSnapshot, list[LookupFailure]]:
        if self.stop_event.is_set():
            raise ScanCancelled(f"stop requested before enriching pid {snapshot.process_id}")
        return enrich_process(snapshot, self._lookups)

    def _enrich_all(
        self, snapshots: list[ProcessSnapshot], errors: list[ScanError]
    ) -> list[ProcessSnapshot]:
        out: list[ProcessSnapshot] = []
        cancelled = False
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="procwarden-enrich"
        ) as pool:
            futures = [pool.submit(self._enrich_one, snap) for snap in snapshots]
            for snap, future in zip(snapshots, futures):
                try:
                    enriched, failures = future.result()
                except ScanCancelled:
                    cancelled = True
                    continue
                except Exception as exc:
                    log.warning(
                        "pid %s: enrichment failed, using fallbacks: %s", snap.process_id, exc
                    )
                    errors.append(ScanError(snap.process_id, "enrich", exc))
                    out.append(fallback_snapshot(snap))
                    continue
                errors.extend(ScanError(snap.process_id, "enrich", f) for f in failures)
                out.append(enriched)
        if cancelled:
            raise ScanCancelled("stop requested during enrichment")
        return out

    def _emit(
        self,
        changeset: Changeset,
        verdicts: dict[int, Verdict],
        rules: list[AlertRule],
        stamp: datetime,
        errors: list[ScanError],
    ) -> list[dict[str, Any]]:
        by_name = {r.name: r for r in rules}
        fresh = {p.process_id for p in changeset.added}
        fresh.update(a.process_id for a in changeset.anomalies if a.fields == ("start_time",))

        alerts: list[dict[str, Any]] = []
        for proc in changeset.current:
            verdict = verdicts[proc.process_id]
            alert = self._alert_for(proc, verdict, by_name, proc.process_id in fresh, stamp)
            if alert is not None:
                alerts.append(alert)
            record = ProcessHistory.from_snapshot(
                proc,
                verdict,
                stamp,
                alert_triggered=alert is not None,
                alert_message=alert["message"] if alert else "",
            )
            try:
                self.repository.append_history(record)
            except Exception as exc:
                log.warning("pid %s: could not append history: %s", proc.process_id, exc)
                errors.append(ScanError(proc.process_id, "emit", exc))

        self._publish({"type": "changeset", "ts": stamp.isoformat(), **changeset.to_dict()})
        for verdict in verdicts.values():
            if verdict.is_suspicious:
                self._publish({"type": "verdict", "ts": stamp.isoformat(), **verdict.to_dict()})
        for alert in alerts:
            self._publish(alert)
        return alerts

    def _alert_for(
        self,
        proc: ProcessSnapshot,
        verdict: Verdict,
        rules: dict[str, AlertRule],
        fresh: bool,
        stamp: datetime,
    ) -> dict[str, Any] | None:
        if not verdict.is_suspicious:
            return None
        before = self._verdicts.get(proc.process_id)
        if not fresh and before is not None and before.is_suspicious:
            return None  # still suspicious, already alerted
        rule = rules.get(verdict.reason)
        if fresh and not (rule is not None and rule.alert_on_startup):
            return None
        recipients = rule.recipients if rule is not None and rule.send_email_notification else []
        return {
            "type": "alert",
            "ts": stamp.isoformat(),
            "process_id": proc.process_id,
            "name": proc.name,
            "rule": verdict.reason,
            "message": f"{proc.name or 'process'} (pid {proc.process_id}) "
            f"matched rule {verdict.reason!r}",
            "recipients": recipients,
        }

    def _publish(self, event: dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(event)
        except Exception as exc:  # viewers must never break a scan
            log.warning("publish failed for %s event: %s", event.get("type"), exc)
