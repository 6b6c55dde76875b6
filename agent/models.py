# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: plain data for the scan pipeline. a ProcessSnapshot (with its ThreadSnapshots) is one
point-in-time read of a process, an AlertRule is one configured anomaly rule, a Verdict is the
derived suspicious/clean label, ProcessHistory is the append-only record written per scan, and a
Changeset is what reconciliation hands to storage and viewers.

snapshots are frozen dataclasses. merging produces new objects via dataclasses.replace, so a
mapping of snapshots can be shared between threads without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agent.errors import ReconciliationAnomaly

# enrichment field names, shared by the gateway fallback table and ProcessSnapshot.unresolved
OWNER = "owner"
COMMAND_LINE = "command_line"
PARENT_ID = "parent_process_id"
SIGNATURE = "is_digitally_signed"
CONNECTIONS = "network_connection_count"

ENRICHMENT_FIELDS: tuple[str, ...] = (OWNER, COMMAND_LINE, PARENT_ID, SIGNATURE, CONNECTIONS)

# listed in ProcessSnapshot.unresolved when the source could not read the thread list
THREADS = "threads"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(raw: Any) -> datetime | None:
    # accepts what _iso writes, plus datetimes passed straight through
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


@dataclass(frozen=True)
class ThreadSnapshot:
    thread_id: int
    state: str = "unknown"
    cpu_utilization: float | None = None  # None means "not measured this scan"
    priority: int = 0
    start_time: datetime | None = None
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "state": self.state,
            "cpu_utilization": self.cpu_utilization,
            "priority": self.priority,
            "start_time": _iso(self.start_time),
            "last_updated": _iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadSnapshot:
        return cls(
            thread_id=int(data["thread_id"]),
            state=str(data.get("state") or "unknown"),
            cpu_utilization=data.get("cpu_utilization"),
            priority=int(data.get("priority") or 0),
            start_time=_parse_ts(data.get("start_time")),
            last_updated=_parse_ts(data.get("last_updated")),
        )


@dataclass(frozen=True)
class ProcessSnapshot:
    """one observation of a process. process_id is only unique within a single scan."""

    process_id: int
    name: str = ""
    owner: str = "Unknown"
    cpu_usage_percent: float = 0.0
    memory_usage_mb: float = 0.0
    start_time: datetime | None = None
    execution_path: str = ""
    command_line: str = "Unknown"
    parent_process_id: int | None = None
    is_digitally_signed: bool = False
    network_connection_count: int = 0
    last_updated: datetime | None = None
    threads: tuple[ThreadSnapshot, ...] = ()
    # enrichment fields that only hold a fallback value for this observation
    unresolved: frozenset[str] = field(default_factory=frozenset)

    @property
    def thread_ids(self) -> list[int]:
        return [t.thread_id for t in self.threads]

    def to_dict(self, include_threads: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "process_id": self.process_id,
            "name": self.name,
            "owner": self.owner,
            "cpu_usage_percent": self.cpu_usage_percent,
            "memory_usage_mb": self.memory_usage_mb,
            "start_time": _iso(self.start_time),
            "execution_path": self.execution_path,
            "command_line": self.command_line,
            "parent_process_id": self.parent_process_id,
            "is_digitally_signed": self.is_digitally_signed,
            "network_connection_count": self.network_connection_count,
            "last_updated": _iso(self.last_updated),
            "thread_count": len(self.threads),
            "unresolved": sorted(self.unresolved),
        }
        if include_threads:
            out["threads"] = [t.to_dict() for t in self.threads]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessSnapshot:
        ppid = data.get("parent_process_id")
        return cls(
            process_id=int(data["process_id"]),
            name=str(data.get("name") or ""),
            owner=str(data.get("owner") or "Unknown"),
            cpu_usage_percent=float(data.get("cpu_usage_percent") or 0.0),
            memory_usage_mb=float(data.get("memory_usage_mb") or 0.0),
            start_time=_parse_ts(data.get("start_time")),
            execution_path=str(data.get("execution_path") or ""),
            command_line=str(data.get("command_line") or "Unknown"),
            parent_process_id=int(ppid) if ppid is not None else None,
            is_digitally_signed=bool(data.get("is_digitally_signed", False)),
            network_connection_count=int(data.get("network_connection_count") or 0),
            last_updated=_parse_ts(data.get("last_updated")),
            threads=tuple(ThreadSnapshot.from_dict(t) for t in data.get("threads") or []),
            unresolved=frozenset(data.get("unresolved") or ()),
        )


@dataclass(frozen=True)
class AlertRule:
    """
    one anomaly rule. every criterion is optional; a rule with none set never matches.
    thresholds and flags are kept exactly as loaded so validation can reject junk instead of
    coercing it ("false" as a string is not false).
    """

    name: str
    process_name_pattern: str | None = None
    cpu_threshold: float | None = None
    memory_threshold: float | None = None
    network_connections_threshold: int | None = None
    must_be_digitally_signed: bool | None = None
    alert_on_startup: bool = False
    send_email_notification: bool = False
    email_recipients: str = ""
    is_enabled: bool = True
    created_date: datetime = field(default_factory=utcnow)
    last_modified_date: datetime = field(default_factory=utcnow)

    @property
    def recipients(self) -> list[str]:
        return [r.strip() for r in self.email_recipients.replace(";", ",").split(",") if r.strip()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "process_name_pattern": self.process_name_pattern,
            "cpu_threshold": self.cpu_threshold,
            "memory_threshold": self.memory_threshold,
            "network_connections_threshold": self.network_connections_threshold,
            "must_be_digitally_signed": self.must_be_digitally_signed,
            "alert_on_startup": self.alert_on_startup,
            "send_email_notification": self.send_email_notification,
            "email_recipients": self.email_recipients,
            "is_enabled": self.is_enabled,
            "created_date": _iso(self.created_date),
            "last_modified_date": _iso(self.last_modified_date),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertRule:
        now = utcnow()
        return cls(
            name=str(data.get("name") or ""),
            process_name_pattern=data.get("process_name_pattern"),
            cpu_threshold=data.get("cpu_threshold"),
            memory_threshold=data.get("memory_threshold"),
            network_connections_threshold=data.get("network_connections_threshold"),
            must_be_digitally_signed=data.get("must_be_digitally_signed"),
            alert_on_startup=data.get("alert_on_startup", False),
            send_email_notification=data.get("send_email_notification", False),
            email_recipients=str(data.get("email_recipients") or ""),
            is_enabled=data.get("is_enabled", True),
            created_date=_parse_ts(data.get("created_date")) or now,
            last_modified_date=_parse_ts(data.get("last_modified_date")) or now,
        )


@dataclass(frozen=True)
class Verdict:
    process_id: int
    is_suspicious: bool = False
    reason: str = ""  # name of the first matching rule, empty when clean

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "is_suspicious": self.is_suspicious,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ProcessHistory:
    """append-only record of a process and its verdict at one scan"""

    process_id: int
    name: str
    user_name: str
    cpu_usage: float
    memory_usage_mb: float
    timestamp: datetime
    execution_path: str
    network_connection_count: int
    is_suspicious: bool
    alert_triggered: bool = False
    alert_message: str = ""

    @classmethod
    def from_snapshot(
        cls,
        process: ProcessSnapshot,
        verdict: Verdict,
        timestamp: datetime,
        alert_triggered: bool = False,
        alert_message: str = "",
    ) -> ProcessHistory:
        return cls(
            process_id=process.process_id,
            name=process.name,
            user_name=process.owner,
            cpu_usage=process.cpu_usage_percent,
            memory_usage_mb=process.memory_usage_mb,
            timestamp=timestamp,
            execution_path=process.execution_path,
            network_connection_count=process.network_connection_count,
            is_suspicious=verdict.is_suspicious,
            alert_triggered=alert_triggered,
            alert_message=alert_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "name": self.name,
            "user_name": self.user_name,
            "cpu_usage": self.cpu_usage,
            "memory_usage_mb": self.memory_usage_mb,
            "timestamp": _iso(self.timestamp),
            "execution_path": self.execution_path,
            "network_connection_count": self.network_connection_count,
            "is_suspicious": self.is_suspicious,
            "alert_triggered": self.alert_triggered,
            "alert_message": self.alert_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessHistory:
        return cls(
            process_id=int(data["process_id"]),
            name=str(data.get("name") or ""),
            user_name=str(data.get("user_name") or "Unknown"),
            cpu_usage=float(data.get("cpu_usage") or 0.0),
            memory_usage_mb=float(data.get("memory_usage_mb") or 0.0),
            timestamp=_parse_ts(data.get("timestamp")) or utcnow(),
            execution_path=str(data.get("execution_path") or ""),
            network_connection_count=int(data.get("network_connection_count") or 0),
            is_suspicious=bool(data.get("is_suspicious", False)),
            alert_triggered=bool(data.get("alert_triggered", False)),
            alert_message=str(data.get("alert_message") or ""),
        )


@dataclass(frozen=True)
class ThreadDiff:
    added: tuple[ThreadSnapshot, ...] = ()
    removed: tuple[int, ...] = ()
    updated: tuple[ThreadSnapshot, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [t.thread_id for t in self.added],
            "removed": list(self.removed),
            "updated": [t.thread_id for t in self.updated],
        }


@dataclass(frozen=True)
class ProcessUpdate:
    """a process seen in both scans: the merged snapshot, what it replaced, and the thread diff"""

    process: ProcessSnapshot
    previous: ProcessSnapshot
    threads: ThreadDiff
    changed_fields: tuple[str, ...] = ()

    @property
    def process_id(self) -> int:
        return self.process.process_id

    @property
    def is_noop(self) -> bool:
        return not self.changed_fields and self.threads.is_empty


@dataclass(frozen=True)
class Changeset:
    added: tuple[ProcessSnapshot, ...] = ()
    updated: tuple[ProcessUpdate, ...] = ()
    removed: tuple[int, ...] = ()
    anomalies: tuple[ReconciliationAnomaly, ...] = ()

    @property
    def current(self) -> list[ProcessSnapshot]:
        """every process of the current scan, added first, in scan order within each bucket"""
        return list(self.added) + [u.process for u in self.updated]

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed and all(u.is_noop for u in self.updated)

    def to_dict(self) -> dict[str, Any]:
        # compact shape for the broadcaster: full rows for added/changed, ids for the rest
        return {
            "added": [p.to_dict(include_threads=False) for p in self.added],
            "updated": [
                {
                    **u.process.to_dict(include_threads=False),
                    "changed_fields": list(u.changed_fields),
                    "threads": u.threads.to_dict(),
                }
                for u in self.updated
                if not u.is_noop
            ],
            "unchanged": [u.process_id for u in self.updated if u.is_noop],
            "removed": list(self.removed),
            "anomalies": [str(a) for a in self.anomalies],
        }
