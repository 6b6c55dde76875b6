# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: storage for the scan pipeline. the scanner only sees the Repository protocol; JsonRepository
is the file-backed implementation used by the console:

- the current process table (with threads) lives in memory and is written to `state_path` as one
  JSON document after every upsert, through a temp file + os.replace so readers never see half
- history rows are appended to `history_path` as JSON lines (one row per process per cycle) and
  the newest `history_per_process` rows of each process are also kept in memory for the API
- rules come from the JSON rules file through RulesEngine and are re-read when the file changes

both files are loaded back on start, so a restart resumes from the last persisted scan.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json
import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Protocol

from agent.models import AlertRule, Changeset, ProcessHistory, ProcessSnapshot, ThreadSnapshot
from agent.rules_engine import RulesEngine

log = logging.getLogger("procwarden.repository")


class Repository(Protocol):
    def upsert_processes(self, changeset: Changeset) -> None: ...

    def append_history(self, record: ProcessHistory) -> None: ...

    def list_rules(self, enabled_only: bool = True) -> list[AlertRule]: ...

    def list_processes(self) -> list[ProcessSnapshot]: ...

    def get_process(self, pid: int) -> ProcessSnapshot | None: ...

    def get_threads(self, pid: int) -> list[ThreadSnapshot]: ...

    def get_history(self, pid: int, limit: int = 100) -> list[ProcessHistory]: ...


class JsonRepository:
    def __init__(
        self,
        rules_path: str | Path,
        state_path: str | Path | None = None,
        history_path: str | Path | None = None,
        history_per_process: int = 200,
    ) -> None:
        self.state_path = Path(state_path) if state_path else None
        self.history_path = Path(history_path) if history_path else None
        self.history_per_process = max(1, history_per_process)
        self._rules = RulesEngine(str(rules_path))
        self._lock = threading.Lock()
        self._processes: dict[int, ProcessSnapshot] = {}
        self._history: dict[int, deque[ProcessHistory]] = {}
        self._load_state()
        self._load_history()

    # ---------- loading ----------

    def _load_state(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8") or "{}")
            rows = data.get("processes", []) if isinstance(data, dict) else []
            procs = [ProcessSnapshot.from_dict(r) for r in rows if isinstance(r, dict)]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("ignoring unreadable state file %s: %s", self.state_path, exc)
            return
        self._processes = {p.process_id: p for p in procs}
        log.info("loaded %d process(es) from %s", len(self._processes), self.state_path)

    def _load_history(self) -> None:
        if self.history_path is None or not self.history_path.exists():
            return
        bad = 0
        try:
            with self.history_path.open(encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = ProcessHistory.from_dict(json.loads(line))
                    except (ValueError, KeyError, TypeError):
                        bad += 1
                        continue
                    self._ring(record.process_id).append(record)
        except OSError as exc:
            log.warning("could not read history file %s: %s", self.history_path, exc)
            return
        if bad:
            log.warning("skipped %d malformed history line(s) in %s", bad, self.history_path)

    def _ring(self, pid: int) -> deque[ProcessHistory]:
        ring = self._history.get(pid)
        if ring is None:
            ring = self._history[pid] = deque(maxlen=self.history_per_process)
        return ring

    # ---------- writes ----------

    def upsert_processes(self, changeset: Changeset) -> None:
        with self._lock:
            for proc in changeset.added:
                self._processes[proc.process_id] = proc
            for update in changeset.updated:
                self._processes[update.process_id] = update.process
            for pid in changeset.removed:
                self._processes.pop(pid, None)
            rows = [p.to_dict() for p in self._processes.values()]
        self._save_state(rows)

    def _save_state(self, rows: list[dict]) -> None:
        if self.state_path is None:
            return
        tmp = self.state_path.with_name(self.state_path.name + ".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps({"processes": rows}), encoding="utf-8")
            os.replace(tmp, self.state_path)
        except OSError as exc:
            # the in-memory table stays authoritative, the next upsert tries again
            log.warning("could not persist state to %s: %s", self.state_path, exc)

    def append_history(self, record: ProcessHistory) -> None:
        with self._lock:
            self._ring(record.process_id).append(record)
            if self.history_path is None:
                return
            self.history_path.parent.mkdir(parents=True, exist_ok=True)
            with self.history_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict()) + "\n")

    # ---------- reads ----------

    def list_rules(self, enabled_only: bool = True) -> list[AlertRule]:
        self._rules.reload_if_changed()
        return self._rules.enabled_rules() if enabled_only else list(self._rules.rules)

    def list_processes(self) -> list[ProcessSnapshot]:
        with self._lock:
            return list(self._processes.values())

    def get_process(self, pid: int) -> ProcessSnapshot | None:
        with self._lock:
            return self._processes.get(pid)

    def get_threads(self, pid: int) -> list[ThreadSnapshot]:
        proc = self.get_process(pid)
        return list(proc.threads) if proc is not None else []

    def get_history(self, pid: int, limit: int = 100) -> list[ProcessHistory]:
        """newest first"""
        with self._lock:
            rows = list(self._history.get(pid, ()))
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows[: max(0, limit)]
