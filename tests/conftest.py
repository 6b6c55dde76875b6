from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import requests

from agent.errors import LookupFailure
from agent.models import ProcessSnapshot, ThreadSnapshot

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _env_url() -> str:
    return os.getenv("PROCWARDEN_BASE_URL", "http://127.0.0.1:8765").rstrip("/")


@pytest.fixture(scope="session")
def base_url() -> str:
    return _env_url()


@pytest.fixture(scope="session")
def http():
    """Simple requests wrapper with a short timeout."""

    class _HTTP:
        def get(self, url: str, **kw):
            kw.setdefault("timeout", 5)
            return requests.get(url, **kw)

    return _HTTP()


@pytest.fixture(scope="session")
def server_up(base_url: str, http):
    """Skip the test if the API isn't reachable."""
    try:
        r = http.get(f"{base_url}/api/ping")
        if r.status_code != 200:
            pytest.skip(f"Server reachable but non-200 from /api/ping: {r.status_code}")
    except requests.RequestException as exc:
        pytest.skip(f"Server not reachable at {base_url} ({exc})")


def assert_has_keys(obj: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [k for k in required if k not in obj]
    assert not missing, f"Missing keys: {missing} in {obj}"


# ---------- builders shared by the unit tests ----------


def thread(tid: int, **kw) -> ThreadSnapshot:
    kw.setdefault("state", "running")
    return ThreadSnapshot(thread_id=tid, **kw)


def proc(pid: int, name: str = "proc.exe", threads=(), **kw) -> ProcessSnapshot:
    kw.setdefault("owner", "alice")
    kw.setdefault("start_time", T0)
    kw.setdefault("execution_path", f"C:\\apps\\{name}")
    kw.setdefault("command_line", name)
    return ProcessSnapshot(
        process_id=pid,
        name=name,
        threads=tuple(thread(t) if isinstance(t, int) else t for t in threads),
        **kw,
    )


def write_rules(path, rules: list[dict[str, Any]]) -> str:
    path.write_text(json.dumps(rules), encoding="utf-8")
    return str(path)


class FakeSource:
    """process source returning queued scans; an exception in the queue is raised instead"""

    def __init__(self, *scans):
        self.scans = list(scans)
        self.calls = 0

    def list_processes(self):
        self.calls += 1
        item = self.scans.pop(0) if len(self.scans) > 1 else self.scans[0]
        if isinstance(item, BaseException):
            raise item
        return list(item)


class FakeGateway:
    """enrichment gateway answering from dicts; missing pids fail like a denied lookup"""

    def __init__(self, owners=None, signed=None, connections=None, fail=()):
        self.owners = owners or {}
        self.signed = signed or {}
        self.connections = connections or {}
        self.fail = set(fail)  # (field, pid) pairs that raise
        self.refreshed = 0

    def _check(self, field: str, pid: int) -> None:
        if (field, pid) in self.fail or (field, None) in self.fail:
            raise LookupFailure(field, "access denied")

    def refresh(self) -> None:
        self.refreshed += 1

    def get_owner(self, pid: int) -> str:
        self._check("owner", pid)
        return self.owners.get(pid, "alice")

    def get_command_line(self, pid: int) -> str:
        self._check("command_line", pid)
        return f"cmd-{pid}"

    def get_parent_id(self, pid: int) -> int | None:
        self._check("parent_process_id", pid)
        return 1 if pid != 1 else None

    def is_signed(self, pid: int) -> bool:
        self._check("is_digitally_signed", pid)
        return self.signed.get(pid, True)

    def get_connection_count(self, pid: int) -> int:
        self._check("network_connection_count", pid)
        return self.connections.get(pid, 0)


class StepClock:
    """deterministic clock: every call advances by `step`"""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current
