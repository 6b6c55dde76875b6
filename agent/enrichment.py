# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: fill in the per-process fields that need their own OS query (owner, command line, parent id,
signature, connection count). every field is looked up on its own, bounded by a timeout, and a
failed lookup is replaced by that field's fallback value so the rest of the process (and the rest
of the scan) is never held back by one unreadable field.

the gateway is a Protocol so the scanner does not care where values come from. PsutilEnrichment is
the real adapter: psutil for owner/cmdline/ppid, network_scan.ConnectionIndex for connection counts
and win_sign.SignatureCache for Authenticode checks.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging
import sys  # for checking the platform (Windows vs other)
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from typing import Any, Protocol

import psutil  # library for getting process and system information

from agent.errors import LookupFailure
from agent.models import (
    COMMAND_LINE,
    CONNECTIONS,
    ENRICHMENT_FIELDS,
    OWNER,
    PARENT_ID,
    SIGNATURE,
    ProcessSnapshot,
)
from agent.network_scan import ConnectionIndex
from agent.win_sign import SignatureCache, SignatureUnavailable

log = logging.getLogger("procwarden.enrichment")

# value used when a lookup fails
FALLBACKS: dict[str, Any] = {
    OWNER: "Unknown",
    COMMAND_LINE: "Unknown",
    PARENT_ID: None,
    SIGNATURE: False,
    CONNECTIONS: 0,
}

# gateway method answering each field
GETTERS: dict[str, str] = {
    OWNER: "get_owner",
    COMMAND_LINE: "get_command_line",
    PARENT_ID: "get_parent_id",
    SIGNATURE: "is_signed",
    CONNECTIONS: "get_connection_count",
}


class EnrichmentGateway(Protocol):
    def refresh(self) -> None:
        """called once at the start of every scan cycle"""

    def get_owner(self, pid: int) -> str: ...

    def get_command_line(self, pid: int) -> str: ...

    def get_parent_id(self, pid: int) -> int | None: ...

    def is_signed(self, pid: int) -> bool: ...

    def get_connection_count(self, pid: int) -> int: ...


class GuardedLookups:
    """
    runs gateway calls on a small pool so each one can be abandoned after `timeout` seconds.
    an abandoned call keeps its worker busy until the OS answers; the pool is sized so a few stuck
    calls do not starve the rest of the scan.
    """

    def __init__(self, gateway: EnrichmentGateway, timeout: float = 2.0, max_workers: int = 8):
        self.gateway = gateway
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="procwarden-lookup"
        )

    def refresh(self) -> None:
        self.gateway.refresh()

    def lookup(self, field: str, pid: int) -> Any:
        method = getattr(self.gateway, GETTERS[field])
        future = self._pool.submit(method, pid)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()  # only helps if it never started
            raise LookupFailure(field, f"timed out after {self.timeout}s") from exc
        except LookupFailure:
            raise
        except Exception as exc:  # adapters should raise LookupFailure, wrap whatever else leaks
            raise LookupFailure(field, exc) from exc

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def enrich_process(
    snapshot: ProcessSnapshot, lookups: GuardedLookups
) -> tuple[ProcessSnapshot, list[LookupFailure]]:
    """
    look up every enrichment field of one process.
    returns the filled-in snapshot (fallback fields listed in .unresolved) and the failures.
    """
    values: dict[str, Any] = {}
    unresolved: set[str] = set()
    failures: list[LookupFailure] = []
    for field in ENRICHMENT_FIELDS:
        try:
            values[field] = lookups.lookup(field, snapshot.process_id)
        except LookupFailure as exc:
            log.debug("pid %s: %s", snapshot.process_id, exc)
            values[field] = FALLBACKS[field]
            unresolved.add(field)
            failures.append(exc)
    return replace(snapshot, unresolved=snapshot.unresolved | unresolved, **values), failures


def fallback_snapshot(snapshot: ProcessSnapshot) -> ProcessSnapshot:
    """every enrichment field at its fallback, for a process whose whole enrichment task failed"""
    return replace(snapshot, unresolved=snapshot.unresolved | set(ENRICHMENT_FIELDS), **FALLBACKS)


def _psutil_call(field: str, fn):
    try:
        return fn()
    except (psutil.Error, OSError) as exc:  # NoSuchProcess, AccessDenied, ZombieProcess, ...
        raise LookupFailure(field, exc) from exc


class PsutilEnrichment:
    """enrichment gateway backed by psutil, the system connection table and Authenticode"""

    def __init__(
        self,
        connections: ConnectionIndex | None = None,
        signatures: SignatureCache | None = None,
    ) -> None:
        self.connections = connections or ConnectionIndex()
        self.signatures = signatures or SignatureCache()

    def refresh(self) -> None:
        self.connections.refresh()

    def get_owner(self, pid: int) -> str:
        return _psutil_call(OWNER, lambda: psutil.Process(pid).username())

    def get_command_line(self, pid: int) -> str:
        # kernel threads have an empty argv, that is a real answer and not a failure
        return _psutil_call(COMMAND_LINE, lambda: " ".join(psutil.Process(pid).cmdline()))

    def get_parent_id(self, pid: int) -> int | None:
        ppid = _psutil_call(PARENT_ID, lambda: psutil.Process(pid).ppid())
        return ppid if ppid and ppid != pid else None  # 0 means "no parent" on every platform

    def is_signed(self, pid: int) -> bool:
        if sys.platform != "win32":
            return False  # Authenticode only exists on Windows
        exe = _psutil_call(SIGNATURE, lambda: psutil.Process(pid).exe())
        if not exe:
            raise LookupFailure(SIGNATURE, "no executable path")
        try:
            return self.signatures.is_signed(exe)
        except (SignatureUnavailable, OSError) as exc:
            raise LookupFailure(SIGNATURE, exc) from exc

    def get_connection_count(self, pid: int) -> int:
        try:
            return self.connections.count(pid)
        except Exception as exc:
            raise LookupFailure(CONNECTIONS, exc) from exc
