# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: failure taxonomy for the scan pipeline. only EnumerationFailure is fatal for a cycle; the
rest are absorbed where they happen, turned into ScanError records, and surfaced on the ScanResult.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ProcWardenError(Exception):
    """base class for every error raised by the scan pipeline"""


class EnumerationFailure(ProcWardenError):
    """the process source itself could not be queried, so the cycle has nothing to act on"""


class LookupFailure(ProcWardenError):
    """one enrichment field of one process could not be read (denied, gone, timed out, ...)"""

    def __init__(self, field: str, cause: BaseException | str | None = None) -> None:
        self.field = field
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"lookup of {field!r} failed{detail}")


class ReconciliationAnomaly(ProcWardenError):
    """a process changed identity-relevant fields between scans; reconciliation still proceeds"""

    def __init__(self, process_id: int, fields: tuple[str, ...], message: str) -> None:
        self.process_id = process_id
        self.fields = fields
        self.message = message
        super().__init__(f"pid {process_id}: {message}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReconciliationAnomaly):
            return NotImplemented
        return (self.process_id, self.fields, self.message) == (
            other.process_id,
            other.fields,
            other.message,
        )

    def __hash__(self) -> int:
        return hash((self.process_id, self.fields, self.message))


class RuleEvaluationError(ProcWardenError):
    """a rule is malformed (bad threshold, blank name); it is treated as non-matching"""

    def __init__(self, rule_name: str, message: str) -> None:
        self.rule_name = rule_name
        self.message = message
        super().__init__(f"rule {rule_name!r}: {message}")


class ScanCancelled(ProcWardenError):
    """raised at an enrichment boundary when shutdown was requested mid-cycle"""


@dataclass(frozen=True)
class ScanError:
    """one absorbed failure: which process (None for cycle-wide), which stage, what went wrong"""

    process_id: int | None
    stage: str  # "enumerate" | "enrich" | "reconcile" | "evaluate" | "rules" | "emit"
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "stage": self.stage,
            "type": type(self.error).__name__,
            "message": self.message,
        }
