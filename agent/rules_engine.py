# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: decide whether a process is suspicious under an ordered list of alert rules. rules are
evaluated in the order given and the first match wins, so they should be ordered from most
specific to most general. a rule matches when ANY of its configured criteria hits:

- process_name_pattern is a case-insensitive substring of the process name
- cpu / memory / network-connection usage is strictly above the rule's threshold
- the rule demands a digital signature and the process is unsigned

evaluate() is a pure function of (process, rules) so it can be tested without a database or an OS.
RulesEngine wraps it with loading from a JSON file (a list of rule objects) and hot reload.
malformed rules never match and never stop the rest of the list from being checked.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for loading rules from JSON files
import logging
import math  # for rejecting NaN/inf thresholds
import os  # for checking if the rules file exists and reading its mtime
from collections.abc import Iterable, Sequence
from numbers import Real

from agent.errors import RuleEvaluationError
from agent.models import AlertRule, ProcessSnapshot, Verdict

log = logging.getLogger("procwarden.rules")

_THRESHOLDS = ("cpu_threshold", "memory_threshold", "network_connections_threshold")
_FLAGS = ("is_enabled", "alert_on_startup", "send_email_notification")


def validate_rule(rule: AlertRule) -> None:
    """raise RuleEvaluationError when a rule cannot be evaluated meaningfully"""
    if not (rule.name or "").strip():
        raise RuleEvaluationError(rule.name or "", "rule has no name")
    for attr in _THRESHOLDS:
        value = getattr(rule, attr)
        if value is None:
            continue
        # bool is a Real subclass, but "cpu_threshold": true is a typo, not a number
        if isinstance(value, bool) or not isinstance(value, Real):
            raise RuleEvaluationError(rule.name, f"{attr} must be a number, got {value!r}")
        if math.isnan(value) or math.isinf(value):
            raise RuleEvaluationError(rule.name, f"{attr} must be finite")
        if value < 0:
            raise RuleEvaluationError(rule.name, f"{attr} must not be negative")
    if rule.process_name_pattern is not None and not isinstance(rule.process_name_pattern, str):
        raise RuleEvaluationError(rule.name, "process_name_pattern must be a string")
    if rule.must_be_digitally_signed is not None and not isinstance(
        rule.must_be_digitally_signed, bool
    ):
        raise RuleEvaluationError(rule.name, "must_be_digitally_signed must be true or false")
    for attr in _FLAGS:
        value = getattr(rule, attr)
        if not isinstance(value, bool):
            raise RuleEvaluationError(rule.name, f"{attr} must be true or false, got {value!r}")


def partition_rules(
    rules: Iterable[AlertRule],
) -> tuple[list[AlertRule], list[RuleEvaluationError]]:
    """split rules into the usable ones (order kept) and the errors of the malformed ones"""
    valid: list[AlertRule] = []
    errors: list[RuleEvaluationError] = []
    for rule in rules:
        try:
            validate_rule(rule)
        except RuleEvaluationError as exc:
            errors.append(exc)
            continue
        valid.append(rule)
    return valid, errors


def matches(rule: AlertRule, process: ProcessSnapshot) -> bool:
    # name pattern
    pattern = rule.process_name_pattern
    if pattern and pattern.lower() in (process.name or "").lower():
        return True

    # resource thresholds, strictly greater than
    if rule.cpu_threshold is not None and process.cpu_usage_percent > rule.cpu_threshold:
        return True
    if rule.memory_threshold is not None and process.memory_usage_mb > rule.memory_threshold:
        return True
    if (
        rule.network_connections_threshold is not None
        and process.network_connection_count > rule.network_connections_threshold
    ):
        return True

    # signature requirement
    if rule.must_be_digitally_signed and not process.is_digitally_signed:
        return True

    return False  # nothing configured hit (or nothing configured at all)


def evaluate(process: ProcessSnapshot, rules: Sequence[AlertRule]) -> Verdict:
    for rule in rules:  # first match wins
        if not rule.is_enabled:
            continue
        try:
            validate_rule(rule)
        except RuleEvaluationError:
            continue  # a bad rule is a non-matching rule
        if matches(rule, process):
            return Verdict(process_id=process.process_id, is_suspicious=True, reason=rule.name)
    return Verdict(process_id=process.process_id)


class RulesEngine:
    """ordered rule list backed by a JSON file, reloaded when the file changes on disk"""

    def __init__(self, path: str) -> None:
        self.path = path  # path to the JSON file containing the rules
        self._mtime: float | None = None
        self.rules: list[AlertRule] = self._load_rules()  # load the rules when we're created

    def _load_rules(self) -> list[AlertRule]:
        if not os.path.exists(self.path):  # no rules file means no rules to apply
            self._mtime = None
            return []
        self._mtime = os.path.getmtime(self.path)
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):  # make sure it is a list, otherwise no rules
            return []

        rules: list[AlertRule] = []
        seen: set[str] = set()
        for entry in data:
            if not isinstance(entry, dict):
                continue
            rule = AlertRule.from_dict(entry)
            if rule.name in seen:
                # rule names are unique; the first definition wins
                log.warning("duplicate rule name %r in %s ignored", rule.name, self.path)
                continue
            seen.add(rule.name)
            rules.append(rule)
        return rules

    def reload_if_changed(self) -> bool:
        """re-read the file when its mtime moved; a broken file keeps the last good rules"""
        try:
            mtime = os.path.getmtime(self.path) if os.path.exists(self.path) else None
        except OSError:
            return False
        if mtime == self._mtime:
            return False
        try:
            self.rules = self._load_rules()
        except (OSError, ValueError) as exc:  # JSONDecodeError is a ValueError
            self._mtime = mtime  # do not retry the same broken file every cycle
            log.warning("could not reload rules from %s: %s", self.path, exc)
            return False
        log.info("reloaded %d rule(s) from %s", len(self.rules), self.path)
        return True

    def enabled_rules(self) -> list[AlertRule]:
        # a malformed is_enabled is kept so validation can report the rule
        return [r for r in self.rules if r.is_enabled is not False]

    def evaluate(self, process: ProcessSnapshot) -> Verdict:
        return evaluate(process, self.rules)
