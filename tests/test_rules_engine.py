"""
Tests for agent.rules_engine - rule validation, matching and the file-backed RulesEngine
"""

from __future__ import annotations

import json
import os

import pytest
from conftest import proc, write_rules

from agent.errors import RuleEvaluationError
from agent.models import AlertRule
from agent.rules_engine import RulesEngine, evaluate, matches, partition_rules, validate_rule


class TestMatches:
    """Tests for single-rule matching"""

    def test_name_pattern_case_insensitive_substring(self):
        """Test the name pattern is a case-insensitive substring"""
        rule = AlertRule(name="Miner", process_name_pattern="XMRig")
        assert matches(rule, proc(1, "xmrig-cuda.exe"))
        assert not matches(rule, proc(1, "notepad.exe"))

    def test_thresholds_are_strict(self):
        """Test usage must be strictly above the threshold"""
        rule = AlertRule(name="HighCPU", cpu_threshold=90)
        assert not matches(rule, proc(1, cpu_usage_percent=90.0))
        assert matches(rule, proc(1, cpu_usage_percent=90.1))

    def test_memory_and_connections(self):
        """Test memory and connection thresholds"""
        assert matches(AlertRule(name="m", memory_threshold=100), proc(1, memory_usage_mb=150.0))
        assert matches(
            AlertRule(name="n", network_connections_threshold=10),
            proc(1, network_connection_count=11),
        )

    def test_signature_requirement(self):
        """Test unsigned processes match a must-be-signed rule"""
        rule = AlertRule(name="RequireSignature", must_be_digitally_signed=True)
        assert matches(rule, proc(1, is_digitally_signed=False))
        assert not matches(rule, proc(1, is_digitally_signed=True))

    def test_empty_rule_is_inert(self):
        """Test a rule with no criteria never matches"""
        assert not matches(AlertRule(name="nothing"), proc(1, cpu_usage_percent=100.0))

    def test_empty_pattern_does_not_match_everything(self):
        """Test an empty name pattern is treated as unset"""
        assert not matches(AlertRule(name="blank", process_name_pattern=""), proc(1, "a.exe"))


class TestEvaluate:
    """Tests for ordered evaluation"""

    def test_first_match_wins(self):
        """Test R1 (name) before R2 (CPU), both matching, reports R1"""
        rules = [
            AlertRule(name="R1", process_name_pattern="note"),
            AlertRule(name="R2", cpu_threshold=10),
        ]
        verdict = evaluate(proc(100, "notepad.exe", cpu_usage_percent=95.0), rules)
        assert verdict.is_suspicious
        assert verdict.reason == "R1"

    def test_high_cpu(self):
        """Test the HighCPU rule end to end"""
        verdict = evaluate(
            proc(100, "notepad.exe", cpu_usage_percent=95.0),
            [AlertRule(name="HighCPU", cpu_threshold=90)],
        )
        assert (verdict.process_id, verdict.is_suspicious, verdict.reason) == (100, True, "HighCPU")

    def test_disabled_rules_skipped(self):
        """Test disabled rules are never evaluated"""
        rules = [
            AlertRule(name="Off", cpu_threshold=1, is_enabled=False),
            AlertRule(name="On", cpu_threshold=50),
        ]
        assert evaluate(proc(1, cpu_usage_percent=60.0), rules).reason == "On"

    def test_clean_process(self):
        """Test no match gives an empty reason"""
        verdict = evaluate(proc(1), [AlertRule(name="HighCPU", cpu_threshold=90)])
        assert not verdict.is_suspicious
        assert verdict.reason == ""

    @pytest.mark.parametrize(
        "bad",
        [
            {"cpu_threshold": -1},
            {"cpu_threshold": float("nan")},
            {"memory_threshold": "lots"},
            {"network_connections_threshold": True},
        ],
    )
    def test_malformed_rule_never_matches(self, bad):
        """Test malformed rules are skipped and later rules still apply"""
        rules = [AlertRule(name="Bad", **bad), AlertRule(name="Good", cpu_threshold=50)]
        verdict = evaluate(proc(1, cpu_usage_percent=99.0, memory_usage_mb=1e9), rules)
        assert verdict.reason == "Good"

    def test_string_enabled_flag_never_matches(self):
        """Test "is_enabled": "false" from a rules file is malformed, not enabled"""
        rule = AlertRule.from_dict(
            {"name": "X", "process_name_pattern": "a", "is_enabled": "false"}
        )
        verdict = evaluate(proc(1, "a.exe"), [rule])
        assert verdict.is_suspicious is False
        assert verdict.reason == ""


class TestValidateRule:
    """Tests for validate_rule and partition_rules"""

    def test_blank_name(self):
        """Test a blank name is rejected"""
        with pytest.raises(RuleEvaluationError):
            validate_rule(AlertRule(name="  ", cpu_threshold=1))

    def test_infinite_threshold(self):
        """Test an infinite threshold is rejected"""
        with pytest.raises(RuleEvaluationError) as exc:
            validate_rule(AlertRule(name="Inf", cpu_threshold=float("inf")))
        assert exc.value.rule_name == "Inf"

    @pytest.mark.parametrize("flag", ["is_enabled", "alert_on_startup", "send_email_notification"])
    def test_non_bool_flag(self, flag):
        """Test every flag must be a real boolean"""
        rule = AlertRule.from_dict({"name": "Flag", "cpu_threshold": 1, flag: "false"})
        with pytest.raises(RuleEvaluationError) as exc:
            validate_rule(rule)
        assert flag in str(exc.value)

    def test_valid_rule_passes(self):
        """Test a normal rule validates"""
        validate_rule(AlertRule(name="ok", cpu_threshold=0, process_name_pattern="x"))

    def test_partition_keeps_order(self):
        """Test partition_rules keeps valid rules in order and collects errors"""
        valid, errors = partition_rules(
            [
                AlertRule(name="a", cpu_threshold=1),
                AlertRule(name="bad", cpu_threshold=-5),
                AlertRule(name="b", memory_threshold=1),
            ]
        )
        assert [r.name for r in valid] == ["a", "b"]
        assert [e.rule_name for e in errors] == ["bad"]


class TestRulesEngine:
    """Tests for RulesEngine class"""

    def test_missing_file_means_no_rules(self, tmp_path):
        """Test that a missing rules file gives an empty rule list"""
        engine = RulesEngine(path=str(tmp_path / "nope.json"))
        assert engine.rules == []

    def test_invalid_json_raises(self, tmp_path):
        """Test that a broken file fails loudly on first load"""
        path = tmp_path / "rules.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            RulesEngine(path=str(path))

    def test_non_list_is_ignored(self, tmp_path):
        """Test a JSON object instead of a list loads no rules"""
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"name": "x"}), encoding="utf-8")
        assert RulesEngine(path=str(path)).rules == []

    def test_duplicate_names_keep_first(self, tmp_path):
        """Test rule names are unique, first definition wins"""
        path = write_rules(
            tmp_path / "rules.json",
            [
                {"name": "HighCPU", "cpu_threshold": 90},
                {"name": "HighCPU", "cpu_threshold": 10},
                "not a rule",
            ],
        )
        engine = RulesEngine(path=path)
        assert len(engine.rules) == 1
        assert engine.rules[0].cpu_threshold == 90

    def test_evaluate_uses_file_order(self, tmp_path):
        """Test evaluation order is file order"""
        path = write_rules(
            tmp_path / "rules.json",
            [{"name": "Name", "process_name_pattern": "calc"}, {"name": "CPU", "cpu_threshold": 1}],
        )
        verdict = RulesEngine(path=path).evaluate(proc(1, "calc.exe", cpu_usage_percent=50.0))
        assert verdict.reason == "Name"

    def test_reload_if_changed(self, tmp_path):
        """Test the engine picks up edits when the mtime moves"""
        path = write_rules(tmp_path / "rules.json", [{"name": "A", "cpu_threshold": 1}])
        engine = RulesEngine(path=path)
        assert engine.reload_if_changed() is False

        write_rules(tmp_path / "rules.json", [{"name": "B", "cpu_threshold": 1}])
        st = os.stat(path)
        os.utime(path, (st.st_atime, st.st_mtime + 10))
        assert engine.reload_if_changed() is True
        assert [r.name for r in engine.rules] == ["B"]

    def test_broken_reload_keeps_last_good_rules(self, tmp_path):
        """Test a broken edit keeps the previous rules"""
        path = write_rules(tmp_path / "rules.json", [{"name": "A", "cpu_threshold": 1}])
        engine = RulesEngine(path=path)

        (tmp_path / "rules.json").write_text("[{oops", encoding="utf-8")
        st = os.stat(path)
        os.utime(path, (st.st_atime, st.st_mtime + 10))
        assert engine.reload_if_changed() is False
        assert [r.name for r in engine.rules] == ["A"]

    def test_enabled_rules(self, tmp_path):
        """Test enabled_rules filters disabled entries"""
        path = write_rules(
            tmp_path / "rules.json",
            [{"name": "A", "is_enabled": False}, {"name": "B"}],
        )
        assert [r.name for r in RulesEngine(path=path).enabled_rules()] == ["B"]

    def test_malformed_enabled_flag_reported(self, tmp_path):
        """Test a string is_enabled is kept for validation and rejected there"""
        path = write_rules(
            tmp_path / "rules.json",
            [{"name": "A", "cpu_threshold": 1, "is_enabled": "false"}, {"name": "B"}],
        )
        rules = RulesEngine(path=path).enabled_rules()
        assert [r.name for r in rules] == ["A", "B"]
        valid, errors = partition_rules(rules)
        assert [r.name for r in valid] == ["B"]
        assert [e.rule_name for e in errors] == ["A"]
