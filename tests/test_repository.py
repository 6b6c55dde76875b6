"""
Tests for agent.repository - JsonRepository storage
Tests upserts, persistence across restarts, history retention and rule listing.
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from conftest import T0, proc, write_rules

from agent.models import Changeset, ProcessHistory, ProcessUpdate, ThreadDiff, Verdict
from agent.repository import JsonRepository


def _row(pid, minutes, suspicious=False):
    return ProcessHistory.from_snapshot(
        proc(pid),
        Verdict(pid, suspicious, "R" if suspicious else ""),
        T0 + timedelta(minutes=minutes),
    )


@pytest.fixture
def rules_file(tmp_path):
    return write_rules(
        tmp_path / "rules.json",
        [{"name": "HighCPU", "cpu_threshold": 90}, {"name": "Off", "is_enabled": False}],
    )


@pytest.fixture
def repo(tmp_path, rules_file):
    return JsonRepository(
        rules_path=rules_file,
        state_path=tmp_path / "state.json",
        history_path=tmp_path / "history.jsonl",
        history_per_process=3,
    )


class TestUpsert:
    """Tests for upsert_processes"""

    def test_applies_changeset(self, repo):
        """Test added, updated and removed are applied"""
        repo.upsert_processes(Changeset(added=(proc(1), proc(2, threads=[5]))))
        newer = proc(2, cpu_usage_percent=50.0, threads=[5, 6])
        repo.upsert_processes(
            Changeset(
                updated=(ProcessUpdate(process=newer, previous=proc(2), threads=ThreadDiff()),),
                removed=(1,),
            )
        )

        assert [p.process_id for p in repo.list_processes()] == [2]
        assert repo.get_process(2).cpu_usage_percent == 50.0
        assert [t.thread_id for t in repo.get_threads(2)] == [5, 6]
        assert repo.get_process(1) is None
        assert repo.get_threads(1) == []

    def test_state_survives_restart(self, tmp_path, rules_file, repo):
        """Test the process table is reloaded from state_path"""
        repo.upsert_processes(Changeset(added=(proc(7, "svc.exe", threads=[1]),)))
        assert not (tmp_path / "state.json.tmp").exists()

        again = JsonRepository(rules_path=rules_file, state_path=tmp_path / "state.json")
        assert again.get_process(7) == repo.get_process(7)

    def test_corrupt_state_ignored(self, tmp_path, rules_file):
        """Test an unreadable state file starts from an empty table"""
        (tmp_path / "state.json").write_text("{broken", encoding="utf-8")
        repo = JsonRepository(rules_path=rules_file, state_path=tmp_path / "state.json")
        assert repo.list_processes() == []

    def test_memory_only(self, rules_file):
        """Test the repository works without any files"""
        repo = JsonRepository(rules_path=rules_file)
        repo.upsert_processes(Changeset(added=(proc(1),)))
        repo.append_history(_row(1, 0))
        assert repo.get_process(1) is not None
        assert len(repo.get_history(1)) == 1


class TestHistory:
    """Tests for history storage"""

    def test_newest_first_with_limit(self, repo):
        """Test retrieval is ordered by timestamp descending"""
        for minute in (1, 3, 2):
            repo.append_history(_row(1, minute))
        rows = repo.get_history(1, limit=2)
        assert [r.timestamp for r in rows] == [T0 + timedelta(minutes=3), T0 + timedelta(minutes=2)]

    def test_retention_per_process(self, repo):
        """Test only the newest history_per_process rows stay in memory"""
        for minute in range(5):
            repo.append_history(_row(1, minute))
        repo.append_history(_row(2, 0))
        assert len(repo.get_history(1)) == 3
        assert len(repo.get_history(2)) == 1

    def test_jsonl_append_and_reload(self, tmp_path, rules_file, repo):
        """Test rows are written as JSON lines and reloaded on start"""
        repo.append_history(_row(1, 0, suspicious=True))
        repo.append_history(_row(1, 1))
        lines = (tmp_path / "history.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["is_suspicious"] is True

        with (tmp_path / "history.jsonl").open("a", encoding="utf-8") as f:
            f.write("not json\n")
        again = JsonRepository(rules_path=rules_file, history_path=tmp_path / "history.jsonl")
        rows = again.get_history(1)
        assert [r.is_suspicious for r in rows] == [False, True]

    def test_unknown_pid(self, repo):
        """Test an unknown process has no history"""
        assert repo.get_history(404) == []


class TestRules:
    """Tests for list_rules"""

    def test_enabled_only(self, repo):
        """Test disabled rules are filtered by default"""
        assert [r.name for r in repo.list_rules()] == ["HighCPU"]
        assert [r.name for r in repo.list_rules(enabled_only=False)] == ["HighCPU", "Off"]

    def test_enabled_only_keeps_malformed_flag(self, tmp_path):
        """Test a rule with a non-boolean is_enabled is handed on so it can be reported"""
        path = write_rules(
            tmp_path / "odd.json",
            [{"name": "Odd", "is_enabled": "no"}, {"name": "Off", "is_enabled": False}],
        )
        assert [r.name for r in JsonRepository(rules_path=path).list_rules()] == ["Odd"]
