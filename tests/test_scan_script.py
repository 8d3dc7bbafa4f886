"""Tests for the scheduler entry point scripts/run_escalation_scan.py."""

import importlib.util
import json
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "run_escalation_scan.py"


@pytest.fixture
def scan_script(r, monkeypatch):
    spec = importlib.util.spec_from_file_location("run_escalation_scan", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    monkeypatch.setattr(module.redis.Redis, "from_url", lambda *a, **kw: r)
    return module


@pytest.fixture
def at_risk(seed_member, hours_ago):
    seed_member("red-1", last_report_at=hours_ago(90))
    seed_member("orange-1", last_report_at=hours_ago(50))
    seed_member("yellow-1", last_report_at=hours_ago(30))


class TestRunEscalationScan:
    def test_dry_run_sends_nothing(self, r, scan_script, at_risk, capsys):
        code = scan_script.main(["--dry-run", "--json", "--now", "2026-02-15T12:00:00Z"])

        assert code == 0
        out = capsys.readouterr().out
        assert out.startswith("Dry run: 3 member(s) at risk")
        payload = json.loads(out.split("\n", 1)[1])
        assert payload["counts"] == {"yellow": 1, "orange": 1, "red": 1}
        assert r.keys("escalation:*") == []

    def test_log_only_run_marks_the_log(self, r, scan_script, at_risk, capsys):
        code = scan_script.main(["--log-only", "--now", "2026-02-15T12:00:00Z"])

        assert code == 0
        out = capsys.readouterr().out
        assert "red alerts sent: 1" in out
        assert "summary: sent" in out
        assert r.hget("escalation:notified:red-1", "tier") == "red"

    def test_policy_choice_is_validated(self, scan_script):
        with pytest.raises(SystemExit):
            scan_script.parse_args(["--policy", "hourly"])
