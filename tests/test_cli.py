"""
Tests for the command line interface (mock provider, temporary database)
"""

import json

import pytest

from relpulse import cli, config


@pytest.fixture
def run(tmp_path, capsys):
    """Run the CLI against a temporary database; returns (exit code, parsed stdout)."""
    db = str(tmp_path / "cli.db")

    def _run(*argv):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--db", db, "--mock", *argv])
        out = capsys.readouterr().out
        return exc_info.value.code, json.loads(out) if out.strip() else None

    return _run


def test_add_entry_creates_user_and_relationship(run):
    code, entry = run("add-entry", "e1", "We cooked dinner together", "--user", "u1",
                      "--relationship", "r1", "--type", "partner", "--mood", "happy")
    assert code == 0
    assert entry["user_id"] == "u1"
    assert entry["relationship_id"] == "r1"
    assert entry["mood"] == "happy"


def test_enqueue_and_process(run):
    run("add-entry", "e1", "We talked openly and I feel grateful", "--user", "u1", "--relationship", "r1")
    run("add-entry", "e2", "A calm walk and a good laugh", "--user", "u1", "--relationship", "r1")

    code, queued = run("enqueue", "e1", "--priority", "high")
    assert code == 0
    assert queued == {"status": "queued", "entry_id": "e1", "priority": "high"}
    run("enqueue", "e2")

    code, result = run("process", "--drain")
    assert code == 0
    assert len(result["processed"]) == 2

    code, stats = run("stats")
    assert stats["queue"]["total_queued"] == 0
    assert stats["store"]["tables"]["analyses"] == 2


def test_enqueue_unknown_entry(run):
    code, out = run("enqueue", "missing")
    assert code == 1
    assert out is None


def test_score_after_processing(run):
    run("add-entry", "e1", "We talked openly and I feel grateful", "--user", "u1", "--relationship", "r1")
    run("add-entry", "e2", "A calm walk and a good laugh", "--user", "u1", "--relationship", "r1")

    code, _ = run("score", "r1")
    assert code == 1

    run("enqueue", "e1")
    run("enqueue", "e2")
    run("process", "--drain")

    code, score = run("score", "r1", "--recalculate")
    assert code == 0
    assert 0 <= score["score"] <= 100
    assert score["is_stale"] is False


def test_score_insufficient_data(run):
    run("add-entry", "e1", "Quiet day", "--user", "u1", "--relationship", "r1")
    code, outcome = run("score", "r1", "--recalculate")
    assert code == 1
    assert outcome["success"] is False
    assert outcome["required"] == config.HEALTH_MIN_ANALYSES


def test_recompute_all_inline(run):
    run("add-entry", "e1", "Quiet day", "--user", "u1", "--relationship", "r1")
    run("add-entry", "e2", "Quiet day", "--user", "u1", "--relationship", "r2")
    code, out = run("recompute-all")
    assert code == 0
    assert out["total_relationships"] == 2
    assert all(r["success"] is False for r in out["results"])


def test_retry_failed_reports_skips(run):
    code, out = run("retry-failed", "nope")
    assert code == 0
    assert out["requeued"] == []
    assert out["skipped"] == [{"entry_id": "nope", "reason": "not found"}]


def test_purge_on_fresh_queue(run):
    run("add-entry", "e1", "Quiet day", "--user", "u1", "--relationship", "r1")
    run("enqueue", "e1")

    code, dry = run("purge", "--dry-run")
    assert code == 0
    assert dry == {"expired": [], "stuck": [], "dry_run": True}

    code, out = run("purge")
    assert code == 0
    assert out["upgraded"] == []


def test_config(run, monkeypatch):
    monkeypatch.setattr(config, "REMOTE_MOCK_MODE", True)
    code, out = run("config")
    assert code == 0
    assert out["valid"] is True
