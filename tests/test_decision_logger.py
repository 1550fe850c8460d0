"""
Tests for routing decision logging
"""

import sqlite3

from relpulse.utils.decision_logger import DecisionLogger, Timer


def test_disabled_logger_writes_nothing(tmp_path):
    db = tmp_path / "decisions.db"
    logger = DecisionLogger(db_path=db, enabled=False)
    logger.log_decision("e1", "remote", reason="healthy", outcome="completed")

    assert not db.exists()
    assert "error" in logger.get_summary_stats()


def test_logs_and_summarizes_routes(tmp_path):
    logger = DecisionLogger(db_path=tmp_path / "decisions.db", enabled=True)
    logger.log_decision("e1", "remote", reason="healthy", breaker_state="closed", outcome="completed",
                        total_time_ms=120.0)
    logger.log_decision("e2", "remote", reason="healthy", breaker_state="closed", outcome="completed",
                        total_time_ms=80.0)
    logger.log_decision("e3", "fallback", reason="circuit_breaker_open", breaker_state="open",
                        outcome="completed")

    stats = logger.get_summary_stats(hours=1)
    assert stats["total_decisions"] == 3
    assert stats["by_route"]["remote"]["count"] == 2
    assert stats["by_route"]["remote"]["avg_time_ms"] == 100.0
    assert stats["fallback_reasons"] == {"circuit_breaker_open": 1}


def test_write_errors_are_logged_not_raised(tmp_path):
    db = tmp_path / "decisions.db"
    logger = DecisionLogger(db_path=db, enabled=True)
    with sqlite3.connect(db) as conn:
        conn.execute("DROP TABLE routing_decisions")

    logger.log_decision("e1", "remote")
    assert "error" in logger.get_summary_stats()


def test_timer_measures_elapsed():
    with Timer() as timer:
        sum(range(1000))
    assert timer.elapsed_ms >= 0.0
