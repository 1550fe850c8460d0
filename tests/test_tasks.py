"""
Tests for the Celery tasks, executed in-process with Task.apply()
"""

import random

import pytest

from relpulse.notifications import Notifier
from relpulse.pipeline import build_pipeline
from relpulse.tasks import analysis_tasks
from relpulse.tasks.celery_app import celery

from conftest import FakeRemote


class Dispatches:
    """Records apply_async calls instead of talking to the broker."""

    def __init__(self):
        self.calls = []

    def __call__(self, args=None, kwargs=None, countdown=None, **options):
        self.calls.append({"args": args, "countdown": countdown})


@pytest.fixture
def pipeline(tmp_path, clock, monkeypatch):
    pipeline = build_pipeline(
        db_path=tmp_path / "tasks.db",
        remote_client=FakeRemote(clock),
        clock=clock,
        rng=random.Random(2),
        notifier=Notifier(publish=False, clock=clock),
    )
    store = pipeline.store
    store.add_user("user-1")
    store.add_relationship("rel-1", "user-1", "Sam")
    store.add_relationship("rel-2", "user-1", "Kim", rel_type="family")
    for i in range(3):
        store.add_entry(f"e{i}", "user-1", "We talked it through", relationship_id="rel-1", created_at=clock())
    monkeypatch.setattr(analysis_tasks, "_pipeline", pipeline)
    yield pipeline
    pipeline.shutdown()


@pytest.fixture
def recalc_dispatches(monkeypatch):
    recorder = Dispatches()
    monkeypatch.setattr(analysis_tasks.recalculate_health_score, "apply_async", recorder)
    return recorder


@pytest.fixture
def drain_dispatches(monkeypatch):
    recorder = Dispatches()
    monkeypatch.setattr(analysis_tasks.process_analysis_queue, "apply_async", recorder)
    return recorder


def test_beat_schedule_registered():
    schedule = celery.conf.beat_schedule
    assert set(schedule) == {
        "process-analysis-queue",
        "failure-sweep",
        "upgrade-fallback-results",
        "purge-expired-requests",
    }
    assert "relpulse.tasks.analysis_tasks.process_analysis_queue" in celery.tasks


def test_process_analysis_queue(pipeline):
    for i in range(3):
        pipeline.scheduler.enqueue(f"e{i}")

    result = analysis_tasks.process_analysis_queue.apply(kwargs={"max_items": 2}).get()
    assert result["status"] == "success"
    assert result["processed"] == 2
    assert len(pipeline.queue) == 1


def test_worker_picks_up_requests_from_other_processes(pipeline, tmp_path, clock):
    """A request written by the API process is processed after sync()."""
    api_side = build_pipeline(db_path=pipeline.store.db_path, remote_client=FakeRemote(clock),
                              clock=clock, notifier=Notifier(publish=False), restore=False)
    api_side.scheduler.enqueue("e0")
    api_side.shutdown()

    result = analysis_tasks.process_analysis_queue.apply().get()
    assert result["processed"] == 1
    assert pipeline.store.get_analysis("e0") is not None


def test_recalculate_health_score(pipeline):
    result = analysis_tasks.recalculate_health_score.apply(args=["rel-1"]).get()
    assert result["status"] == "skipped"
    assert result["success"] is False


def test_bulk_recalculate_fans_out(pipeline, recalc_dispatches):
    result = analysis_tasks.bulk_recalculate_health_scores.apply(kwargs={"delay_seconds": 2}).get()
    assert result["total_relationships"] == 2
    countdowns = [c["countdown"] for c in recalc_dispatches.calls]
    assert [c["args"] for c in recalc_dispatches.calls] == [["rel-1"], ["rel-2"]]
    assert countdowns[1] >= 2


def test_force_recalculate_user(pipeline, recalc_dispatches):
    result = analysis_tasks.force_recalculate_user.apply(args=["user-1", "rel-2"]).get()
    assert result == {"status": "success", "scheduled": 1}
    assert recalc_dispatches.calls == [{"args": ["rel-2"], "countdown": 0.0}]


def test_retry_failed_triggers_drain(pipeline, drain_dispatches):
    pipeline.scheduler.enqueue("e0")
    pipeline.scheduler.cancel("e0")
    pipeline.scheduler.enqueue("e1")
    request = pipeline.queue.dequeue()
    pipeline.queue.fail(request.entry_id, "boom", "service_error", generation=request.generation)

    result = analysis_tasks.retry_failed_analyses.apply().get()
    assert result["requeued"] == ["e1"]
    assert drain_dispatches.calls[0]["countdown"] == 1.0


def test_failure_sweep_and_purge(pipeline):
    sweep = analysis_tasks.run_failure_sweep.apply().get()
    assert sweep["status"] == "success"
    assert sweep["patterns"] == []

    purge = analysis_tasks.purge_expired_requests.apply().get()
    assert purge == {"status": "success", "expired": 0, "stuck": 0, "aged_upgrades": 0}


def test_upgrade_fallback_results_task(pipeline, drain_dispatches):
    result = analysis_tasks.upgrade_fallback_results.apply().get()
    assert result["upgraded"] == []
    assert drain_dispatches.calls == []
