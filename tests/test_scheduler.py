"""
Tests for the analysis scheduler: routing, retries, fallback and recalculation triggers
"""

import random

import pytest

from relpulse import config
from relpulse.exceptions import EntryNotFound, ProviderAuthError, ProviderValidationError, RateLimited
from relpulse.models import (
    BreakerState,
    FallbackMetadata,
    FallbackResult,
    FallbackTrigger,
    Priority,
    RemoteResult,
    RequestStatus,
)
from relpulse.notifications import Notifier
from relpulse.pipeline import build_pipeline

from conftest import FakeRemote

ENTRY_TEXT = "We talked openly about our plans and I felt really happy and grateful"


@pytest.fixture
def remote(clock):
    return FakeRemote(clock)


@pytest.fixture
def pipeline(tmp_path, clock, remote):
    pipeline = build_pipeline(
        db_path=tmp_path / "scheduler.db",
        remote_client=remote,
        clock=clock,
        rng=random.Random(3),
        notifier=Notifier(publish=False, clock=clock),
        max_workers=4,
    )
    store = pipeline.store
    store.add_user("user-1")
    store.add_relationship("rel-1", "user-1", "Sam", rel_type="friend")
    for i in range(8):
        store.add_entry(f"e{i}", "user-1", ENTRY_TEXT, relationship_id="rel-1", created_at=clock() - 60)
    yield pipeline
    pipeline.shutdown()


@pytest.fixture
def scheduler(pipeline):
    return pipeline.scheduler


# ============================================================================
# Submission
# ============================================================================

def test_enqueue_returns_queued(scheduler):
    result = scheduler.enqueue("e0")
    assert result.status == "queued"
    assert result.request.priority is Priority.NORMAL
    assert result.to_dict() == {"status": "queued", "entry_id": "e0", "priority": "normal"}


def test_premium_users_default_to_high(scheduler, pipeline):
    pipeline.store.add_user("user-1", tier="premium")
    assert scheduler.enqueue("e0").request.priority is Priority.HIGH
    assert scheduler.enqueue("e1", priority=Priority.URGENT).request.priority is Priority.URGENT


def test_enqueue_skip_reasons(scheduler, pipeline, clock):
    store = pipeline.store
    store.add_user("private-user", analysis_enabled=False)
    store.add_entry("p1", "private-user", "text", created_at=clock())
    store.add_entry("p2", "user-1", "secret", allow_ai_analysis=False, created_at=clock())

    assert scheduler.enqueue("p1").reason == "analysis disabled by user"
    assert scheduler.enqueue("p2").reason == "entry marked private"

    scheduler.enqueue("e0")
    assert scheduler.enqueue("e0").to_dict() == {"status": "skipped", "reason": "already queued"}

    scheduler.process_next()
    assert scheduler.enqueue("e0").reason == "already analyzed"
    assert scheduler.enqueue("e0", force=True).status == "queued"


def test_enqueue_missing_entry(scheduler):
    with pytest.raises(EntryNotFound):
        scheduler.enqueue("nope")


def test_enqueue_rejected_when_full(scheduler, pipeline):
    pipeline.queue.max_size = 1
    scheduler.enqueue("e0")
    result = scheduler.enqueue("e1")
    assert result.status == "rejected"
    assert result.reason == "queue full"


# ============================================================================
# Processing
# ============================================================================

def test_remote_success(scheduler, pipeline, remote):
    scheduler.enqueue("e0")
    outcome = scheduler.process_next()

    assert outcome == {"entry_id": "e0", "status": "completed", "source": "remote"}
    assert isinstance(pipeline.store.get_analysis("e0"), RemoteResult)
    assert pipeline.queue.get("e0").status is RequestStatus.COMPLETED
    assert remote.calls == ["e0"]
    assert scheduler.process_next() is None


def test_process_batch_isolates_failures(scheduler, pipeline, remote):
    remote.failures = 1
    for i in range(3):
        scheduler.enqueue(f"e{i}")

    outcomes = scheduler.process_batch()
    statuses = sorted(o["status"] for o in outcomes)
    assert statuses == ["completed", "completed", "requeued"]


def test_breaker_opens_and_later_requests_fall_back(scheduler, pipeline, remote):
    """After five provider failures new work is analyzed locally without calling the provider."""
    remote.failures = 100
    for i in range(5):
        scheduler.enqueue(f"e{i}")
    for _ in range(5):
        assert scheduler.process_next()["status"] == "requeued"

    assert pipeline.breaker.state is BreakerState.OPEN
    assert len(pipeline.notifier.recent("breaker_opened")) == 1

    scheduler.enqueue("e5")
    outcome = scheduler.process_next()
    assert outcome["source"] == "fallback"
    assert outcome["trigger"] == "circuit_breaker_open"
    assert len(remote.calls) == 5

    stored = pipeline.store.get_analysis("e5")
    assert isinstance(stored, FallbackResult)
    assert stored.fallback_metadata.trigger is FallbackTrigger.CIRCUIT_BREAKER_OPEN


def test_guardrail_forces_fallback(scheduler, pipeline, remote):
    for _ in range(10):
        pipeline.guardrail.record(False, 100)

    scheduler.enqueue("e0")
    outcome = scheduler.process_next()
    assert outcome["trigger"] == "guardrail_tripped"
    assert remote.calls == []
    assert pipeline.breaker.state is BreakerState.CLOSED


def test_fallback_carries_trend_context(scheduler, pipeline, clock):
    """Earlier entries of the relationship give the fallback result a trend."""
    pipeline.store.add_entry("late", "user-1", "We fought again about the same problem",
                             relationship_id="rel-1", created_at=clock())
    for _ in range(10):
        pipeline.guardrail.record(False, 100)

    scheduler.enqueue("late")
    assert scheduler.process_next()["source"] == "fallback"

    meta = pipeline.store.get_analysis("late").fallback_metadata
    assert "conflict" in meta.trend_analysis["declining"]
    assert "Analysis based on 6 recent entries - high confidence in patterns" in meta.contextual_insights
    assert "conflict resolution" in meta.recommendations["focus_areas"]


def test_retry_exhaustion_stores_fallback(scheduler, pipeline, remote, clock):
    remote.failures = 100
    scheduler.enqueue("e0")

    outcomes = []
    for _ in range(4):
        outcomes.append(scheduler.process_next())
        clock.advance(400)

    assert [o["status"] for o in outcomes] == ["requeued", "requeued", "requeued", "failed"]
    assert outcomes[-1]["fallback_stored"] is True
    assert outcomes[-1]["trigger"] == "retry_exhausted"
    assert len(remote.calls) == 4

    request = pipeline.queue.get("e0")
    assert request.status is RequestStatus.FAILED
    assert request.attempts == 3
    # Repeated failures escalate priority
    assert request.priority is Priority.URGENT
    assert isinstance(pipeline.store.get_analysis("e0"), FallbackResult)


def test_rate_limit_exhaustion_tags_trigger(scheduler, pipeline, remote, clock):
    remote.failures = 100
    remote.error = RateLimited("Rate limited", retry_after=5)
    scheduler.enqueue("e0")

    outcome = None
    for _ in range(4):
        outcome = scheduler.process_next()
        clock.advance(400)
    assert outcome["trigger"] == "rate_limited"


def test_validation_failure_is_terminal(scheduler, pipeline, remote):
    remote.failures = 1
    remote.error = ProviderValidationError("Content blocked by provider: SAFETY")
    scheduler.enqueue("e0")

    outcome = scheduler.process_next()
    assert outcome == {"entry_id": "e0", "status": "failed", "error_type": "validation"}
    assert pipeline.store.get_analysis("e0") is None
    assert pipeline.breaker.snapshot().consecutive_failures == 0
    assert pipeline.queue.get("e0").attempts == 1


def test_auth_failure_falls_back(scheduler, pipeline, remote):
    remote.failures = 1
    remote.error = ProviderAuthError("Authentication failed: 401")
    scheduler.enqueue("e0")

    outcome = scheduler.process_next()
    assert outcome["trigger"] == "api_unavailable"
    assert isinstance(pipeline.store.get_analysis("e0"), FallbackResult)


def test_cancel_during_remote_call_discards_result(scheduler, pipeline, clock):
    """The remote call is not interrupted, but its result is thrown away."""
    inner = FakeRemote(clock)

    class CancellingRemote:
        mock_mode = True

        def analyze(self, text, context=None):
            scheduler.cancel(context["entry_id"], "changed my mind")
            return inner.analyze(text, context)

    scheduler.remote_client = CancellingRemote()
    scheduler.enqueue("e0")

    assert scheduler.process_next() == {"entry_id": "e0", "status": "discarded"}
    assert pipeline.store.get_analysis("e0") is None
    request = pipeline.queue.get("e0")
    assert request.status is RequestStatus.FAILED
    assert request.last_error_message == "Cancelled by user: changed my mind"


def test_retry_failed(scheduler, pipeline, remote, clock):
    remote.failures = 1
    remote.error = ProviderValidationError("blocked")
    scheduler.enqueue("e0")
    scheduler.process_next()

    assert scheduler.retry_failed()["requeued"] == ["e0"]
    # The manual retry waits out a backoff first
    assert scheduler.process_next() is None
    clock.advance(config.MAX_RETRY_DELAY_SECONDS)
    assert scheduler.process_next()["status"] == "completed"


# ============================================================================
# Processes sharing one database
# ============================================================================

def _second_pipeline(tmp_path, clock, remote):
    return build_pipeline(
        db_path=tmp_path / "scheduler.db",
        remote_client=remote,
        clock=clock,
        rng=random.Random(4),
        notifier=Notifier(publish=False, clock=clock),
    )


def test_two_pipelines_process_a_request_once(scheduler, pipeline, remote, clock, tmp_path):
    scheduler.enqueue("e0")
    other = _second_pipeline(tmp_path, clock, remote)
    try:
        assert scheduler.process_next()["status"] == "completed"
        assert other.scheduler.process_next() is None
        assert remote.calls == ["e0"]
        assert other.queue.get("e0").status is RequestStatus.COMPLETED
    finally:
        other.shutdown()


def test_starting_a_pipeline_keeps_in_flight_work(scheduler, pipeline, remote, clock, tmp_path):
    scheduler.enqueue("e0")
    dispatched = pipeline.queue.dequeue()

    other = _second_pipeline(tmp_path, clock, remote)
    try:
        assert other.queue.get("e0").status is RequestStatus.PROCESSING
        assert other.scheduler.process_next() is None
        assert pipeline.queue.complete("e0", generation=dispatched.generation) is True
    finally:
        other.shutdown()


# ============================================================================
# Health score triggers
# ============================================================================

def test_recalculation_triggers_coalesce(scheduler, clock):
    assert scheduler.schedule_recalculation("rel-1") is True
    assert scheduler.schedule_recalculation("rel-1") is False
    assert scheduler.schedule_recalculation(None) is False
    assert len(scheduler.delay_queue) == 1

    assert scheduler.run_due_recalculations() == []
    clock.advance(2)
    outcomes = scheduler.run_due_recalculations()
    assert len(outcomes) == 1
    assert outcomes[0]["success"] is False  # no analyses yet


def test_tick_recalculates_after_analyses(scheduler, clock):
    scheduler.enqueue("e0")
    scheduler.enqueue("e1")
    first = scheduler.tick()
    assert len(first["processed"]) == 2
    assert first["recalculated"] == []

    clock.advance(2)
    second = scheduler.tick()
    assert second["processed"] == []
    assert second["recalculated"][0]["success"] is True
    assert 0 <= second["recalculated"][0]["score"] <= 100


def test_force_recalculate_schedules_all(scheduler, pipeline):
    pipeline.store.add_relationship("rel-2", "user-1", "Kim")
    outcome = scheduler.force_recalculate("user-1")
    assert outcome["scheduled"] == 2
    assert set(outcome["relationships"]) == {"rel-1", "rel-2"}
    assert len(scheduler.delay_queue) == 2


def test_schedule_bulk_recalculation(scheduler, pipeline):
    pipeline.store.add_relationship("rel-2", "user-1", "Kim")
    plan = scheduler.schedule_bulk_recalculation(batch_size=1, delay_seconds=10)
    assert plan["batches_scheduled"] == 2
    assert len(scheduler.delay_queue) == 2


# ============================================================================
# Fallback upgrades
# ============================================================================

def test_upgrade_fallback_results(scheduler, pipeline, clock):
    pipeline.store.save_analysis(FallbackResult(
        entry_id="e0", user_id="user-1", relationship_id="rel-1", sentiment_score=0.0,
        confidence_level=0.2, reasoning="weak", status="failed", created_at=clock(),
        fallback_metadata=FallbackMetadata(is_valid=False, quality_score=0.1),
    ))

    outcome = scheduler.upgrade_fallback_results()
    assert outcome == {"upgraded": ["e0"], "skipped_reason": None}
    assert pipeline.queue.get("e0").priority is Priority.HIGH

    scheduler.process_next()
    assert isinstance(pipeline.store.get_analysis("e0"), RemoteResult)


def test_no_upgrades_while_breaker_open(scheduler, pipeline):
    for _ in range(5):
        pipeline.breaker.record_failure()
    assert scheduler.upgrade_fallback_results()["skipped_reason"] == "circuit breaker open"


def test_stats(scheduler):
    scheduler.enqueue("e0")
    stats = scheduler.stats()
    assert stats["queue"]["total_queued"] == 1
    assert stats["circuit_breaker"]["state"] == "closed"
    assert stats["guardrail"]["tripped"] is False
    assert stats["pending_recalculations"] == 0
