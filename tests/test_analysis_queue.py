"""
Tests for the priority analysis queue
"""

import random
import threading

import pytest

from relpulse import config
from relpulse.analysis_queue import AnalysisQueue
from relpulse.exceptions import EntryNotFound, InvalidTransition, QueueFullError
from relpulse.models import Priority, RequestStatus


@pytest.fixture
def queue(clock):
    return AnalysisQueue(max_size=50, max_attempts=3, clock=clock)


@pytest.fixture
def durable_queue(store, clock):
    return AnalysisQueue(store=store, max_size=50, max_attempts=3, clock=clock)


def drain(queue):
    order = []
    while True:
        request = queue.dequeue()
        if request is None:
            return order
        order.append(request.entry_id)


# ============================================================================
# Ordering
# ============================================================================

def test_urgent_before_older_normal(queue, clock):
    queue.enqueue("e1", "u", priority=Priority.NORMAL)
    clock.advance(1)
    queue.enqueue("e2", "u", priority=Priority.URGENT)

    first = queue.dequeue()
    assert first.entry_id == "e2"
    assert first.status is RequestStatus.PROCESSING
    assert queue.dequeue().entry_id == "e1"


def test_strict_priority_then_fifo(queue, clock):
    plan = [
        ("n1", Priority.NORMAL), ("h1", Priority.HIGH), ("u1", Priority.URGENT),
        ("n2", Priority.NORMAL), ("h2", Priority.HIGH), ("u2", Priority.URGENT),
    ]
    for entry_id, priority in plan:
        queue.enqueue(entry_id, "u", priority=priority)
        clock.advance(1)

    assert drain(queue) == ["u1", "u2", "h1", "h2", "n1", "n2"]


def test_delayed_enqueue_waits(queue, clock):
    queue.enqueue("late", "u", priority=Priority.URGENT, delay=5)
    queue.enqueue("now", "u", priority=Priority.NORMAL)

    assert queue.dequeue().entry_id == "now"
    assert queue.dequeue() is None
    clock.advance(5)
    assert queue.dequeue().entry_id == "late"


def test_duplicate_enqueue_rejected(queue):
    queue.enqueue("e1", "u")
    with pytest.raises(InvalidTransition):
        queue.enqueue("e1", "u")


def test_queue_full(clock):
    queue = AnalysisQueue(max_size=2, clock=clock)
    queue.enqueue("a", "u")
    queue.enqueue("b", "u")
    with pytest.raises(QueueFullError):
        queue.enqueue("c", "u")

    # Processing requests do not count against capacity
    queue.dequeue()
    queue.enqueue("c", "u")
    assert len(queue) == 2


def test_concurrent_dequeue_hands_out_each_request_once(queue):
    for i in range(40):
        queue.enqueue(f"e{i}", "u")

    taken = []
    lock = threading.Lock()

    def worker():
        while True:
            request = queue.dequeue()
            if request is None:
                return
            with lock:
                taken.append(request.entry_id)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(taken) == sorted(f"e{i}" for i in range(40))


# ============================================================================
# Completion, retries and cancellation
# ============================================================================

def test_complete(queue):
    queue.enqueue("e1", "u")
    dispatched = queue.dequeue()
    assert queue.complete("e1", generation=dispatched.generation) is True
    assert queue.get("e1").status is RequestStatus.COMPLETED
    assert queue.is_pending("e1") is False


def test_requeue_increments_attempts_and_keeps_priority(queue):
    queue.enqueue("e1", "u", priority=Priority.HIGH)
    queue.dequeue()

    requeued = queue.requeue("e1", priority=Priority.NORMAL, error_message="503", error_type="service_error")
    assert requeued.attempts == 1
    assert requeued.priority is Priority.HIGH
    assert requeued.status is RequestStatus.QUEUED
    assert requeued.last_error_type == "service_error"

    queue.dequeue()
    assert queue.requeue("e1", priority=Priority.URGENT).priority is Priority.URGENT


def test_requeue_budget(queue):
    queue.enqueue("e1", "u")
    for _ in range(3):
        queue.dequeue()
        queue.requeue("e1")
    queue.dequeue()
    with pytest.raises(InvalidTransition):
        queue.requeue("e1")
    assert queue.get("e1").attempts == 3


def test_requeue_queued_or_completed_rejected(queue):
    queue.enqueue("e1", "u")
    with pytest.raises(InvalidTransition):
        queue.requeue("e1")

    queue.dequeue()
    queue.complete("e1")
    with pytest.raises(InvalidTransition):
        queue.requeue("e1")


def test_requeued_request_keeps_enqueued_at(queue, clock):
    queue.enqueue("old", "u")
    clock.advance(10)
    queue.enqueue("new", "u")
    queue.dequeue()
    queue.requeue("old")
    assert queue.dequeue().entry_id == "old"


def test_cancel_queued(queue):
    queue.enqueue("e1", "u")
    cancelled = queue.cancel("e1", "duplicate")

    assert cancelled.status is RequestStatus.FAILED
    assert cancelled.attempts == 0
    assert cancelled.is_cancelled
    assert cancelled.last_error_message == "Cancelled by user: duplicate"
    assert cancelled.last_error_type == "cancelled"
    assert queue.dequeue() is None


def test_cancel_terminal_rejected(queue):
    queue.enqueue("e1", "u")
    queue.dequeue()
    queue.complete("e1")
    with pytest.raises(InvalidTransition):
        queue.cancel("e1")
    with pytest.raises(EntryNotFound):
        queue.cancel("missing")


def test_cancel_in_flight_discards_outcome(queue):
    """A result arriving after cancellation is dropped."""
    queue.enqueue("e1", "u")
    dispatched = queue.dequeue()
    queue.cancel("e1", "changed my mind")

    assert queue.complete("e1", generation=dispatched.generation) is False
    assert queue.fail("e1", "boom", generation=dispatched.generation) is False
    assert queue.requeue("e1", generation=dispatched.generation) is None
    assert queue.get("e1").status is RequestStatus.FAILED
    assert queue.get("e1").attempts == 0


def test_cross_process_cancel_is_seen(store, clock):
    """A cancel written by another process makes this dispatch stale."""
    worker = AnalysisQueue(store=store, clock=clock)
    api = AnalysisQueue(store=store, clock=clock)

    api.enqueue("e1", "u")
    worker.restore(requeue_stuck=False)
    dispatched = worker.dequeue()

    api.restore(requeue_stuck=False)
    api.cancel("e1", "stop")

    assert worker.complete("e1", generation=dispatched.generation) is False


def test_shared_request_is_dispatched_once(store, clock):
    """Two queues on one store: only the one that wins the claim hands the request out."""
    first = AnalysisQueue(store=store, clock=clock)
    second = AnalysisQueue(store=store, clock=clock)

    first.enqueue("e1", "u")
    second.restore()

    dispatched = first.dequeue()
    assert dispatched.entry_id == "e1"
    assert second.dequeue() is None
    assert second.get("e1").status is RequestStatus.PROCESSING
    assert first.complete("e1", generation=dispatched.generation) is True


def test_concurrent_workers_never_share_a_dispatch(store, clock):
    producer = AnalysisQueue(store=store, clock=clock)
    for i in range(20):
        producer.enqueue(f"e{i}", "u")
    workers = [AnalysisQueue(store=store, clock=clock) for _ in range(3)]
    for worker in workers:
        worker.restore()

    taken = [[] for _ in workers]

    def run(worker, out):
        out.extend(drain(worker))

    threads = [threading.Thread(target=run, args=(w, out)) for w, out in zip(workers, taken)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    everything = [entry_id for out in taken for entry_id in out]
    assert sorted(everything) == sorted(f"e{i}" for i in range(20))


def test_restore_leaves_foreign_dispatch_processing(durable_queue, store, clock):
    durable_queue.enqueue("e1", "u")
    dispatched = durable_queue.dequeue()

    other = AnalysisQueue(store=store, clock=clock)
    assert other.restore() == 0
    assert other.get("e1").status is RequestStatus.PROCESSING
    assert other.dequeue() is None

    # Reloading in the owning process keeps its own dispatch too
    durable_queue.restore()
    assert durable_queue.complete("e1", generation=dispatched.generation) is True


def test_foreign_stuck_request_recovered_by_purge(durable_queue, store, clock):
    durable_queue.enqueue("e1", "u")
    dispatched = durable_queue.dequeue()
    other = AnalysisQueue(store=store, clock=clock)
    other.restore()

    clock.advance(config.PROCESSING_TIMEOUT_SECONDS + 1)
    assert other.purge_expired()["stuck"] == ["e1"]

    redispatched = other.dequeue()
    assert redispatched.entry_id == "e1"
    assert redispatched.attempts == 1
    # The original owner's late result is discarded
    assert durable_queue.complete("e1", generation=dispatched.generation) is False
    assert other.complete("e1", generation=redispatched.generation) is True


# ============================================================================
# Bulk retry
# ============================================================================

def _fail(queue, entry_id, priority=Priority.NORMAL):
    queue.enqueue(entry_id, "u", priority=priority)
    queue.dequeue()
    queue.fail(entry_id, "503", "service_error")


def test_bulk_retry_limit(queue):
    for i in range(12):
        _fail(queue, f"e{i}")

    outcome = queue.bulk_retry()
    assert len(outcome["requeued"]) == 10
    assert outcome["limit"] == 10
    assert [s["reason"] for s in outcome["skipped"]] == ["bulk retry limit reached"] * 2


def test_bulk_retry_is_idempotent(queue):
    _fail(queue, "a")
    _fail(queue, "b")

    first = queue.bulk_retry(["a", "b"])
    second = queue.bulk_retry(["a", "b", "a"])

    assert first["requeued"] == ["a", "b"]
    assert second["requeued"] == []
    assert {s["reason"] for s in second["skipped"]} == {"already queued"}
    assert len(queue) == 2


def test_bulk_retry_skips_cancelled_and_unknown(queue):
    queue.enqueue("c", "u")
    queue.cancel("c")

    outcome = queue.bulk_retry(["c", "ghost"])
    assert outcome["requeued"] == []
    assert {s["entry_id"]: s["reason"] for s in outcome["skipped"]} == {"c": "cancelled", "ghost": "not found"}

    assert queue.bulk_retry(["c"], include_cancelled=True)["requeued"] == ["c"]
    assert queue.get("c").is_cancelled is False


def test_bulk_retry_skips_exhausted(queue):
    queue.enqueue("e1", "u")
    for _ in range(3):
        queue.dequeue()
        queue.requeue("e1")
    queue.dequeue()
    queue.fail("e1", "still down")

    assert queue.get("e1").attempts == 3
    outcome = queue.bulk_retry(["e1"])
    assert outcome["skipped"] == [{"entry_id": "e1", "reason": "retry budget exhausted"}]


def test_bulk_retry_waits_out_backoff(clock):
    queue = AnalysisQueue(max_attempts=3, clock=clock, rng=random.Random(7))
    _fail(queue, "e1")

    assert queue.bulk_retry(["e1"])["requeued"] == ["e1"]
    request = queue.get("e1")
    assert request.status is RequestStatus.QUEUED
    assert clock() < request.available_at <= clock() + config.MAX_RETRY_DELAY_SECONDS
    # A second service failure escalates like an automatic retry
    assert request.priority is Priority.HIGH

    assert queue.dequeue() is None
    clock.advance(config.MAX_RETRY_DELAY_SECONDS)
    assert queue.dequeue().entry_id == "e1"


def test_bulk_retry_of_non_retryable_error_still_backs_off(clock):
    queue = AnalysisQueue(max_attempts=3, clock=clock, rng=random.Random(7))
    queue.enqueue("e1", "u")
    queue.dequeue()
    queue.fail("e1", "Validation failed", "validation")

    queue.bulk_retry(["e1"])
    assert queue.get("e1").available_at > clock()
    assert queue.get("e1").priority is Priority.NORMAL


def test_fail_spends_an_attempt(queue):
    queue.enqueue("e1", "u")
    queue.dequeue()
    queue.fail("e1", "Validation failed", "validation")
    assert queue.get("e1").attempts == 1


# ============================================================================
# Maintenance
# ============================================================================

def test_stats(queue, clock):
    queue.enqueue("u1", "u", priority=Priority.URGENT)
    queue.enqueue("n1", "u")
    clock.advance(30)
    queue.enqueue("n2", "u")

    stats = queue.stats()
    assert stats["total_queued"] == 3
    assert stats["by_priority"]["normal"]["count"] == 2
    assert stats["by_priority"]["normal"]["avg_wait_seconds"] == pytest.approx(15)
    assert stats["oldest_item_age_seconds"] == pytest.approx(30)
    assert stats["capacity_utilization"] == pytest.approx(3 / 50)
    assert stats["health"] == "healthy"


def test_purge_expired_and_stuck(queue, clock):
    queue.enqueue("old", "u")
    queue.enqueue("stuck", "u", priority=Priority.URGENT)
    dispatched = queue.dequeue()
    assert dispatched.entry_id == "stuck"

    clock.advance(120)
    dry = queue.purge_expired(max_age_seconds=60, processing_timeout_seconds=30, dry_run=True)
    assert dry == {"expired": ["old"], "stuck": ["stuck"], "dry_run": True}
    assert queue.get("old").status is RequestStatus.QUEUED

    queue.purge_expired(max_age_seconds=60, processing_timeout_seconds=30)
    assert queue.get("old").status is RequestStatus.FAILED
    assert queue.get("old").last_error_type == "expired"
    stuck = queue.get("stuck")
    assert stuck.status is RequestStatus.QUEUED
    assert stuck.attempts == 1
    # The stuck dispatch can no longer complete
    assert queue.complete("stuck", generation=dispatched.generation) is False


def test_upgrade_aging_requests(queue, clock):
    queue.enqueue("n1", "u")
    clock.advance(5)
    queue.enqueue("h1", "u", priority=Priority.HIGH)
    clock.advance(700)

    assert queue.upgrade_aging_requests(age_seconds=600) == ["n1"]
    assert queue.get("n1").priority is Priority.HIGH
    # n1 is now high and older than h1
    assert drain(queue) == ["n1", "h1"]


def test_restore_from_store(durable_queue, store, clock):
    durable_queue.enqueue("q1", "u", priority=Priority.HIGH)
    durable_queue.enqueue("p1", "u", priority=Priority.URGENT)
    durable_queue.dequeue()

    restarted = AnalysisQueue(store=store, clock=clock)
    assert restarted.restore(requeue_stuck=True) == 2
    assert drain(restarted) == ["p1", "q1"]
    # Recovering a stuck request does not spend retry budget
    assert restarted.get("p1").attempts == 0


def test_restore_keeps_retry_backoff(durable_queue, store, clock):
    durable_queue.enqueue("e1", "u")
    durable_queue.dequeue()
    durable_queue.requeue("e1", delay=30)

    other = AnalysisQueue(store=store, clock=clock)
    other.restore(requeue_stuck=False)
    assert other.dequeue() is None
    clock.advance(30)
    assert other.dequeue().entry_id == "e1"
