"""
Priority queue of analysis requests.

Ordering is strict: every urgent request is dequeued before any high request,
every high before any normal, FIFO by enqueued_at within a class. A steady
stream of urgent work can starve normal requests indefinitely; that is
accepted. upgrade_aging_requests() exists for operators who need to drain
old normal work.

Requests waiting out a retry backoff sit in a DelayQueue and join the
priority heap when they become due.

State machine: queued -> processing -> completed | failed, and
failed/processing -> queued again via requeue() while attempts < max_attempts.

Several processes may share one store (API and Celery workers). The store is
the arbiter: a dispatch only happens after a conditional write wins the claim
on the stored row.
"""

import heapq
import itertools
import logging
import random
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from . import config
from .delay_queue import DelayQueue
from .exceptions import EntryNotFound, InvalidTransition, QueueFullError
from .models import AnalysisRequest, Priority, RequestStatus
from .retry_strategy import calculate_backoff, calculate_retry_strategy

logger = logging.getLogger(__name__)

CANCELLED_ERROR_TYPE = "cancelled"


class AnalysisQueue:
    """Thread-safe, optionally sqlite-backed priority queue of AnalysisRequest."""

    def __init__(
        self,
        store=None,
        max_size: int = None,
        max_attempts: int = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            store: AnalysisStore used to persist every state change (optional)
            max_size: Maximum number of queued (not yet processing) requests
            max_attempts: Retry budget per request
            clock: Time source in epoch seconds
            rng: Randomness source for bulk retry jitter
        """
        self.store = store
        self.max_size = max_size or config.MAX_QUEUE_SIZE
        self.max_attempts = max_attempts if max_attempts is not None else config.MAX_RETRY_ATTEMPTS
        self.clock = clock or time.time
        self.rng = rng or random.Random()

        self._lock = threading.RLock()
        self._heap: List[Tuple[int, float, int, str]] = []
        self._heap_seq: Dict[str, int] = {}  # entry_id -> seq of its live heap entry
        self._seq = itertools.count()
        self._requests: Dict[str, AnalysisRequest] = {}
        self._in_flight: Set[str] = set()  # dispatched by this process, not yet settled
        self._delayed = DelayQueue(clock=self.clock)

    # ========================================================================
    # Internal helpers (caller holds the lock)
    # ========================================================================

    def _push(self, request: AnalysisRequest):
        seq = next(self._seq)
        self._heap_seq[request.entry_id] = seq
        heapq.heappush(self._heap, (request.priority.rank, request.enqueued_at, seq, request.entry_id))

    def _unlink(self, entry_id: str):
        self._heap_seq.pop(entry_id, None)
        self._delayed.cancel(entry_id)

    def _persist(self, request: AnalysisRequest):
        if self.store is not None:
            self.store.save_request(request, updated_at=self.clock())

    def _promote_due(self):
        for entry_id, _ in self._delayed.pop_due():
            request = self._requests.get(entry_id)
            if request is not None and request.status is RequestStatus.QUEUED:
                request.available_at = None
                self._push(request)

    def _adopt(self, request: AnalysisRequest, now: float) -> bool:
        """Replace local state with a stored request. True when it is waiting to be dispatched."""
        self._unlink(request.entry_id)
        self._requests[request.entry_id] = request
        if request.status is not RequestStatus.QUEUED:
            return False
        # Still waiting out a retry backoff
        if request.available_at is not None and request.available_at > now:
            self._delayed.schedule(request.entry_id, None, request.available_at - now, replace=True)
        else:
            request.available_at = None
            self._push(request)
        return True

    def _claim(self, claimed: AnalysisRequest, expected_generation: int) -> bool:
        if self.store is None:
            return True
        return self.store.claim_request(claimed, expected_generation, updated_at=self.clock())

    def _queued_count(self) -> int:
        return sum(1 for r in self._requests.values() if r.status is RequestStatus.QUEUED)

    def _require(self, entry_id: str) -> AnalysisRequest:
        request = self._requests.get(entry_id)
        if request is None:
            raise EntryNotFound(f"No analysis request for entry {entry_id}")
        return request

    def _is_stale(self, request: AnalysisRequest, generation: int) -> bool:
        if request.generation != generation:
            return True
        # Another process may have cancelled or re-dispatched this request
        if self.store is not None:
            stored = self.store.get_request(request.entry_id)
            return stored is not None and stored.generation != generation
        return False

    # ========================================================================
    # Core operations
    # ========================================================================

    def enqueue(
        self,
        entry_id: str,
        user_id: str,
        relationship_id: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        delay: float = 0.0,
    ) -> AnalysisRequest:
        """
        Add a new request.

        Raises:
            QueueFullError: max_size queued requests already waiting
            InvalidTransition: entry already has a queued or processing request
        """
        with self._lock:
            existing = self._requests.get(entry_id)
            if existing is not None and not existing.status.is_terminal:
                raise InvalidTransition(f"Entry {entry_id} is already {existing.status.value}")
            if self._queued_count() >= self.max_size:
                logger.warning(f"Analysis queue full ({self.max_size}), rejecting entry {entry_id}")
                raise QueueFullError(f"Queue is full ({self.max_size} requests)")

            now = self.clock()
            request = AnalysisRequest(
                entry_id=entry_id,
                user_id=user_id,
                relationship_id=relationship_id,
                priority=priority,
                enqueued_at=now,
                generation=existing.generation if existing else 0,
            )
            self._requests[entry_id] = request
            if delay > 0:
                request.available_at = now + delay
                self._delayed.schedule(entry_id, None, delay, replace=True)
            else:
                self._push(request)
            self._persist(request)

        logger.debug(f"Enqueued entry {entry_id} at {priority.value} priority")
        return replace(request)

    def dequeue(self) -> Optional[AnalysisRequest]:
        """
        Take the highest-priority, oldest queued request and mark it processing.

        Returns a snapshot; its generation identifies this dispatch for
        complete()/fail()/requeue(). With a store, the dispatch is claimed
        there first, so processes sharing the store never both dispatch
        the same request; a lost claim adopts the stored state instead.
        """
        with self._lock:
            self._promote_due()
            while self._heap:
                _, _, seq, entry_id = heapq.heappop(self._heap)
                if self._heap_seq.get(entry_id) != seq:
                    continue
                del self._heap_seq[entry_id]
                request = self._requests.get(entry_id)
                if request is None or request.status is not RequestStatus.QUEUED:
                    continue

                now = self.clock()
                claimed = replace(
                    request,
                    status=RequestStatus.PROCESSING,
                    processing_started_at=now,
                    generation=request.generation + 1,
                )
                if not self._claim(claimed, request.generation):
                    logger.info(f"Entry {entry_id} was claimed by another process, skipping")
                    stored = self.store.get_request(entry_id)
                    if stored is None:
                        del self._requests[entry_id]
                    else:
                        self._adopt(stored, now)
                    continue

                self._requests[entry_id] = claimed
                self._in_flight.add(entry_id)
                return replace(claimed)
        return None

    def _check_dispatch(self, entry_id: str, generation: Optional[int]) -> Optional[AnalysisRequest]:
        request = self._require(entry_id)
        if generation is not None and self._is_stale(request, generation):
            logger.info(f"Discarding stale outcome for entry {entry_id} (cancelled or superseded)")
            self._in_flight.discard(entry_id)
            return None
        if request.status is not RequestStatus.PROCESSING:
            logger.info(f"Discarding outcome for entry {entry_id}: request is {request.status.value}")
            return None
        return request

    def complete(self, entry_id: str, generation: Optional[int] = None) -> bool:
        """Mark a processing request completed. False when the dispatch is stale."""
        with self._lock:
            request = self._check_dispatch(entry_id, generation)
            if request is None:
                return False
            request.status = RequestStatus.COMPLETED
            request.completed_at = self.clock()
            self._persist(request)
            self._in_flight.discard(entry_id)
            return True

    def fail(self, entry_id: str, error_message: str, error_type: Optional[str] = None,
             generation: Optional[int] = None) -> bool:
        """Mark a processing request terminally failed. False when the dispatch is stale."""
        with self._lock:
            request = self._check_dispatch(entry_id, generation)
            if request is None:
                return False
            request.status = RequestStatus.FAILED
            # The failed dispatch spends budget; capped so a spent request stays exhausted
            request.attempts = min(request.attempts + 1, self.max_attempts)
            request.last_error_message = error_message
            request.last_error_type = error_type
            request.completed_at = self.clock()
            self._persist(request)
            self._in_flight.discard(entry_id)
        logger.info(f"Analysis for entry {entry_id} failed: {error_message}")
        return True

    def requeue(
        self,
        entry_id: str,
        priority: Optional[Priority] = None,
        delay: float = 0.0,
        error_message: Optional[str] = None,
        error_type: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> Optional[AnalysisRequest]:
        """
        Put a failed (or failing, still processing) request back in the queue.

        attempts is incremented and priority can only go up. Returns None when
        generation is given and the dispatch is stale.

        Raises:
            InvalidTransition: request is queued/completed or its retry budget is spent
        """
        with self._lock:
            request = self._require(entry_id)
            if generation is not None and self._is_stale(request, generation):
                logger.info(f"Not requeueing entry {entry_id}: dispatch is stale")
                self._in_flight.discard(entry_id)
                return None
            if request.status in (RequestStatus.QUEUED, RequestStatus.COMPLETED):
                raise InvalidTransition(f"Cannot requeue entry {entry_id} while {request.status.value}")
            if request.attempts >= self.max_attempts:
                raise InvalidTransition(
                    f"Entry {entry_id} has used its retry budget ({request.attempts}/{self.max_attempts})"
                )

            request.attempts += 1
            if priority is not None:
                request.priority = Priority.highest(request.priority, priority)
            request.status = RequestStatus.QUEUED
            request.cancel_reason = None
            request.processing_started_at = None
            request.completed_at = None
            if error_message is not None:
                request.last_error_message = error_message
                request.last_error_type = error_type

            if delay > 0:
                request.available_at = self.clock() + delay
                self._delayed.schedule(entry_id, None, delay, replace=True)
            else:
                request.available_at = None
                self._push(request)
            self._persist(request)
            self._in_flight.discard(entry_id)

        logger.info(
            f"Requeued entry {entry_id} (attempt {request.attempts}/{self.max_attempts}, "
            f"priority {request.priority.value}, delay {delay:.1f}s)"
        )
        return replace(request)

    def cancel(self, entry_id: str, reason: str = "cancelled") -> AnalysisRequest:
        """
        Cancel a queued or processing request.

        The request becomes failed without touching attempts. A remote call
        already in flight is not interrupted; its outcome is discarded.
        """
        with self._lock:
            request = self._require(entry_id)
            if request.status.is_terminal:
                raise InvalidTransition(f"Cannot cancel entry {entry_id}: already {request.status.value}")
            self._unlink(entry_id)
            request.status = RequestStatus.FAILED
            request.cancel_reason = reason
            request.last_error_message = f"Cancelled by user: {reason}"
            request.last_error_type = CANCELLED_ERROR_TYPE
            request.completed_at = self.clock()
            request.generation += 1
            self._persist(request)
            self._in_flight.discard(entry_id)
        logger.info(f"Cancelled analysis for entry {entry_id}: {reason}")
        return replace(request)

    def bulk_retry(
        self,
        entry_ids: Optional[Iterable[str]] = None,
        limit: int = None,
        include_cancelled: bool = False,
    ) -> Dict[str, Any]:
        """
        Requeue failed requests that still have retry budget.

        At most `limit` requests are requeued per call. Requests that are
        already queued or processing are skipped, so running this twice over
        an overlapping set schedules nothing twice. Each request waits out a
        jittered backoff for its last error type and may be escalated in
        priority, the same way an automatic retry is.
        """
        limit = limit or config.BULK_RETRY_LIMIT
        requeued: List[str] = []
        skipped: List[Dict[str, str]] = []

        with self._lock:
            if entry_ids is None:
                candidates = sorted(
                    (r for r in self._requests.values() if r.status is RequestStatus.FAILED),
                    key=lambda r: (r.priority.rank, r.enqueued_at),
                )
                entry_ids = [r.entry_id for r in candidates]
            else:
                entry_ids = list(dict.fromkeys(entry_ids))

            for entry_id in entry_ids:
                request = self._requests.get(entry_id)
                if request is None:
                    skipped.append({"entry_id": entry_id, "reason": "not found"})
                elif request.status is not RequestStatus.FAILED:
                    skipped.append({"entry_id": entry_id, "reason": f"already {request.status.value}"})
                elif request.attempts >= self.max_attempts:
                    skipped.append({"entry_id": entry_id, "reason": "retry budget exhausted"})
                elif request.is_cancelled and not include_cancelled:
                    skipped.append({"entry_id": entry_id, "reason": "cancelled"})
                elif len(requeued) >= limit:
                    skipped.append({"entry_id": entry_id, "reason": "bulk retry limit reached"})
                else:
                    decision = calculate_retry_strategy(request.last_error_type or "unknown", request.attempts,
                                                        request.priority, rng=self.rng)
                    # A manual retry goes ahead even when the error type would not retry on its own
                    delay = (decision.backoff_seconds if decision.should_retry
                             else calculate_backoff(request.attempts, decision.error_type, request.priority, self.rng))
                    self.requeue(entry_id, priority=decision.new_priority, delay=delay)
                    requeued.append(entry_id)

        logger.info(f"Bulk retry: {len(requeued)} requeued, {len(skipped)} skipped")
        return {"requeued": requeued, "skipped": skipped, "limit": limit}

    # ========================================================================
    # Inspection and maintenance
    # ========================================================================

    def get(self, entry_id: str) -> Optional[AnalysisRequest]:
        with self._lock:
            request = self._requests.get(entry_id)
            return replace(request) if request else None

    def is_pending(self, entry_id: str) -> bool:
        with self._lock:
            request = self._requests.get(entry_id)
            return request is not None and not request.status.is_terminal

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[AnalysisRequest]:
        with self._lock:
            return [replace(r) for r in self._requests.values() if status is None or r.status is status]

    def __len__(self) -> int:
        with self._lock:
            return self._queued_count()

    def stats(self) -> Dict[str, Any]:
        """Per-priority counts, wait times, capacity and a coarse health level."""
        with self._lock:
            now = self.clock()
            queued = [r for r in self._requests.values() if r.status is RequestStatus.QUEUED]
            by_status = {s.value: 0 for s in RequestStatus}
            for r in self._requests.values():
                by_status[r.status.value] += 1

        by_priority: Dict[str, Dict[str, Any]] = {}
        for p in Priority:
            waits = [now - r.enqueued_at for r in queued if r.priority is p]
            by_priority[p.value] = {
                "count": len(waits),
                "avg_wait_seconds": round(sum(waits) / len(waits), 3) if waits else 0.0,
                "max_wait_seconds": round(max(waits), 3) if waits else 0.0,
            }

        waits = [now - r.enqueued_at for r in queued]
        utilization = len(queued) / self.max_size if self.max_size else 0.0
        oldest = max(waits) if waits else 0.0

        if utilization >= 0.95 or oldest > 3600:
            health = "critical"
        elif utilization >= config.QUEUE_NEAR_CAPACITY_RATIO or oldest > 600:
            health = "warning"
        else:
            health = "healthy"

        return {
            "total_queued": len(queued),
            "by_priority": by_priority,
            "avg_wait_seconds": round(sum(waits) / len(waits), 3) if waits else 0.0,
            "max_wait_seconds": round(oldest, 3),
            "oldest_item_age_seconds": round(oldest, 3),
            "delayed": len(self._delayed),
            "capacity_utilization": round(utilization, 4),
            "is_near_capacity": utilization >= config.QUEUE_NEAR_CAPACITY_RATIO,
            "health": health,
            "by_status": by_status,
        }

    def purge_expired(
        self,
        max_age_seconds: Optional[float] = None,
        processing_timeout_seconds: Optional[float] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Fail queued requests older than max_age and requeue stuck processing ones.

        A stuck request that has no retry budget left is failed instead.
        """
        max_age = max_age_seconds if max_age_seconds is not None else config.MAX_ITEM_AGE_HOURS * 3600
        timeout = (processing_timeout_seconds if processing_timeout_seconds is not None
                   else config.PROCESSING_TIMEOUT_SECONDS)
        expired: List[str] = []
        stuck: List[str] = []

        with self._lock:
            now = self.clock()
            for request in list(self._requests.values()):
                if request.status is RequestStatus.QUEUED and now - request.enqueued_at > max_age:
                    expired.append(request.entry_id)
                    if not dry_run:
                        self._unlink(request.entry_id)
                        request.status = RequestStatus.FAILED
                        request.last_error_message = "Expired: waited too long in queue"
                        request.last_error_type = "expired"
                        request.completed_at = now
                        self._persist(request)
                elif (request.status is RequestStatus.PROCESSING
                      and now - (request.processing_started_at or now) > timeout):
                    stuck.append(request.entry_id)
                    if dry_run:
                        continue
                    request.generation += 1  # late results from the stuck dispatch are discarded
                    self._in_flight.discard(request.entry_id)
                    if request.attempts < self.max_attempts:
                        self.requeue(request.entry_id, error_message="Processing timed out", error_type="timeout")
                    else:
                        request.status = RequestStatus.FAILED
                        request.last_error_message = "Processing timed out"
                        request.last_error_type = "timeout"
                        request.completed_at = now
                        self._persist(request)

        if expired or stuck:
            logger.info(f"Queue purge{' (dry run)' if dry_run else ''}: {len(expired)} expired, {len(stuck)} stuck")
        return {"expired": expired, "stuck": stuck, "dry_run": dry_run}

    def upgrade_aging_requests(self, age_seconds: Optional[float] = None) -> List[str]:
        """Bump normal requests that have waited longer than age_seconds to high."""
        age = age_seconds if age_seconds is not None else config.AGING_UPGRADE_SECONDS
        upgraded = []
        with self._lock:
            now = self.clock()
            for request in self._requests.values():
                if (request.status is RequestStatus.QUEUED and request.priority is Priority.NORMAL
                        and now - request.enqueued_at > age):
                    request.priority = Priority.HIGH
                    if request.entry_id in self._heap_seq:
                        self._push(request)  # old heap entry is now stale
                    self._persist(request)
                    upgraded.append(request.entry_id)
        if upgraded:
            logger.info(f"Upgraded {len(upgraded)} aging request(s) to high priority")
        return upgraded

    def restore(self, requeue_stuck: bool = False) -> int:
        """
        Load request state from the store.

        Used after a restart, and by worker processes to pick up requests
        queued by another process. Requests this process has dispatched and
        not yet settled are left alone. A processing request owned by another
        process is loaded as processing; purge_expired() recovers it once it
        outlives the processing timeout.

        requeue_stuck puts stored processing requests back in the queue
        without spending retry budget. Only use it when no other process can
        be working on them, e.g. a single-process restart.
        """
        if self.store is None:
            return 0
        loaded = self.store.load_requests(list(RequestStatus))
        restored = 0
        with self._lock:
            now = self.clock()
            for request in loaded:
                if request.entry_id in self._in_flight:
                    continue
                if request.status is RequestStatus.PROCESSING and requeue_stuck:
                    request.status = RequestStatus.QUEUED
                    request.processing_started_at = None
                    request.generation += 1
                    self._persist(request)
                if self._adopt(request, now):
                    restored += 1
        logger.info(f"Restored {restored} queued request(s) from {len(loaded)} stored")
        return restored
