"""
Analysis scheduler.

Drives queued requests through analysis:

    dequeue -> guardrail / breaker gate -> remote provider or fallback
            -> persist result -> schedule health score recalculation

Each request is processed as an independent unit of work on a thread pool;
a failure in one never blocks the others. Transient provider failures are
requeued with backoff and rising priority, and once the retry budget is spent
the entry still gets a local fallback result.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import config
from .analysis_queue import AnalysisQueue
from .circuit_breaker import CircuitBreaker, HealthGuardrail
from .delay_queue import DelayQueue
from .exceptions import EntryNotFound, InvalidTransition, QueueFullError, RateLimited, RelPulseError
from .fallback import compare_results, run_fallback_analysis, should_store, should_upgrade_fallback
from .health_score import HealthScoreEngine
from .models import (
    AnalysisRequest,
    AnalysisSource,
    BreakerState,
    EnqueueResult,
    FallbackResult,
    FallbackTrigger,
    HealthScore,
    Priority,
)
from .retry_strategy import calculate_retry_strategy, classify_error, is_service_error
from .utils.decision_logger import DecisionLogger, Timer

logger = logging.getLogger(__name__)

RECALC_KEY_PREFIX = "recalc:"
PERMANENT_FAILURE_TYPES = {"validation", "not_found"}


class AnalysisScheduler:
    """Owns the processing loop; all collaborators are injected."""

    def __init__(
        self,
        store,
        queue: AnalysisQueue,
        remote_client,
        breaker: CircuitBreaker,
        guardrail: HealthGuardrail,
        engine: HealthScoreEngine,
        delay_queue: Optional[DelayQueue] = None,
        decision_logger: Optional[DecisionLogger] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        max_workers: int = None,
        recalc_delay_seconds: float = None,
    ):
        self.store = store
        self.queue = queue
        self.remote_client = remote_client
        self.breaker = breaker
        self.guardrail = guardrail
        self.engine = engine
        self.clock = clock or time.time
        self.rng = rng or random.Random()
        self.delay_queue = delay_queue or DelayQueue(clock=self.clock)
        self.decision_logger = decision_logger or DecisionLogger(db_path=store.db_path)
        self.max_workers = max_workers or config.MAX_CONCURRENT_PROCESSING
        self.recalc_delay = (recalc_delay_seconds if recalc_delay_seconds is not None
                             else config.RECALC_DELAY_SECONDS)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relpulse-analysis")

    # ========================================================================
    # Submission
    # ========================================================================

    def enqueue(
        self,
        entry_id: str,
        user_id: Optional[str] = None,
        priority: Optional[Priority] = None,
        force: bool = False,
    ) -> EnqueueResult:
        """
        Queue an entry for analysis. Returns immediately.

        Args:
            entry_id: Journal entry to analyze
            user_id: Requesting user (defaults to the entry's owner)
            priority: Explicit priority; premium users default to high
            force: Re-analyze even if a result already exists

        Raises:
            EntryNotFound: entry does not exist
        """
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry {entry_id} not found")
        user_id = user_id or entry["user_id"]
        user = self.store.get_user(user_id) or {"analysis_enabled": True, "tier": "free"}

        if not user["analysis_enabled"]:
            return EnqueueResult("skipped", "analysis disabled by user")
        if not entry["allow_ai_analysis"]:
            return EnqueueResult("skipped", "entry marked private")
        if not force:
            existing = self.store.get_analysis(entry_id)
            if existing is not None and existing.status == "completed":
                return EnqueueResult("skipped", "already analyzed")
        if self.queue.is_pending(entry_id):
            return EnqueueResult("skipped", "already queued")

        if priority is None:
            priority = Priority.HIGH if user.get("tier") == "premium" else Priority.NORMAL

        try:
            request = self.queue.enqueue(entry_id, user_id, entry["relationship_id"], priority)
        except QueueFullError:
            return EnqueueResult("rejected", "queue full")
        except InvalidTransition:
            # Lost a race with a concurrent enqueue of the same entry
            return EnqueueResult("skipped", "already queued")

        logger.info(f"Queued entry {entry_id} for analysis ({priority.value})")
        return EnqueueResult("queued", request=request)

    def cancel(self, entry_id: str, reason: str = "cancelled") -> AnalysisRequest:
        return self.queue.cancel(entry_id, reason)

    def retry_failed(self, entry_ids: Optional[Iterable[str]] = None, limit: int = None,
                     include_cancelled: bool = False) -> Dict[str, Any]:
        return self.queue.bulk_retry(entry_ids, limit=limit, include_cancelled=include_cancelled)

    # ========================================================================
    # Processing
    # ========================================================================

    def process_next(self) -> Optional[Dict[str, Any]]:
        """Dequeue and process one request on the calling thread."""
        request = self.queue.dequeue()
        if request is None:
            return None
        return self._process_isolated(request)

    def process_batch(self, max_items: int = None) -> List[Dict[str, Any]]:
        """Dequeue up to max_items requests and process them concurrently."""
        max_items = max_items or self.max_workers
        requests = []
        while len(requests) < max_items:
            request = self.queue.dequeue()
            if request is None:
                break
            requests.append(request)

        futures = [self._executor.submit(self._process_isolated, r) for r in requests]
        return [f.result() for f in futures]

    def tick(self, max_items: int = None) -> Dict[str, Any]:
        """Release due recalculations, then process a batch of queued work."""
        recalculated = self.run_due_recalculations()
        processed = self.process_batch(max_items)
        return {"recalculated": recalculated, "processed": processed}

    def _process_isolated(self, request: AnalysisRequest) -> Dict[str, Any]:
        try:
            return self._process(request)
        except Exception as e:
            logger.error(f"Unexpected error processing entry {request.entry_id}: {e}", exc_info=True)
            self.queue.fail(request.entry_id, f"Internal error: {e}", "unknown", generation=request.generation)
            return {"entry_id": request.entry_id, "status": "failed", "error": str(e)}

    def _process(self, request: AnalysisRequest) -> Dict[str, Any]:
        entry = self.store.get_entry(request.entry_id)
        if entry is None:
            self.queue.fail(request.entry_id, "Entry not found", "not_found", generation=request.generation)
            return {"entry_id": request.entry_id, "status": "failed", "error_type": "not_found"}

        trigger = None
        if self.guardrail.should_force_fallback():
            trigger = FallbackTrigger.GUARDRAIL_TRIPPED
        elif not self.breaker.allow_request():
            trigger = FallbackTrigger.CIRCUIT_BREAKER_OPEN

        if trigger is not None:
            return self._complete_with_fallback(request, entry, trigger)
        return self._call_remote(request, entry)

    def _context(self, request: AnalysisRequest, entry: Dict[str, Any]) -> Dict[str, Any]:
        relationship = self.store.get_relationship(entry["relationship_id"]) if entry["relationship_id"] else None
        return {
            "entry_id": request.entry_id,
            "user_id": request.user_id,
            "relationship_id": entry["relationship_id"],
            "relationship_type": relationship["type"] if relationship else None,
            "mood": entry["mood"],
        }

    def _call_remote(self, request: AnalysisRequest, entry: Dict[str, Any]) -> Dict[str, Any]:
        context = self._context(request, entry)
        with Timer() as timer:
            try:
                result = self.remote_client.analyze(entry["content"], context)
                error = None
            except RelPulseError as e:
                result, error = None, e
            except Exception as e:
                logger.error(f"Remote client raised unexpected error for {request.entry_id}: {e}", exc_info=True)
                result, error = None, e

        if error is None:
            self.breaker.record_success()
            self.guardrail.record(True, timer.elapsed_ms)
            return self._complete_with_remote(request, result, timer.elapsed_ms)

        error_type = classify_error(error)
        if is_service_error(error_type):
            self.breaker.record_failure()
            self.guardrail.record(False, timer.elapsed_ms)
        else:
            self.breaker.release_trial()
        return self._handle_failure(request, entry, error, error_type, timer.elapsed_ms)

    def _complete_with_remote(self, request: AnalysisRequest, result, elapsed_ms: float) -> Dict[str, Any]:
        previous = self.store.get_analysis(request.entry_id)
        if not self.queue.complete(request.entry_id, generation=request.generation):
            self._log_route(request, "remote", "healthy", "discarded", elapsed_ms)
            return {"entry_id": request.entry_id, "status": "discarded"}

        self.store.save_analysis(result)
        if isinstance(previous, FallbackResult):
            comparison = compare_results(result, previous)
            logger.info(f"Remote result superseded fallback for {request.entry_id}: {comparison}")

        self._log_route(request, "remote", "healthy", "completed", elapsed_ms)
        self.schedule_recalculation(result.relationship_id)
        return {"entry_id": request.entry_id, "status": "completed", "source": AnalysisSource.REMOTE.value}

    def _complete_with_fallback(self, request: AnalysisRequest, entry: Dict[str, Any],
                                trigger: FallbackTrigger) -> Dict[str, Any]:
        result = self._fallback_result(request, entry, trigger)
        if not self.queue.complete(request.entry_id, generation=request.generation):
            self._log_route(request, "fallback", trigger.value, "discarded")
            return {"entry_id": request.entry_id, "status": "discarded"}

        self._store_fallback(result)
        self._log_route(request, "fallback", trigger.value, "completed", result.processing_time_ms)
        return {
            "entry_id": request.entry_id,
            "status": "completed",
            "source": AnalysisSource.FALLBACK.value,
            "trigger": trigger.value,
        }

    def _fallback_result(self, request: AnalysisRequest, entry: Dict[str, Any],
                         trigger: FallbackTrigger) -> FallbackResult:
        priors = (self.store.recent_entry_texts(entry["relationship_id"], before=entry["created_at"])
                  if entry["relationship_id"] else [])
        return run_fallback_analysis(
            entry["content"],
            mood=entry["mood"],
            trigger=trigger,
            entry_id=request.entry_id,
            user_id=request.user_id,
            relationship_id=entry["relationship_id"],
            created_at=self.clock(),
            prior_texts=priors,
        )

    def _store_fallback(self, result: FallbackResult):
        # Low-quality fallback results are kept (one result per entry) but
        # excluded from health scoring until a remote upgrade replaces them
        if not should_store(result):
            result.status = "failed"
            logger.info(f"Fallback result for {result.entry_id} below quality bar, awaiting upgrade")
        self.store.save_analysis(result)
        if result.status == "completed":
            self.schedule_recalculation(result.relationship_id)

    def _handle_failure(self, request: AnalysisRequest, entry: Dict[str, Any], error: Exception,
                        error_type: str, elapsed_ms: float) -> Dict[str, Any]:
        message = str(error)
        retry_after = error.retry_after if isinstance(error, RateLimited) else None
        decision = calculate_retry_strategy(error, request.attempts, request.priority, self.rng, retry_after)

        if decision.should_retry and request.attempts < self.queue.max_attempts:
            requeued = self.queue.requeue(
                request.entry_id,
                priority=decision.new_priority,
                delay=decision.backoff_seconds,
                error_message=message,
                error_type=error_type,
                generation=request.generation,
            )
            outcome = "requeued" if requeued else "discarded"
            self._log_route(request, "remote", error_type, outcome, elapsed_ms)
            return {
                "entry_id": request.entry_id,
                "status": outcome,
                "error_type": error_type,
                "retry": decision.to_dict(),
            }

        if error_type in PERMANENT_FAILURE_TYPES:
            self.queue.fail(request.entry_id, message, error_type, generation=request.generation)
            self._log_route(request, "remote", error_type, "failed", elapsed_ms)
            return {"entry_id": request.entry_id, "status": "failed", "error_type": error_type}

        # Out of retries (or credentials rejected): degrade to a local result
        if error_type == "rate_limit":
            trigger = FallbackTrigger.RATE_LIMITED
        elif error_type == "authentication":
            trigger = FallbackTrigger.API_UNAVAILABLE
        else:
            trigger = FallbackTrigger.RETRY_EXHAUSTED

        if not self.queue.fail(request.entry_id, message, error_type, generation=request.generation):
            self._log_route(request, "fallback", trigger.value, "discarded", elapsed_ms)
            return {"entry_id": request.entry_id, "status": "discarded"}

        result = self._fallback_result(request, entry, trigger)
        self._store_fallback(result)
        self._log_route(request, "fallback", trigger.value, "failed", elapsed_ms)
        return {
            "entry_id": request.entry_id,
            "status": "failed",
            "error_type": error_type,
            "fallback_stored": True,
            "trigger": trigger.value,
        }

    def _log_route(self, request: AnalysisRequest, route: str, reason: str, outcome: str,
                   elapsed_ms: float = 0.0):
        self.decision_logger.log_decision(
            entry_id=request.entry_id,
            route=route,
            reason=reason,
            breaker_state=self.breaker.state.value,
            attempt=request.attempts,
            outcome=outcome,
            total_time_ms=elapsed_ms,
        )

    # ========================================================================
    # Health score triggers
    # ========================================================================

    def schedule_recalculation(self, relationship_id: Optional[str], delay: Optional[float] = None) -> bool:
        """Schedule a recalculation; repeated triggers before it runs collapse into one."""
        if not relationship_id:
            return False
        delay = self.recalc_delay if delay is None else delay
        return self.delay_queue.schedule(RECALC_KEY_PREFIX + relationship_id, relationship_id, delay)

    def run_due_recalculations(self) -> List[Dict[str, Any]]:
        outcomes = []
        for key, relationship_id in self.delay_queue.pop_due():
            if not key.startswith(RECALC_KEY_PREFIX):
                continue
            try:
                outcome = self.engine.recalculate(relationship_id)
            except Exception as e:
                logger.error(f"Health score recalculation failed for {relationship_id}: {e}", exc_info=True)
                outcomes.append({"relationship_id": relationship_id, "success": False, "error": str(e)})
                continue
            if isinstance(outcome, HealthScore):
                outcomes.append({"relationship_id": relationship_id, "success": True, "score": outcome.score})
            else:
                outcomes.append(outcome.to_dict())
        return outcomes

    def force_recalculate(self, user_id: str, relationship_id: Optional[str] = None) -> Dict[str, Any]:
        plan = self.engine.force_recalculate(user_id, relationship_id)
        for rel_id, delay in plan:
            self.delay_queue.schedule(RECALC_KEY_PREFIX + rel_id, rel_id, delay, replace=True)
        return {"success": True, "scheduled": len(plan), "relationships": [rel_id for rel_id, _ in plan]}

    def schedule_bulk_recalculation(self, batch_size: int = None, delay_seconds: float = None) -> Dict[str, Any]:
        plan = self.engine.plan_bulk_recalculation(batch_size, delay_seconds)
        for item in plan["schedule"]:
            self.delay_queue.schedule(
                RECALC_KEY_PREFIX + item["relationship_id"], item["relationship_id"],
                item["delay_seconds"], replace=True,
            )
        logger.info(f"Scheduled bulk recalculation of {plan['total_relationships']} relationships")
        return plan

    # ========================================================================
    # Fallback upgrades
    # ========================================================================

    def upgrade_fallback_results(self, limit: int = 50) -> Dict[str, Any]:
        """Re-queue low-quality fallback results for remote analysis while the provider is healthy."""
        if self.breaker.state is not BreakerState.CLOSED:
            return {"upgraded": [], "skipped_reason": f"circuit breaker {self.breaker.state.value}"}
        if self.guardrail.should_force_fallback():
            return {"upgraded": [], "skipped_reason": "guardrail tripped"}

        upgraded = []
        for result in self.store.list_fallback_analyses(limit):
            decision = should_upgrade_fallback(result)
            if not decision["should_upgrade"]:
                continue
            try:
                outcome = self.enqueue(result.entry_id, result.user_id, decision["recommended_priority"], force=True)
            except EntryNotFound:
                continue
            if outcome.status == "queued":
                upgraded.append(result.entry_id)

        logger.info(f"Queued {len(upgraded)} fallback result(s) for remote upgrade")
        return {"upgraded": upgraded, "skipped_reason": None}

    # ========================================================================
    # Status
    # ========================================================================

    def stats(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.stats(),
            "circuit_breaker": self.breaker.snapshot().to_dict(),
            "guardrail": self.guardrail.evaluate(),
            "pending_recalculations": len(self.delay_queue),
            "routing": self.decision_logger.get_summary_stats() if self.decision_logger.enabled else None,
        }

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
