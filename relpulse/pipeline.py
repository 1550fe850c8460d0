"""
Shared analysis pipeline for RelPulse
Used by the CLI, the Flask API and the Celery workers so that all three wire
the queue, breaker, guardrail, health engine and scheduler the same way.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import config
from .analysis_queue import AnalysisQueue
from .circuit_breaker import CircuitBreaker, HealthGuardrail
from .health_score import HealthScoreEngine
from .models import BreakerState
from .monitoring import FailureSweep
from .notifications import Notifier
from .remote_client import RemoteAnalysisClient
from .scheduler import AnalysisScheduler
from .store import AnalysisStore

logger = logging.getLogger(__name__)


@dataclass
class AnalysisPipeline:
    """Every long-lived component of one RelPulse process."""
    store: AnalysisStore
    queue: AnalysisQueue
    breaker: CircuitBreaker
    guardrail: HealthGuardrail
    remote_client: Any
    notifier: Notifier
    engine: HealthScoreEngine
    scheduler: AnalysisScheduler
    sweep: FailureSweep

    def sync(self) -> int:
        """Pick up requests other processes wrote to the store."""
        return self.queue.restore()

    def status(self) -> Dict[str, Any]:
        return {
            **self.scheduler.stats(),
            "store": self.store.stats(),
        }

    def shutdown(self):
        self.scheduler.shutdown()


def build_pipeline(
    db_path: Optional[str] = None,
    remote_client=None,
    clock: Optional[Callable[[], float]] = None,
    rng: Optional[random.Random] = None,
    mock_mode: Optional[bool] = None,
    max_workers: Optional[int] = None,
    notifier: Optional[Notifier] = None,
    restore: bool = True,
) -> AnalysisPipeline:
    """
    Build a fully wired pipeline.

    Args:
        db_path: sqlite path (default from config)
        remote_client: Provider client; a RemoteAnalysisClient is built when None
        clock: Time source shared by every component
        rng: Random source for retry and recalculation jitter
        mock_mode: Run the provider client in mock mode
        max_workers: Thread pool size for batch processing
        notifier: Event sink (default publishes per config)
        restore: Reload persisted queue state. Requests left processing stay
            processing until purge_expired() times them out, since another
            process sharing the store may still be working on them

    Returns:
        AnalysisPipeline
    """
    store = AnalysisStore(db_path)
    rng = rng or random.Random()
    notifier = notifier or Notifier(clock=clock)

    def on_breaker_transition(old: BreakerState, new: BreakerState, snapshot):
        if new is BreakerState.OPEN:
            notifier.emit("breaker_opened", snapshot.to_dict())
        elif new is BreakerState.CLOSED and old is not BreakerState.CLOSED:
            notifier.emit("breaker_closed", snapshot.to_dict())

    def on_guardrail_alert(status: Dict[str, Any]):
        notifier.emit("guardrail_tripped", status)

    breaker = CircuitBreaker(clock=clock, on_transition=on_breaker_transition)
    guardrail = HealthGuardrail(clock=clock, on_alert=on_guardrail_alert)

    if remote_client is None:
        remote_client = RemoteAnalysisClient(mock_mode=mock_mode, clock=clock)

    queue = AnalysisQueue(store=store, clock=clock, rng=rng)
    engine = HealthScoreEngine(store, notifier=notifier, clock=clock, rng=rng)
    scheduler = AnalysisScheduler(
        store=store,
        queue=queue,
        remote_client=remote_client,
        breaker=breaker,
        guardrail=guardrail,
        engine=engine,
        clock=clock,
        rng=rng,
        max_workers=max_workers,
    )
    sweep = FailureSweep(store, breaker=breaker, guardrail=guardrail, notifier=notifier, clock=clock)

    if restore:
        restored = queue.restore()
        if restored:
            logger.info(f"Restored {restored} queued analysis request(s) from {store.db_path}")

    logger.info(
        f"Pipeline ready (db={store.db_path}, model={config.REMOTE_MODEL}, "
        f"mock={getattr(remote_client, 'mock_mode', False)})"
    )
    return AnalysisPipeline(
        store=store,
        queue=queue,
        breaker=breaker,
        guardrail=guardrail,
        remote_client=remote_client,
        notifier=notifier,
        engine=engine,
        scheduler=scheduler,
        sweep=sweep,
    )
