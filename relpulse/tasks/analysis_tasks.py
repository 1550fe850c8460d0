"""
Background tasks for RelPulse.
Queue processing, health score recalculation and periodic maintenance run
here so request handlers never wait on the remote provider.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .. import config
from ..models import HealthScore, Priority
from .celery_app import celery as app

logger = logging.getLogger(__name__)

# Lazily built per worker process
_pipeline = None


def get_pipeline():
    """Get or create the worker's pipeline, synced with the shared store."""
    global _pipeline
    if _pipeline is None:
        from ..pipeline import build_pipeline
        _pipeline = build_pipeline()
    else:
        _pipeline.sync()
    return _pipeline


def reset_pipeline():
    global _pipeline
    if _pipeline is not None:
        _pipeline.shutdown()
    _pipeline = None


def trigger_processing(priority: Priority = Priority.NORMAL):
    """Schedule a queue drain after the priority's dispatch delay."""
    countdown = config.PRIORITY_DELAYS[priority.value]
    return process_analysis_queue.apply_async(countdown=countdown)


@app.task(bind=True, name='relpulse.tasks.analysis_tasks.process_analysis_queue')
def process_analysis_queue(self, max_items: Optional[int] = None) -> Dict[str, Any]:
    """Process due recalculations and one batch of queued analysis requests."""
    pipeline = get_pipeline()
    result = pipeline.scheduler.tick(max_items)
    processed = result['processed']
    logger.info(
        f"Processed {len(processed)} analysis request(s), "
        f"{len(result['recalculated'])} recalculation(s)"
    )
    return {
        'status': 'success',
        'processed': len(processed),
        'recalculated': len(result['recalculated']),
        'results': processed,
    }


@app.task(bind=True, name='relpulse.tasks.analysis_tasks.recalculate_health_score')
def recalculate_health_score(self, relationship_id: str) -> Dict[str, Any]:
    """Recalculate one relationship's health score."""
    try:
        outcome = get_pipeline().engine.recalculate(relationship_id)
    except sqlite3.OperationalError as e:
        logger.warning(f"Database busy recalculating {relationship_id}: {e} - retrying")
        raise self.retry(exc=e, countdown=60, max_retries=3)

    if isinstance(outcome, HealthScore):
        return {'status': 'success', 'relationship_id': relationship_id, 'score': outcome.score}
    return {'status': 'skipped', **outcome.to_dict()}


@app.task(name='relpulse.tasks.analysis_tasks.bulk_recalculate_health_scores')
def bulk_recalculate_health_scores(batch_size: Optional[int] = None,
                                   delay_seconds: Optional[float] = None) -> Dict[str, Any]:
    """Fan out recalculation of every active relationship with staggered countdowns."""
    plan = get_pipeline().engine.plan_bulk_recalculation(batch_size, delay_seconds)
    for item in plan['schedule']:
        recalculate_health_score.apply_async(
            args=[item['relationship_id']],
            countdown=item['delay_seconds'],
        )
    logger.info(
        f"Scheduled {plan['total_relationships']} recalculations "
        f"in {plan['batches_scheduled']} batch(es)"
    )
    return {
        'status': 'success',
        'total_relationships': plan['total_relationships'],
        'batches_scheduled': plan['batches_scheduled'],
    }


@app.task(name='relpulse.tasks.analysis_tasks.force_recalculate_user')
def force_recalculate_user(user_id: str, relationship_id: Optional[str] = None) -> Dict[str, Any]:
    """Recalculate one relationship now, or all of a user's with jitter."""
    plan = get_pipeline().engine.force_recalculate(user_id, relationship_id)
    for rel_id, delay in plan:
        recalculate_health_score.apply_async(args=[rel_id], countdown=delay)
    return {'status': 'success', 'scheduled': len(plan)}


@app.task(name='relpulse.tasks.analysis_tasks.run_failure_sweep')
def run_failure_sweep() -> Dict[str, Any]:
    summary = get_pipeline().sweep.run()
    return {
        'status': 'success',
        'failures': summary['failures'],
        'success_rate_level': summary['success_rate_level'],
        'patterns': [p['pattern'] for p in summary['patterns']],
    }


@app.task(name='relpulse.tasks.analysis_tasks.retry_failed_analyses')
def retry_failed_analyses(entry_ids: Optional[List[str]] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    pipeline = get_pipeline()
    outcome = pipeline.scheduler.retry_failed(entry_ids, limit=limit)
    if outcome['requeued']:
        trigger_processing(Priority.HIGH)
    return {'status': 'success', **outcome}


@app.task(name='relpulse.tasks.analysis_tasks.upgrade_fallback_results')
def upgrade_fallback_results(limit: int = 50) -> Dict[str, Any]:
    outcome = get_pipeline().scheduler.upgrade_fallback_results(limit)
    if outcome['upgraded']:
        trigger_processing(Priority.NORMAL)
    return {'status': 'success', **outcome}


@app.task(name='relpulse.tasks.analysis_tasks.purge_expired_requests')
def purge_expired_requests() -> Dict[str, Any]:
    pipeline = get_pipeline()
    purged = pipeline.queue.purge_expired()
    upgraded = pipeline.queue.upgrade_aging_requests()
    return {
        'status': 'success',
        'expired': len(purged['expired']),
        'stuck': len(purged['stuck']),
        'aged_upgrades': len(upgraded),
    }
