"""
Background tasks for RelPulse
"""

from .analysis_tasks import (
    process_analysis_queue,
    recalculate_health_score,
    bulk_recalculate_health_scores,
    run_failure_sweep,
    retry_failed_analyses,
    upgrade_fallback_results,
    trigger_processing,
)

__all__ = [
    'process_analysis_queue',
    'recalculate_health_score',
    'bulk_recalculate_health_scores',
    'run_failure_sweep',
    'retry_failed_analyses',
    'upgrade_fallback_results',
    'trigger_processing',
]
