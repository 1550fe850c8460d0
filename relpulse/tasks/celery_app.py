"""
Celery application factory for RelPulse.
Configures Celery for the analysis workers and the periodic maintenance beat.
"""

import logging
from celery import Celery, signals
from celery.schedules import crontab
from relpulse import config
from relpulse.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)


def make_celery(app_name=__name__):
    """
    Create and configure a Celery application.
    """
    celery_app = Celery(
        app_name,
        broker=config.CELERY_BROKER_URL,
        backend=config.CELERY_RESULT_BACKEND,
        include=['relpulse.tasks.analysis_tasks'],
    )

    celery_app.conf.update(
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_transport_options={
            'visibility_timeout': 3600,
            'max_retries': 3,
            'interval_start': 0,
            'interval_step': 0.2,
            'interval_max': 0.5,
        },
        broker_pool_limit=config.BROKER_POOL_LIMIT,
        broker_connection_retry=config.BROKER_CONNECTION_RETRY,
        broker_connection_max_retries=5,
        broker_connection_retry_on_startup=True,
        task_default_retry_delay=5,
        task_annotations={
            'relpulse.tasks.analysis_tasks.recalculate_health_score': {
                'rate_limit': '60/m'
            }
        },
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s] [%(task_name)s(%(task_id)s)] %(message)s",
    )

    celery_app.conf.beat_schedule = {
        'process-analysis-queue': {
            'task': 'relpulse.tasks.analysis_tasks.process_analysis_queue',
            'schedule': crontab(),  # Every minute
        },
        'failure-sweep': {
            'task': 'relpulse.tasks.analysis_tasks.run_failure_sweep',
            'schedule': crontab(minute=f'*/{config.FAILURE_SWEEP_INTERVAL_MINUTES}'),
        },
        'upgrade-fallback-results': {
            'task': 'relpulse.tasks.analysis_tasks.upgrade_fallback_results',
            'schedule': crontab(minute=15),  # Hourly
        },
        'purge-expired-requests': {
            'task': 'relpulse.tasks.analysis_tasks.purge_expired_requests',
            'schedule': crontab(minute='*/5'),
        },
    }

    return celery_app


celery = make_celery()


@signals.worker_ready.connect
def log_worker_ready(sender=None, **kwargs):
    """Log when worker is ready."""
    logger.info(f"Celery worker ready: {sender}")
    client = get_redis_client()
    if client:
        logger.info("Redis connection verified on worker startup")
    else:
        logger.warning("Redis connection failed on worker startup")


@signals.beat_init.connect
def log_beat_init(sender=None, **kwargs):
    """Log when beat is initialized."""
    logger.info("Celery beat initialized")
