"""
Flask API for RelPulse
Queue, cancel and inspect analyses; read and recalculate health scores.
"""

import logging
import sqlite3
from datetime import datetime

from flask import Flask, request, jsonify
from kombu.exceptions import OperationalError

from . import config
from .exceptions import EntryNotFound, InvalidTransition
from .models import HealthScore, Priority
from .utils.redis_client import get_redis_client
from .tasks.celery_app import celery as celery_app

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Initialize components
pipeline = None


def get_pipeline():
    """Lazy-load the pipeline. Workers own stuck-request recovery, so nothing is requeued here."""
    global pipeline
    if pipeline is None:
        from .pipeline import build_pipeline
        pipeline = build_pipeline(restore=False)
    pipeline.sync()
    return pipeline


def trigger_processing(priority: Priority):
    """Ask a worker to drain the queue after the priority's dispatch delay."""
    if not config.ASYNC_PROCESSING:
        return None
    from .tasks.analysis_tasks import trigger_processing as schedule
    try:
        return schedule(priority)
    except OperationalError as e:
        # Beat drains the queue every minute anyway
        logger.warning(f"Could not reach Celery broker, leaving work for the next scheduled run: {e}")
        return None


@app.route('/api/entries/<entry_id>/analyze', methods=['POST'])
def api_analyze_entry(entry_id):
    """
    Queue an entry for analysis.

    Request JSON (all optional):
    {
        "user_id": "...",
        "priority": "urgent" | "high" | "normal",
        "force": false
    }
    """
    data = request.get_json(silent=True) or {}
    priority = None
    if data.get('priority'):
        try:
            priority = Priority(data['priority'])
        except ValueError:
            return jsonify({"error": f"Invalid priority: {data['priority']}"}), 400

    try:
        result = get_pipeline().scheduler.enqueue(
            entry_id,
            user_id=data.get('user_id'),
            priority=priority,
            force=bool(data.get('force', False)),
        )
    except EntryNotFound as e:
        return jsonify({"error": str(e)}), 404

    if result.status == 'rejected':
        return jsonify(result.to_dict()), 503
    if result.status == 'queued':
        trigger_processing(result.request.priority)
        return jsonify(result.to_dict()), 202
    return jsonify(result.to_dict())


@app.route('/api/requests/<entry_id>')
def api_request_status(entry_id):
    """Current request state plus the stored analysis, if any."""
    store = get_pipeline().store
    analysis_request = store.get_request(entry_id)
    if analysis_request is None:
        return jsonify({"error": f"No analysis request for entry {entry_id}"}), 404

    analysis = store.get_analysis(entry_id)
    return jsonify({
        "request": analysis_request.to_dict(),
        "analysis": analysis.to_dict() if analysis is not None else None,
    })


@app.route('/api/requests/<entry_id>/cancel', methods=['POST'])
def api_cancel_request(entry_id):
    data = request.get_json(silent=True) or {}
    reason = data.get('reason') or 'cancelled'
    try:
        cancelled = get_pipeline().scheduler.cancel(entry_id, reason)
    except EntryNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"success": True, "request": cancelled.to_dict()})


@app.route('/api/requests/retry', methods=['POST'])
def api_retry_failed():
    """
    Requeue failed requests (at most BULK_RETRY_LIMIT per call).

    Request JSON (all optional):
    {
        "entry_ids": ["..."],
        "limit": 10,
        "include_cancelled": false
    }
    """
    data = request.get_json(silent=True) or {}
    entry_ids = data.get('entry_ids')
    if entry_ids is not None and not isinstance(entry_ids, list):
        return jsonify({"error": "'entry_ids' must be a list"}), 400

    outcome = get_pipeline().scheduler.retry_failed(
        entry_ids,
        limit=data.get('limit'),
        include_cancelled=bool(data.get('include_cancelled', False)),
    )
    if outcome['requeued']:
        trigger_processing(Priority.HIGH)
    return jsonify(outcome)


@app.route('/api/queue/stats')
def api_queue_stats():
    return jsonify(get_pipeline().status())


@app.route('/api/relationships/<relationship_id>/health-score')
def api_health_score(relationship_id):
    score = get_pipeline().engine.get_by_relationship(relationship_id)
    if score is None:
        return jsonify({"error": f"No health score for relationship {relationship_id}"}), 404
    return jsonify(score)


@app.route('/api/relationships/<relationship_id>/health-score/recalculate', methods=['POST'])
def api_recalculate_health_score(relationship_id):
    outcome = get_pipeline().engine.recalculate(relationship_id)
    if isinstance(outcome, HealthScore):
        return jsonify({"success": True, "health_score": outcome.to_dict()})
    return jsonify(outcome.to_dict())


@app.route('/api/users/<user_id>/health-summary')
def api_health_summary(user_id):
    return jsonify(get_pipeline().engine.get_summary(user_id))


@app.route('/health')
def health():
    """Health check endpoint for Docker and monitoring."""
    status = {
        'status': 'ok',
        'timestamp': datetime.now().isoformat(),
        'components': {}
    }

    # Check Redis
    redis_status = {'status': 'down', 'latency_ms': None}
    try:
        client = get_redis_client(max_retries=0)
        if client:
            start = datetime.now()
            client.ping()
            latency = (datetime.now() - start).total_seconds() * 1000
            redis_status = {'status': 'up', 'latency_ms': round(latency, 2)}
    except Exception as e:
        redis_status['error'] = str(e)
    status['components']['redis'] = redis_status

    # Check Celery
    celery_status = {'status': 'unknown'}
    if config.ASYNC_PROCESSING:
        try:
            with celery_app.connection_or_acquire() as conn:
                celery_status = {'status': 'connected' if conn.connected else 'disconnected'}
        except Exception as e:
            celery_status = {'status': 'down', 'error': str(e)}
    status['components']['celery'] = celery_status

    # Check DB
    db_status = {'status': 'down'}
    try:
        with sqlite3.connect(config.DB_PATH) as conn:
            conn.execute("SELECT 1")
        db_status = {'status': 'up'}
    except sqlite3.Error as e:
        db_status['error'] = str(e)
    status['components']['db'] = db_status

    # Check remote analysis path
    current = get_pipeline()
    breaker = current.breaker.snapshot().to_dict()
    guardrail = current.guardrail.evaluate()
    status['components']['circuit_breaker'] = breaker
    status['components']['guardrail'] = guardrail

    # Determine overall health
    if (redis_status['status'] == 'down' or db_status['status'] == 'down'
            or breaker['state'] == 'open' or guardrail['tripped']):
        status['status'] = 'degraded'
        return jsonify(status), 503

    return jsonify(status)


if __name__ == '__main__':
    # Validate config
    valid, msg = config.validate_config()
    if not valid:
        logger.warning(f"Config validation: {msg}")

    # Run Flask app
    logger.info(f"Starting server (debug=True, use_reloader={config.DEV_USE_RELOADER})")
    app.run(debug=True, use_reloader=config.DEV_USE_RELOADER, host='0.0.0.0', port=5000)
