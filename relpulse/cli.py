"""
CLI interface for RelPulse
"""

import sys
import json
import logging
import argparse

from . import config
from .exceptions import EntryNotFound, RelPulseError
from .models import HealthScore, Priority

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def _pipeline(args):
    from .pipeline import build_pipeline
    return build_pipeline(db_path=args.db, mock_mode=True if args.mock else None)


def cmd_add_entry(args) -> int:
    pipeline = _pipeline(args)
    store = pipeline.store
    if store.get_user(args.user) is None:
        store.add_user(args.user)
    if args.relationship and store.get_relationship(args.relationship) is None:
        store.add_relationship(args.relationship, args.user, args.relationship, rel_type=args.type)
    store.add_entry(args.entry_id, args.user, args.content, relationship_id=args.relationship, mood=args.mood)
    _print(store.get_entry(args.entry_id))
    return 0


def cmd_enqueue(args) -> int:
    pipeline = _pipeline(args)
    priority = Priority(args.priority) if args.priority else None
    try:
        result = pipeline.scheduler.enqueue(args.entry_id, user_id=args.user, priority=priority, force=args.force)
    except EntryNotFound as e:
        logger.error(str(e))
        return 1
    _print(result.to_dict())
    return 0 if result.status != "rejected" else 1


def cmd_process(args) -> int:
    pipeline = _pipeline(args)
    processed, recalculated = [], []
    while True:
        result = pipeline.scheduler.tick(args.max_items)
        processed.extend(result["processed"])
        recalculated.extend(result["recalculated"])
        if not args.drain or not (result["processed"] or result["recalculated"]):
            break
    pipeline.shutdown()
    _print({"processed": processed, "recalculated": recalculated})
    return 0


def cmd_stats(args) -> int:
    pipeline = _pipeline(args)
    _print(pipeline.status())
    return 0


def cmd_score(args) -> int:
    pipeline = _pipeline(args)
    if args.recalculate:
        outcome = pipeline.engine.recalculate(args.relationship_id)
        if not isinstance(outcome, HealthScore):
            _print(outcome.to_dict())
            return 1
    score = pipeline.engine.get_by_relationship(args.relationship_id)
    if score is None:
        logger.error(f"No health score for relationship {args.relationship_id}")
        return 1
    _print(score)
    return 0


def cmd_recompute_all(args) -> int:
    if args.use_celery:
        from .tasks.analysis_tasks import bulk_recalculate_health_scores
        task = bulk_recalculate_health_scores.delay(args.batch_size, args.delay)
        _print({"task_id": task.id})
        return 0

    # Inline: same plan, run back to back without the stagger
    pipeline = _pipeline(args)
    plan = pipeline.engine.plan_bulk_recalculation(args.batch_size, args.delay)
    results = []
    for item in plan["schedule"]:
        outcome = pipeline.engine.recalculate(item["relationship_id"])
        if isinstance(outcome, HealthScore):
            results.append({"relationship_id": outcome.relationship_id, "success": True, "score": outcome.score})
        else:
            results.append(outcome.to_dict())
    _print({"total_relationships": plan["total_relationships"], "results": results})
    return 0


def cmd_sweep(args) -> int:
    pipeline = _pipeline(args)
    _print(pipeline.sweep.run())
    return 0


def cmd_retry_failed(args) -> int:
    pipeline = _pipeline(args)
    outcome = pipeline.scheduler.retry_failed(
        args.entry_ids or None,
        limit=args.limit,
        include_cancelled=args.include_cancelled,
    )
    _print(outcome)
    return 0


def cmd_purge(args) -> int:
    pipeline = _pipeline(args)
    outcome = pipeline.queue.purge_expired(dry_run=args.dry_run)
    if not args.dry_run:
        outcome["upgraded"] = pipeline.queue.upgrade_aging_requests()
    _print(outcome)
    return 0


def cmd_config(args) -> int:
    valid, msg = config.validate_config()
    _print({"valid": valid, "message": msg, "config": config.get_config_summary()})
    return 0 if valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="RelPulse - Relationship journal analysis pipeline"
    )
    parser.add_argument("--db", help="sqlite database path (default from config)")
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock remote provider responses (for testing)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-entry", help="Store a journal entry")
    p.add_argument("entry_id")
    p.add_argument("content")
    p.add_argument("--user", required=True)
    p.add_argument("--relationship")
    p.add_argument("--type", default="friend", help="Relationship type when creating the relationship")
    p.add_argument("--mood")
    p.set_defaults(func=cmd_add_entry)

    p = sub.add_parser("enqueue", help="Queue an entry for analysis")
    p.add_argument("entry_id")
    p.add_argument("--user")
    p.add_argument("--priority", choices=[pr.value for pr in Priority])
    p.add_argument("--force", action="store_true", help="Re-analyze even if already analyzed")
    p.set_defaults(func=cmd_enqueue)

    p = sub.add_parser("process", help="Process queued analyses")
    p.add_argument("--max-items", type=int, default=None)
    p.add_argument("--drain", action="store_true", help="Keep going until nothing is due")
    p.set_defaults(func=cmd_process)

    p = sub.add_parser("stats", help="Queue, breaker and guardrail status")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("score", help="Show a relationship's health score")
    p.add_argument("relationship_id")
    p.add_argument("--recalculate", action="store_true")
    p.set_defaults(func=cmd_score)

    p = sub.add_parser("recompute-all", help="Recalculate every active relationship")
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--delay", type=float, default=None, help="Seconds between recalculations (Celery only)")
    p.add_argument("--celery", dest="use_celery", action="store_true", help="Fan out through Celery")
    p.set_defaults(func=cmd_recompute_all)

    p = sub.add_parser("sweep", help="Run the failure pattern sweep")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("retry-failed", help="Requeue failed analyses")
    p.add_argument("entry_ids", nargs="*")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--include-cancelled", action="store_true")
    p.set_defaults(func=cmd_retry_failed)

    p = sub.add_parser("purge", help="Expire old queued requests and recover stuck ones")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_purge)

    p = sub.add_parser("config", help="Print configuration summary")
    p.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        code = args.func(args)
    except (RelPulseError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}", exc_info=args.verbose)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
