"""
Failure pattern detection for the analysis pipeline.

A periodic sweep (every FAILURE_SWEEP_INTERVAL_MINUTES via Celery beat) looks
at recent failed requests and completed analyses and raises one alert per
systemic pattern it finds.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from . import config
from .models import BreakerState

logger = logging.getLogger(__name__)

# Failure types caused by users or housekeeping, not by the provider
IGNORED_FAILURE_TYPES = {"cancelled", "expired"}

SYSTEMIC_ERROR_SHARE = 0.6
SYSTEMIC_ERROR_MIN_FAILURES = 3
FALLBACK_SURGE_SHARE = 0.5
FALLBACK_SURGE_MIN_RESULTS = 5


def success_rate_level(success_rate: float, thresholds: Optional[Dict[str, float]] = None) -> str:
    """Grade a success rate as healthy, warning, critical or emergency."""
    thresholds = thresholds or config.SUCCESS_RATE_THRESHOLDS
    if success_rate < thresholds["emergency"]:
        return "emergency"
    if success_rate < thresholds["critical"]:
        return "critical"
    if success_rate < thresholds["warning"]:
        return "warning"
    return "healthy"


class FailureSweep:
    """Scans a trailing window of pipeline activity for systemic failures."""

    def __init__(
        self,
        store,
        breaker=None,
        guardrail=None,
        notifier=None,
        clock: Optional[Callable[[], float]] = None,
        window_minutes: int = None,
        spike_threshold: int = None,
    ):
        self.store = store
        self.breaker = breaker
        self.guardrail = guardrail
        self.notifier = notifier
        self.clock = clock or time.time
        self.window_minutes = window_minutes or config.FAILURE_SWEEP_WINDOW_MINUTES
        self.spike_threshold = spike_threshold or config.FAILURE_SPIKE_THRESHOLD

    def _failures_frame(self, since: float) -> pd.DataFrame:
        failures = pd.DataFrame(
            self.store.failed_requests_since(since),
            columns=["entry_id", "user_id", "priority", "attempts", "last_error_type", "updated_at"],
        )
        if failures.empty:
            return failures
        failures["last_error_type"] = failures["last_error_type"].fillna("unknown")
        return failures[~failures["last_error_type"].isin(IGNORED_FAILURE_TYPES)]

    def _results_frame(self, since: float) -> pd.DataFrame:
        return pd.DataFrame(
            self.store.analyses_since(since),
            columns=["entry_id", "source", "status", "created_at"],
        )

    def run(self) -> Dict[str, Any]:
        """
        Run one sweep.

        Returns:
            Dict with window bounds, counts, success rate level and detected patterns
        """
        now = self.clock()
        since = now - self.window_minutes * 60
        failures = self._failures_frame(since)
        results = self._results_frame(since)

        patterns: List[Dict[str, Any]] = []

        if len(failures) >= self.spike_threshold:
            patterns.append({
                "pattern": "error_spike",
                "severity": "high",
                "failures": int(len(failures)),
                "threshold": self.spike_threshold,
            })

        if len(failures) >= SYSTEMIC_ERROR_MIN_FAILURES:
            shares = failures["last_error_type"].value_counts(normalize=True)
            top_type, top_share = shares.index[0], float(shares.iloc[0])
            if top_share >= SYSTEMIC_ERROR_SHARE:
                patterns.append({
                    "pattern": "systemic_error",
                    "severity": "high" if top_share >= 0.8 else "medium",
                    "error_type": top_type,
                    "share": round(top_share, 3),
                    "failures": int(len(failures)),
                })

        completed = results[results["status"] == "completed"] if not results.empty else results
        fallback_share = 0.0
        if len(completed) >= FALLBACK_SURGE_MIN_RESULTS:
            fallback_share = float((completed["source"] == "fallback").mean())
            if fallback_share > FALLBACK_SURGE_SHARE:
                patterns.append({
                    "pattern": "fallback_surge",
                    "severity": "medium",
                    "fallback_share": round(fallback_share, 3),
                    "results": int(len(completed)),
                })

        if self.breaker is not None and self.breaker.state is BreakerState.OPEN:
            snapshot = self.breaker.snapshot()
            patterns.append({
                "pattern": "breaker_open",
                "severity": "high",
                "service": snapshot.service,
                "consecutive_failures": snapshot.consecutive_failures,
            })

        attempts = len(completed) + len(failures)
        success_rate = len(completed) / attempts if attempts else 1.0
        guardrail_status = self.guardrail.evaluate() if self.guardrail is not None else None

        for pattern in patterns:
            logger.warning(f"Failure pattern detected: {pattern['pattern']} ({pattern['severity']})")
            if self.notifier is not None:
                self.notifier.emit("failure_pattern", pattern)

        summary = {
            "window_start": since,
            "window_end": now,
            "failures": int(len(failures)),
            "completed": int(len(completed)),
            "success_rate": round(success_rate, 4),
            "success_rate_level": success_rate_level(success_rate),
            "fallback_share": round(fallback_share, 3),
            "guardrail": guardrail_status,
            "patterns": patterns,
        }
        logger.info(
            f"Failure sweep: {summary['failures']} failures, {summary['completed']} completed, "
            f"{len(patterns)} pattern(s)"
        )
        return summary
