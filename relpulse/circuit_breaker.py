"""
Circuit breaker and health guardrail for the remote analysis provider.

CircuitBreaker counts consecutive failures and short-circuits to fallback
analysis once the threshold is reached. HealthGuardrail independently watches
success rate and p95 latency over a trailing window and can force fallback
even while the breaker is closed.

Both objects are explicitly owned (one per pipeline) and every mutation goes
through a lock.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import numpy as np

from . import config
from .models import BreakerState, CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    closed -> open after failure_threshold consecutive failures.
    open -> half_open once cooldown has elapsed (checked on allow_request).
    half_open admits exactly one trial call; success closes, failure reopens
    with the cooldown doubled (bounded by max_cooldown).
    """

    def __init__(
        self,
        service: str = "remote_analysis",
        failure_threshold: int = None,
        cooldown_seconds: float = None,
        max_cooldown_seconds: float = None,
        clock: Optional[Callable[[], float]] = None,
        on_transition: Optional[Callable[[BreakerState, BreakerState, CircuitBreakerState], None]] = None,
    ):
        self.service = service
        self.failure_threshold = failure_threshold or config.BREAKER_FAILURE_THRESHOLD
        self.base_cooldown = cooldown_seconds if cooldown_seconds is not None else config.BREAKER_COOLDOWN_SECONDS
        self.max_cooldown = max_cooldown_seconds if max_cooldown_seconds is not None else config.BREAKER_MAX_COOLDOWN_SECONDS
        self.clock = clock or time.time
        self.on_transition = on_transition

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._cooldown = self.base_cooldown
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """
        Ask permission to call the remote provider.

        Returns False while open (or while the single half-open trial is out).
        """
        transition = None
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return True

            if self._state is BreakerState.OPEN:
                if self.clock() - (self._opened_at or 0.0) < self._cooldown:
                    return False
                transition = self._set_state(BreakerState.HALF_OPEN)

            # half_open: one trial at a time
            if self._trial_in_flight:
                allowed = False
            else:
                self._trial_in_flight = True
                allowed = True
        self._notify(transition)
        return allowed

    def record_success(self) -> None:
        transition = None
        with self._lock:
            self._last_success_at = self.clock()
            self._consecutive_failures = 0
            self._trial_in_flight = False
            if self._state is not BreakerState.CLOSED:
                self._cooldown = self.base_cooldown
                self._opened_at = None
                transition = self._set_state(BreakerState.CLOSED)
        self._notify(transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            now = self.clock()
            self._last_failure_at = now
            self._consecutive_failures += 1

            if self._state is BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._cooldown = min(self._cooldown * 2, self.max_cooldown)
                self._opened_at = now
                transition = self._set_state(BreakerState.OPEN)
            elif self._state is BreakerState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._opened_at = now
                transition = self._set_state(BreakerState.OPEN)
            elif self._state is BreakerState.OPEN:
                # Late failure from a call admitted before the breaker opened
                self._opened_at = now
        self._notify(transition)

    def release_trial(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        transition = None
        with self._lock:
            self._consecutive_failures = 0
            self._trial_in_flight = False
            self._opened_at = None
            self._cooldown = self.base_cooldown
            if self._state is not BreakerState.CLOSED:
                transition = self._set_state(BreakerState.CLOSED)
        self._notify(transition)

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            service=self.service,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            opened_at=self._opened_at,
            cooldown_seconds=self._cooldown,
        )

    def _set_state(self, new_state: BreakerState) -> Tuple[BreakerState, BreakerState, CircuitBreakerState]:
        # Caller holds the lock
        old_state = self._state
        self._state = new_state
        return old_state, new_state, self._snapshot_locked()

    def _notify(self, transition) -> None:
        if transition is None:
            return
        old_state, new_state, snapshot = transition
        if new_state is BreakerState.OPEN:
            logger.warning(
                f"Circuit breaker '{self.service}' opened after {snapshot.consecutive_failures} "
                f"consecutive failures (cooldown {snapshot.cooldown_seconds:.0f}s)"
            )
        else:
            logger.info(f"Circuit breaker '{self.service}': {old_state.value} -> {new_state.value}")
        if self.on_transition:
            try:
                self.on_transition(old_state, new_state, snapshot)
            except Exception as e:
                logger.error(f"Breaker transition callback failed: {e}", exc_info=True)


class HealthGuardrail:
    """
    Trailing-window success rate and p95 latency for remote calls.

    Trips (forcing fallback) when success rate drops below min_success_rate or
    p95 latency exceeds latency_baseline_ms * latency_margin. Needs at least
    min_samples observations in the window before it can trip.
    """

    def __init__(
        self,
        window_seconds: float = None,
        min_success_rate: float = None,
        latency_baseline_ms: float = None,
        latency_margin: float = None,
        min_samples: int = None,
        clock: Optional[Callable[[], float]] = None,
        on_alert: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.window_seconds = window_seconds or config.GUARDRAIL_WINDOW_SECONDS
        self.min_success_rate = min_success_rate if min_success_rate is not None else config.GUARDRAIL_MIN_SUCCESS_RATE
        self.latency_baseline_ms = latency_baseline_ms or config.GUARDRAIL_LATENCY_BASELINE_MS
        self.latency_margin = latency_margin or config.GUARDRAIL_LATENCY_MARGIN
        self.min_samples = min_samples if min_samples is not None else config.GUARDRAIL_MIN_SAMPLES
        self.clock = clock or time.time
        self.on_alert = on_alert

        self._lock = threading.Lock()
        self._samples: Deque[Tuple[float, bool, float]] = deque()  # (at, success, latency_ms)
        self._tripped = False

    def record(self, success: bool, latency_ms: float) -> None:
        with self._lock:
            self._samples.append((self.clock(), bool(success), float(latency_ms)))
        self.evaluate()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def evaluate(self) -> Dict[str, Any]:
        """Recompute window metrics and fire an alert on the transition into tripped."""
        with self._lock:
            now = self.clock()
            self._prune(now)
            total = len(self._samples)
            successes = sum(1 for _, ok, _ in self._samples if ok)
            success_rate = successes / total if total else 1.0
            latencies = [lat for _, ok, lat in self._samples if ok]
            p95 = float(np.percentile(latencies, 95)) if latencies else 0.0
            latency_limit = self.latency_baseline_ms * self.latency_margin

            reasons = []
            if total >= self.min_samples:
                if success_rate < self.min_success_rate:
                    reasons.append(f"success rate {success_rate:.1%} below {self.min_success_rate:.0%}")
                if p95 > latency_limit:
                    reasons.append(f"p95 latency {p95:.0f}ms above {latency_limit:.0f}ms")

            was_tripped = self._tripped
            self._tripped = bool(reasons)
            status = {
                "tripped": self._tripped,
                "reasons": reasons,
                "samples": total,
                "success_rate": round(success_rate, 4),
                "p95_latency_ms": round(p95, 1),
                "latency_limit_ms": latency_limit,
                "window_seconds": self.window_seconds,
            }

        if self._tripped and not was_tripped:
            logger.warning(f"Health guardrail tripped: {'; '.join(reasons)}")
            if self.on_alert:
                try:
                    self.on_alert(status)
                except Exception as e:
                    logger.error(f"Guardrail alert callback failed: {e}", exc_info=True)
        elif was_tripped and not self._tripped:
            logger.info("Health guardrail recovered")
        return status

    def should_force_fallback(self) -> bool:
        return self.evaluate()["tripped"]

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._tripped = False
