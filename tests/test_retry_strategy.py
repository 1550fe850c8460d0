"""
Tests for error classification, priority escalation and backoff
"""

import random

import pytest

from relpulse import config
from relpulse.exceptions import (
    EntryNotFound,
    ProviderAuthError,
    ProviderServerError,
    ProviderTimeout,
    ProviderUnavailable,
    ProviderValidationError,
    RateLimited,
)
from relpulse.models import Priority
from relpulse.retry_strategy import (
    calculate_backoff,
    calculate_retry_strategy,
    classify_error,
    is_recoverable,
    is_service_error,
)


# ============================================================================
# Classification
# ============================================================================

@pytest.mark.parametrize("error,expected", [
    (ProviderTimeout("slow"), "timeout"),
    (ProviderUnavailable("refused"), "network"),
    (ProviderServerError("500"), "service_error"),
    (RateLimited("slow down"), "rate_limit"),
    (ProviderValidationError("blocked"), "validation"),
    (ProviderAuthError("bad key"), "authentication"),
    (EntryNotFound("gone"), "not_found"),
    ("rate_limit", "rate_limit"),
    ("expired", "expired"),
    ("Request timed out after 30s", "timeout"),
    ("Connection reset by peer", "network"),
    ("Quota exceeded", "rate_limit"),
    ("Cancelled by user: duplicate", "cancelled"),
    ("503 Service Unavailable", "service_error"),
    (ValueError("something odd"), "unknown"),
])
def test_classify_error(error, expected):
    assert classify_error(error) == expected


def test_service_and_recoverable_sets():
    assert is_service_error("timeout")
    assert not is_service_error("validation")
    assert is_recoverable("unknown")
    assert not is_recoverable("authentication")
    assert not is_recoverable("cancelled")


# ============================================================================
# Strategy
# ============================================================================

def test_non_recoverable_not_retried():
    decision = calculate_retry_strategy(ProviderValidationError("blocked"), 0, Priority.HIGH)
    assert decision.should_retry is False
    assert decision.new_priority is Priority.HIGH
    assert decision.escalation_reason == "Non-recoverable error"


def test_max_retries_bounded_by_global_cap():
    decision = calculate_retry_strategy(ProviderTimeout("slow"), 0, Priority.NORMAL)
    assert decision.max_retries == min(5, config.MAX_RETRY_ATTEMPTS)

    exhausted = calculate_retry_strategy(ProviderTimeout("slow"), decision.max_retries, Priority.NORMAL)
    assert exhausted.should_retry is False
    assert exhausted.escalation_reason == "Maximum retry attempts exceeded"


def test_escalation_normal_to_high():
    first = calculate_retry_strategy(ProviderTimeout("slow"), 0, Priority.NORMAL, rng=random.Random(1))
    second = calculate_retry_strategy(ProviderTimeout("slow"), 1, Priority.NORMAL, rng=random.Random(1))
    assert first.new_priority is Priority.NORMAL
    assert second.new_priority is Priority.HIGH
    assert "high" in second.escalation_reason


def test_network_escalates_immediately():
    decision = calculate_retry_strategy(ProviderUnavailable("refused"), 0, Priority.NORMAL)
    assert decision.new_priority is Priority.HIGH


def test_escalation_high_to_urgent():
    decision = calculate_retry_strategy(ProviderUnavailable("refused"), 1, Priority.HIGH)
    assert decision.new_priority is Priority.URGENT


@pytest.mark.parametrize("priority", list(Priority))
@pytest.mark.parametrize("retry_count", [0, 1, 2])
def test_priority_never_lowered(priority, retry_count):
    decision = calculate_retry_strategy(ProviderServerError("500"), retry_count, priority)
    assert decision.new_priority.rank <= priority.rank


def test_unknown_errors_use_default_budget():
    decision = calculate_retry_strategy(ValueError("odd"), 1, Priority.NORMAL)
    assert decision.should_retry is True
    assert decision.error_type == "unknown"
    assert decision.is_service_error is False
    # Client-side errors escalate one attempt later
    assert decision.new_priority is Priority.NORMAL
    assert calculate_retry_strategy(ValueError("odd"), 2, Priority.NORMAL).new_priority is Priority.HIGH


def test_retry_after_is_a_floor():
    decision = calculate_retry_strategy(RateLimited("slow down", retry_after=120), 0, Priority.NORMAL)
    assert decision.should_retry is True
    assert decision.backoff_seconds >= 120


# ============================================================================
# Backoff
# ============================================================================

def test_backoff_jitter_bounds():
    rng = random.Random(7)
    for _ in range(50):
        delay = calculate_backoff(0, "timeout", Priority.NORMAL, rng)
        # 1s base * 1.5 (timeout) * 2.0 (service error) + [0, 1) jitter
        assert 3.0 <= delay < 4.0


def test_backoff_faster_for_urgent():
    urgent = calculate_backoff(1, "service_error", Priority.URGENT, random.Random(3))
    normal = calculate_backoff(1, "service_error", Priority.NORMAL, random.Random(3))
    assert urgent < normal


def test_backoff_grows_and_is_capped():
    rng = random.Random(11)
    delays = [calculate_backoff(n, "service_error", Priority.NORMAL, rng) for n in range(4)]
    assert delays == sorted(delays)
    assert calculate_backoff(30, "service_error", Priority.NORMAL, rng) == config.MAX_RETRY_DELAY_SECONDS


def test_seeded_rng_is_reproducible():
    a = calculate_backoff(2, "network", Priority.HIGH, random.Random(99))
    b = calculate_backoff(2, "network", Priority.HIGH, random.Random(99))
    assert a == b
