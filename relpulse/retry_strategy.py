"""
Retry strategy for queued analyses.

Classifies failures, decides whether to retry, escalates priority for repeat
failures and computes jittered exponential backoff.
"""

import random
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import config
from .exceptions import RelPulseError
from .models import Priority

logger = logging.getLogger(__name__)

SERVICE_ERROR_TYPES = {"timeout", "network", "rate_limit", "service_error"}
NON_RECOVERABLE_TYPES = {"validation", "authentication", "not_found", "cancelled"}
KNOWN_ERROR_TYPES = SERVICE_ERROR_TYPES | NON_RECOVERABLE_TYPES | set(config.ERROR_TYPE_CONFIG) | {"expired", "unknown"}

_DEFAULT_ERROR_CONFIG = {"max_retries": config.MAX_RETRY_ATTEMPTS, "backoff_multiplier": 1.0, "upgrade_after_attempts": 2}


@dataclass
class RetryDecision:
    should_retry: bool
    new_priority: Priority
    backoff_seconds: float
    max_retries: int
    error_type: str
    is_service_error: bool
    escalation_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_retry": self.should_retry,
            "new_priority": self.new_priority.value,
            "backoff_seconds": round(self.backoff_seconds, 3),
            "max_retries": self.max_retries,
            "error_type": self.error_type,
            "is_service_error": self.is_service_error,
            "escalation_reason": self.escalation_reason,
        }


def classify_error(error: Any) -> str:
    """
    Map an exception (or error message) to an error type.

    RelPulse exceptions carry their own type, and a stored error type name
    maps to itself. Anything else is classified by message substrings.
    """
    if isinstance(error, RelPulseError):
        return error.error_type
    if isinstance(error, str) and error in KNOWN_ERROR_TYPES:
        return error

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "network" in message or "connection" in message:
        return "network"
    if "rate limit" in message or "quota" in message or "429" in message:
        return "rate_limit"
    if "cancelled" in message:
        return "cancelled"
    if "validation" in message or "invalid" in message or "bad request" in message:
        return "validation"
    if "auth" in message or "unauthorized" in message or "forbidden" in message:
        return "authentication"
    if "not found" in message:
        return "not_found"
    if "service" in message or "server error" in message or "unavailable" in message:
        return "service_error"
    return "unknown"


def is_service_error(error_type: str) -> bool:
    """Service-side failures count against the circuit breaker."""
    return error_type in SERVICE_ERROR_TYPES


def is_recoverable(error_type: str) -> bool:
    return error_type not in NON_RECOVERABLE_TYPES


def calculate_backoff(
    retry_count: int,
    error_type: str,
    priority: Priority,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff in seconds with jitter, capped at MAX_RETRY_DELAY_SECONDS."""
    rng = rng or random
    error_config = config.ERROR_TYPE_CONFIG.get(error_type, _DEFAULT_ERROR_CONFIG)

    delay = (config.RETRY_BACKOFF_BASE ** retry_count) * config.RETRY_BASE_DELAY_SECONDS
    delay *= error_config["backoff_multiplier"]
    if is_service_error(error_type):
        delay *= config.SERVICE_ERROR_BACKOFF_MULTIPLIER
    else:
        delay *= config.CLIENT_ERROR_BACKOFF_MULTIPLIER

    if priority is Priority.URGENT:
        delay *= 0.8
    elif priority is Priority.HIGH:
        delay *= 0.9

    delay += rng.random() * config.JITTER_MAX_SECONDS
    return min(delay, config.MAX_RETRY_DELAY_SECONDS)


def calculate_retry_strategy(
    error: Any,
    retry_count: int,
    priority: Priority,
    rng: Optional[random.Random] = None,
    retry_after: Optional[float] = None,
) -> RetryDecision:
    """
    Decide how to handle a failed attempt.

    Args:
        error: Exception or error message from the failed attempt
        retry_count: Retries already used by this request
        priority: Current request priority
        rng: Randomness source for jitter
        retry_after: Provider-supplied minimum wait (seconds), if any

    Returns:
        RetryDecision. new_priority is never lower than priority.
    """
    error_type = classify_error(error)
    service_error = is_service_error(error_type)
    error_config = config.ERROR_TYPE_CONFIG.get(error_type, _DEFAULT_ERROR_CONFIG)
    max_retries = min(int(error_config["max_retries"]), config.MAX_RETRY_ATTEMPTS)

    if not is_recoverable(error_type) or retry_count >= max_retries:
        return RetryDecision(
            should_retry=False,
            new_priority=priority,
            backoff_seconds=0.0,
            max_retries=max_retries,
            error_type=error_type,
            is_service_error=service_error,
            escalation_reason="Non-recoverable error" if not is_recoverable(error_type)
            else "Maximum retry attempts exceeded",
        )

    upgrade_after = int(error_config["upgrade_after_attempts"])
    if not service_error:
        upgrade_after += 1

    new_priority = priority
    escalation = None
    if priority is Priority.NORMAL and retry_count + 1 >= upgrade_after:
        new_priority = Priority.HIGH
        escalation = f"Escalated to high after {retry_count + 1} failed attempt(s)"
    elif priority is Priority.HIGH and retry_count + 1 >= upgrade_after + 1:
        new_priority = Priority.URGENT
        escalation = f"Escalated to urgent after {retry_count + 1} failed attempt(s)"

    backoff = calculate_backoff(retry_count, error_type, new_priority, rng)
    if retry_after:
        backoff = min(max(backoff, retry_after), config.MAX_RETRY_DELAY_SECONDS)

    logger.debug(
        f"Retry decision: type={error_type} retry={retry_count + 1}/{max_retries} "
        f"priority={priority.value}->{new_priority.value} backoff={backoff:.2f}s"
    )
    return RetryDecision(
        should_retry=True,
        new_priority=new_priority,
        backoff_seconds=backoff,
        max_retries=max_retries,
        error_type=error_type,
        is_service_error=service_error,
        escalation_reason=escalation,
    )
