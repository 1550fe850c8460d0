"""
Configuration module for RelPulse
Loads environment variables and provides default settings
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Remote analysis provider (Gemini generateContent)
REMOTE_API_KEY = os.getenv("REMOTE_API_KEY", os.getenv("GOOGLE_GEMINI_API_KEY", ""))
REMOTE_MODEL = os.getenv("REMOTE_MODEL", "gemini-1.5-flash")
# {model} is filled in per request
REMOTE_API_URL = os.getenv(
    "REMOTE_API_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
)
API_TIMEOUT = int(os.getenv("API_TIMEOUT", "30"))
REMOTE_MOCK_MODE = os.getenv("REMOTE_MOCK_MODE", "False").lower() == "true"
REMOTE_COST_PER_1K_TOKENS = float(os.getenv("REMOTE_COST_PER_1K_TOKENS", "0.00015"))

# Storage
DB_PATH = os.getenv("DB_PATH", str(PROJECT_ROOT / "relpulse.db"))

# Redis configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/1")
PUBLISH_EVENTS_TO_REDIS = os.getenv("PUBLISH_EVENTS_TO_REDIS", "False").lower() == "true"
EVENT_CHANNEL = os.getenv("EVENT_CHANNEL", "relpulse:events")

# Celery Configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
BROKER_POOL_LIMIT = int(os.getenv("BROKER_POOL_LIMIT", "3"))
BROKER_CONNECTION_RETRY = os.getenv("BROKER_CONNECTION_RETRY", "True").lower() == "true"
# Trigger a Celery queue drain when the API enqueues (beat drains every minute regardless)
ASYNC_PROCESSING = os.getenv("ASYNC_PROCESSING", "True").lower() == "true"

# Dev server
DEV_USE_RELOADER = os.getenv("RELPULSE_DEV_RELOAD", "True").lower() == "true"

# Decision logging (debug mode)
DEBUG_ROUTING_DECISIONS = os.getenv("DEBUG_ROUTING_DECISIONS", "False").lower() == "true"

# ============================================================================
# Analysis Queue
# ============================================================================

MAX_QUEUE_SIZE = int(os.getenv("MAX_QUEUE_SIZE", "1000"))
MAX_CONCURRENT_PROCESSING = int(os.getenv("MAX_CONCURRENT_PROCESSING", "10"))
MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
BULK_RETRY_LIMIT = int(os.getenv("BULK_RETRY_LIMIT", "10"))

# Initial dispatch delay per priority class (seconds)
PRIORITY_DELAYS = {
    "urgent": 0.0,
    "high": float(os.getenv("HIGH_PRIORITY_DELAY_SECONDS", "1.0")),
    "normal": float(os.getenv("NORMAL_PRIORITY_DELAY_SECONDS", "5.0")),
}

# Retry backoff
RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))
JITTER_MAX_SECONDS = float(os.getenv("JITTER_MAX_SECONDS", "1.0"))
MAX_RETRY_DELAY_SECONDS = float(os.getenv("MAX_RETRY_DELAY_SECONDS", "300"))
SERVICE_ERROR_BACKOFF_MULTIPLIER = float(os.getenv("SERVICE_ERROR_BACKOFF_MULTIPLIER", "2.0"))
CLIENT_ERROR_BACKOFF_MULTIPLIER = float(os.getenv("CLIENT_ERROR_BACKOFF_MULTIPLIER", "1.0"))

# Per error type: how many retries, how hard to back off, when to escalate priority
ERROR_TYPE_CONFIG: Dict[str, Dict[str, float]] = {
    "timeout": {"max_retries": 5, "backoff_multiplier": 1.5, "upgrade_after_attempts": 2},
    "network": {"max_retries": 4, "backoff_multiplier": 2.0, "upgrade_after_attempts": 1},
    "rate_limit": {"max_retries": 3, "backoff_multiplier": 3.0, "upgrade_after_attempts": 1},
    "service_error": {"max_retries": 4, "backoff_multiplier": 2.0, "upgrade_after_attempts": 2},
    "validation": {"max_retries": 0, "backoff_multiplier": 1.0, "upgrade_after_attempts": 0},
    "authentication": {"max_retries": 0, "backoff_multiplier": 1.0, "upgrade_after_attempts": 0},
    "not_found": {"max_retries": 0, "backoff_multiplier": 1.0, "upgrade_after_attempts": 0},
}

# Queue maintenance
MAX_ITEM_AGE_HOURS = float(os.getenv("MAX_ITEM_AGE_HOURS", "24"))
# Must outlive a remote call, or a healthy dispatch is recovered as stuck
PROCESSING_TIMEOUT_SECONDS = float(os.getenv("PROCESSING_TIMEOUT_SECONDS", str(API_TIMEOUT * 2)))
AGING_UPGRADE_SECONDS = float(os.getenv("AGING_UPGRADE_SECONDS", "600"))
QUEUE_NEAR_CAPACITY_RATIO = 0.8

# ============================================================================
# Circuit Breaker & Guardrail
# ============================================================================

BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
BREAKER_COOLDOWN_SECONDS = float(os.getenv("BREAKER_COOLDOWN_SECONDS", "60"))
BREAKER_MAX_COOLDOWN_SECONDS = float(os.getenv("BREAKER_MAX_COOLDOWN_SECONDS", "600"))

GUARDRAIL_WINDOW_SECONDS = float(os.getenv("GUARDRAIL_WINDOW_SECONDS", "600"))
GUARDRAIL_MIN_SUCCESS_RATE = float(os.getenv("GUARDRAIL_MIN_SUCCESS_RATE", "0.90"))
GUARDRAIL_LATENCY_BASELINE_MS = float(os.getenv("GUARDRAIL_LATENCY_BASELINE_MS", "3000"))
GUARDRAIL_LATENCY_MARGIN = float(os.getenv("GUARDRAIL_LATENCY_MARGIN", "1.5"))
GUARDRAIL_MIN_SAMPLES = int(os.getenv("GUARDRAIL_MIN_SAMPLES", "10"))

# ============================================================================
# Health Score Engine
# ============================================================================

HEALTH_WINDOW_DAYS = int(os.getenv("HEALTH_WINDOW_DAYS", "60"))
HEALTH_MIN_ANALYSES = int(os.getenv("HEALTH_MIN_ANALYSES", "2"))
HEALTH_SWING_THRESHOLD = int(os.getenv("HEALTH_SWING_THRESHOLD", "10"))
HEALTH_STALE_DAYS = int(os.getenv("HEALTH_STALE_DAYS", "7"))

RECALC_DELAY_SECONDS = float(os.getenv("RECALC_DELAY_SECONDS", "2.0"))
BULK_RECALC_BATCH_SIZE = int(os.getenv("BULK_RECALC_BATCH_SIZE", "10"))
BULK_RECALC_DELAY_SECONDS = float(os.getenv("BULK_RECALC_DELAY_SECONDS", "2.0"))
BULK_RECALC_MAX_JITTER_SECONDS = float(os.getenv("BULK_RECALC_MAX_JITTER_SECONDS", "5.0"))

# Factor weights per relationship type (each set sums to 1.0)
RELATIONSHIP_WEIGHTS: Dict[str, Dict[str, float]] = {
    "default": {
        "communication": 0.25,
        "emotional_support": 0.25,
        "conflict_resolution": 0.20,
        "trust_intimacy": 0.15,
        "shared_growth": 0.15,
    },
    "partner": {
        "communication": 0.20,
        "emotional_support": 0.20,
        "conflict_resolution": 0.20,
        "trust_intimacy": 0.20,
        "shared_growth": 0.20,
    },
    "family": {
        "communication": 0.20,
        "emotional_support": 0.30,
        "conflict_resolution": 0.25,
        "trust_intimacy": 0.125,
        "shared_growth": 0.125,
    },
    "colleague": {
        "communication": 0.35,
        "emotional_support": 0.15,
        "conflict_resolution": 0.25,
        "trust_intimacy": 0.10,
        "shared_growth": 0.15,
    },
}

# ============================================================================
# Monitoring
# ============================================================================

FAILURE_SWEEP_INTERVAL_MINUTES = int(os.getenv("FAILURE_SWEEP_INTERVAL_MINUTES", "10"))
FAILURE_SWEEP_WINDOW_MINUTES = int(os.getenv("FAILURE_SWEEP_WINDOW_MINUTES", "30"))
FAILURE_SPIKE_THRESHOLD = int(os.getenv("FAILURE_SPIKE_THRESHOLD", "10"))

SUCCESS_RATE_THRESHOLDS = {
    "warning": float(os.getenv("SUCCESS_RATE_WARNING", "0.92")),
    "critical": float(os.getenv("SUCCESS_RATE_CRITICAL", "0.90")),
    "emergency": float(os.getenv("SUCCESS_RATE_EMERGENCY", "0.85")),
}


def get_config_summary() -> Dict[str, Any]:
    """Return a summary of current configuration."""
    return {
        "remote": {
            "model": REMOTE_MODEL,
            "url": REMOTE_API_URL,
            "timeout": API_TIMEOUT,
            "mock_mode": REMOTE_MOCK_MODE,
            "api_key_set": bool(REMOTE_API_KEY),
        },
        "storage": {
            "db_path": DB_PATH,
            "redis_url": REDIS_URL,
            "publish_events": PUBLISH_EVENTS_TO_REDIS,
        },
        "queue": {
            "max_size": MAX_QUEUE_SIZE,
            "max_concurrent": MAX_CONCURRENT_PROCESSING,
            "max_retry_attempts": MAX_RETRY_ATTEMPTS,
            "bulk_retry_limit": BULK_RETRY_LIMIT,
            "max_retry_delay_seconds": MAX_RETRY_DELAY_SECONDS,
        },
        "breaker": {
            "failure_threshold": BREAKER_FAILURE_THRESHOLD,
            "cooldown_seconds": BREAKER_COOLDOWN_SECONDS,
            "max_cooldown_seconds": BREAKER_MAX_COOLDOWN_SECONDS,
        },
        "guardrail": {
            "window_seconds": GUARDRAIL_WINDOW_SECONDS,
            "min_success_rate": GUARDRAIL_MIN_SUCCESS_RATE,
            "latency_baseline_ms": GUARDRAIL_LATENCY_BASELINE_MS,
            "latency_margin": GUARDRAIL_LATENCY_MARGIN,
        },
        "health": {
            "window_days": HEALTH_WINDOW_DAYS,
            "min_analyses": HEALTH_MIN_ANALYSES,
            "swing_threshold": HEALTH_SWING_THRESHOLD,
            "weights": RELATIONSHIP_WEIGHTS,
        },
        "monitoring": {
            "sweep_interval_minutes": FAILURE_SWEEP_INTERVAL_MINUTES,
            "sweep_window_minutes": FAILURE_SWEEP_WINDOW_MINUTES,
            "success_rate_thresholds": SUCCESS_RATE_THRESHOLDS,
        },
    }


def validate_config() -> tuple[bool, str]:
    """Validate configuration. Returns (is_valid, message)."""
    if not REMOTE_API_KEY and not REMOTE_MOCK_MODE:
        return False, "REMOTE_API_KEY not set in .env file (required unless REMOTE_MOCK_MODE=True)"

    for rel_type, weights in RELATIONSHIP_WEIGHTS.items():
        total_weight = sum(weights.values())
        if abs(total_weight - 1.0) > 0.01:
            return False, f"Weights for '{rel_type}' sum to {total_weight:.2f}, should be ~1.0"

    if not 0.0 < GUARDRAIL_MIN_SUCCESS_RATE <= 1.0:
        return False, f"GUARDRAIL_MIN_SUCCESS_RATE must be in (0, 1], got {GUARDRAIL_MIN_SUCCESS_RATE}"

    if BREAKER_FAILURE_THRESHOLD < 1:
        return False, "BREAKER_FAILURE_THRESHOLD must be at least 1"

    if BREAKER_MAX_COOLDOWN_SECONDS < BREAKER_COOLDOWN_SECONDS:
        return False, "BREAKER_MAX_COOLDOWN_SECONDS must not be below BREAKER_COOLDOWN_SECONDS"

    if PROCESSING_TIMEOUT_SECONDS <= API_TIMEOUT:
        return False, (f"PROCESSING_TIMEOUT_SECONDS ({PROCESSING_TIMEOUT_SECONDS}) must exceed "
                       f"API_TIMEOUT ({API_TIMEOUT})")

    return True, "Configuration valid"


if __name__ == "__main__":
    # Print config summary for debugging
    import json
    print("RelPulse Configuration:")
    print(json.dumps(get_config_summary(), indent=2))
    print()
    valid, msg = validate_config()
    print(f"Validation: {msg}")
