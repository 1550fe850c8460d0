"""
Error taxonomy for RelPulse.

Transient provider failures are retried and eventually degrade to local
fallback analysis. Validation, authentication and missing-record failures
are terminal and never retried.
"""

from typing import Optional


class RelPulseError(Exception):
    """Base class for all RelPulse errors."""

    error_type = "unknown"
    transient = False


# ============================================================================
# Remote provider errors
# ============================================================================

class ProviderError(RelPulseError):
    """Transient failure talking to the remote analysis provider."""

    error_type = "service_error"
    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    error_type = "timeout"


class ProviderUnavailable(ProviderError):
    """Network-level failure (connection refused, DNS, reset)."""

    error_type = "network"


class ProviderServerError(ProviderError):
    error_type = "service_error"


class RateLimited(ProviderError):
    """Provider returned 429 or a quota error."""

    error_type = "rate_limit"

    def __init__(self, message: str, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ProviderValidationError(RelPulseError):
    """Provider rejected the content (bad request, blocked content)."""

    error_type = "validation"


class ProviderAuthError(RelPulseError):
    error_type = "authentication"


# ============================================================================
# Pipeline errors
# ============================================================================

class EntryNotFound(RelPulseError):
    """Journal entry or analysis record is missing."""

    error_type = "not_found"


class QueueFullError(RelPulseError):
    error_type = "queue_full"


class InvalidTransition(RelPulseError):
    """Requested state change is not allowed from the current status."""

    error_type = "invalid_transition"
