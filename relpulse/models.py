"""
Data model for the RelPulse analysis pipeline.

Analysis results are a tagged union: RemoteResult | FallbackResult. Both share
the AnalysisResult accessor surface (sentiment_score, confidence_level, ...)
and differ in their provider-specific metadata.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, List, Optional, Union


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"

    @property
    def rank(self) -> int:
        """Lower rank is dequeued first."""
        return _PRIORITY_RANK[self]

    def upgraded(self) -> "Priority":
        """Next priority class up (urgent stays urgent)."""
        if self is Priority.NORMAL:
            return Priority.HIGH
        return Priority.URGENT

    @classmethod
    def highest(cls, a: "Priority", b: "Priority") -> "Priority":
        return a if a.rank <= b.rank else b


_PRIORITY_RANK = {Priority.URGENT: 0, Priority.HIGH: 1, Priority.NORMAL: 2}


class RequestStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)


class AnalysisSource(str, Enum):
    REMOTE = "remote"
    FALLBACK = "fallback"


class FallbackTrigger(str, Enum):
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    GUARDRAIL_TRIPPED = "guardrail_tripped"
    RATE_LIMITED = "rate_limited"
    RETRY_EXHAUSTED = "retry_exhausted"
    API_UNAVAILABLE = "api_unavailable"
    MANUAL_REQUEST = "manual_request"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


# ============================================================================
# Queue
# ============================================================================

@dataclass
class AnalysisRequest:
    """One journal entry moving through the analysis queue."""

    entry_id: str
    user_id: str
    relationship_id: Optional[str] = None
    priority: Priority = Priority.NORMAL
    enqueued_at: float = 0.0
    attempts: int = 0
    status: RequestStatus = RequestStatus.QUEUED
    last_error_message: Optional[str] = None
    last_error_type: Optional[str] = None
    cancel_reason: Optional[str] = None
    processing_started_at: Optional[float] = None
    completed_at: Optional[float] = None
    available_at: Optional[float] = None
    generation: int = 0

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_reason is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisRequest":
        data = dict(data)
        data["priority"] = Priority(data.get("priority", "normal"))
        data["status"] = RequestStatus(data.get("status", "queued"))
        return cls(**data)


@dataclass
class EnqueueResult:
    status: str  # queued | skipped | rejected
    reason: Optional[str] = None
    request: Optional[AnalysisRequest] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.request is not None:
            data["entry_id"] = self.request.entry_id
            data["priority"] = self.request.priority.value
        return data


# ============================================================================
# Analysis results (tagged union)
# ============================================================================

@dataclass
class PatternSummary:
    recurring_themes: List[str] = field(default_factory=list)
    emotional_triggers: List[str] = field(default_factory=list)
    communication_style: str = "neutral"
    relationship_dynamics: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PatternSummary":
        if not data:
            return cls()
        return cls(
            recurring_themes=list(data.get("recurring_themes", [])),
            emotional_triggers=list(data.get("emotional_triggers", [])),
            communication_style=data.get("communication_style") or "neutral",
            relationship_dynamics=list(data.get("relationship_dynamics", [])),
        )


@dataclass
class AnalysisResult:
    """Fields common to every analysis, whatever produced it."""

    entry_id: str
    user_id: str
    sentiment_score: float
    confidence_level: float
    reasoning: str
    relationship_id: Optional[str] = None
    emotional_keywords: List[str] = field(default_factory=list)
    patterns: PatternSummary = field(default_factory=PatternSummary)
    status: str = "completed"
    processing_time_ms: float = 0.0
    created_at: float = 0.0

    source = AnalysisSource.REMOTE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        return data


@dataclass
class RemoteResult(AnalysisResult):
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None

    source = AnalysisSource.REMOTE


@dataclass
class FallbackMetadata:
    trigger: FallbackTrigger = FallbackTrigger.MANUAL_REQUEST
    quality_score: float = 0.0
    processing_time_ms: float = 0.0
    analysis_method: str = "keyword_pattern"
    is_valid: bool = True
    issues: List[str] = field(default_factory=list)
    mood_suggestion: Optional[str] = None
    trend_analysis: Optional[Dict[str, List[str]]] = None  # improving / declining / stable categories
    contextual_insights: List[str] = field(default_factory=list)
    recommendations: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["trigger"] = self.trigger.value
        return data


@dataclass
class FallbackResult(AnalysisResult):
    fallback_metadata: FallbackMetadata = field(default_factory=FallbackMetadata)

    source = AnalysisSource.FALLBACK

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["fallback_metadata"] = self.fallback_metadata.to_dict()
        return data


AnyAnalysisResult = Union[RemoteResult, FallbackResult]


def result_from_dict(data: Dict[str, Any]) -> AnyAnalysisResult:
    """Rebuild the right result variant from its stored dict form."""
    data = dict(data)
    source = data.pop("source", AnalysisSource.REMOTE.value)
    data["patterns"] = PatternSummary.from_dict(data.get("patterns"))
    if source == AnalysisSource.FALLBACK.value:
        meta = dict(data.pop("fallback_metadata", None) or {})
        if "trigger" in meta:
            meta["trigger"] = FallbackTrigger(meta["trigger"])
        data["fallback_metadata"] = FallbackMetadata(**meta)
        return FallbackResult(**data)
    data.pop("fallback_metadata", None)
    return RemoteResult(**data)


# ============================================================================
# Health score
# ============================================================================

FACTOR_NAMES = (
    "communication",
    "emotional_support",
    "conflict_resolution",
    "trust_intimacy",
    "shared_growth",
)


@dataclass
class FactorBreakdown:
    communication: int
    emotional_support: int
    conflict_resolution: int
    trust_intimacy: int
    shared_growth: int

    def as_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in FACTOR_NAMES}


@dataclass
class HealthScore:
    relationship_id: str
    score: int
    factor_breakdown: FactorBreakdown
    trend_direction: TrendDirection
    confidence: float
    contributing_factors: List[str]
    recommendations: List[str]
    entries_analyzed: int
    timeframe_start: float
    timeframe_end: float
    last_calculated: float
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["trend_direction"] = self.trend_direction.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthScore":
        data = dict(data)
        data["factor_breakdown"] = FactorBreakdown(**data["factor_breakdown"])
        data["trend_direction"] = TrendDirection(data["trend_direction"])
        return cls(**data)


@dataclass
class InsufficientData:
    relationship_id: str
    analyses_found: int
    required: int
    reason: str = "Insufficient data for health score calculation"

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, **asdict(self)}


@dataclass
class RecalculationSkipped:
    relationship_id: str
    reason: str = "Recalculation already in progress"

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, **asdict(self)}


# ============================================================================
# Circuit breaker
# ============================================================================

@dataclass
class CircuitBreakerState:
    service: str
    state: BreakerState
    consecutive_failures: int
    last_failure_at: Optional[float]
    last_success_at: Optional[float]
    opened_at: Optional[float] = None
    cooldown_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data
