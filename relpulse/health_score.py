"""
Relationship health score engine.

Turns the completed analyses of a relationship (trailing 60 days) into a
0-100 score with a five-factor breakdown, trend direction, confidence,
recommendations and contributing factors.

The scoring functions are pure: identical analyses, relationship type and
clock reading always give the identical HealthScore. HealthScoreEngine adds
persistence, per-relationship coalescing and the score-swing event.
"""

import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from . import config
from .models import (
    FACTOR_NAMES,
    AnyAnalysisResult,
    FactorBreakdown,
    HealthScore,
    InsufficientData,
    RecalculationSkipped,
    TrendDirection,
)

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

# ============================================================================
# CONFIGURABLE CONSTANTS
# ============================================================================

SENTIMENT_DEAD_ZONE = 0.2
RECENT_WINDOW = 5

# Factor bases and bonuses
COMMUNICATION_DEFAULT = 65
COMMUNICATION_BASE = 50
COLLABORATIVE_BONUS = 40
DIRECT_BONUS = 20

SUPPORT_BASE = 40
SUPPORT_THEME_BONUS = 15
SUPPORT_SENTIMENT_BONUS = 30
SUPPORT_THEMES = ("mutual_support", "empathy")

CONFLICT_DEFAULT = 75
CONFLICT_BASE = 80
CONFLICT_RATIO_PENALTY = 40
CONFLICT_RECOVERY_BONUS = 20
CONFLICT_RECOVERY_SENTIMENT = -0.5
CONFLICT_FLOOR = 20
CONFLICT_KEYWORDS = ("argue", "fight", "disagree", "conflict", "tension")

TRUST_BASE = 60
TRUST_MENTION_BONUS = 5
TRUST_MENTION_CAP = 30
TRUST_PARTNER_BONUS = 10
TRUST_COLLEAGUE_CAP = 85
INTIMACY_KEYWORDS = ("trust", "close", "intimate", "vulnerable", "open", "honest")

GROWTH_BASE = 45
GROWTH_THEME_BONUS = 10
GROWTH_MENTION_BONUS = 3
GROWTH_KEYWORDS = ("learn", "grow", "improve", "future", "goal", "plan")

# Trend and confidence
TREND_MIN_ANALYSES = 4
TREND_THRESHOLD = 0.15
CONFIDENCE_VOLUME_TARGET = 10
CONFIDENCE_RECENT_TARGET = 5
CONFIDENCE_RECENT_DAYS = 14
CONFIDENCE_SHORT_SPAN_DAYS = 14
CONFIDENCE_LONG_SPAN_DAYS = 90
CONFIDENCE_LONG_SPAN_FACTOR = 0.9

# Overall score adjustments
SENTIMENT_OFFSET_SCALE = 5
VOLATILITY_PENALTY_SCALE = 15
VOLATILITY_PENALTY_CAP = 10

# Recommendations / contributing factors
LOW_FACTOR_THRESHOLD = 60
STRONG_FACTOR_THRESHOLD = 75
WEAK_FACTOR_THRESHOLD = 50
HIGH_VOLATILITY = 0.6
LOW_VOLATILITY = 0.2
LOW_RECENT_SENTIMENT = -0.3
HIGH_RECENT_SENTIMENT = 0.5
MAX_RECOMMENDATIONS = 4
MAX_CONTRIBUTING_FACTORS = 6

FACTOR_RECOMMENDATIONS = {
    "communication": [
        "Schedule regular check-ins to improve communication quality",
        "Practice active listening during conversations",
    ],
    "emotional_support": [
        "Express empathy and validation more frequently",
        "Ask how you can better support each other during difficult times",
    ],
    "conflict_resolution": [
        "Learn healthy conflict resolution techniques together",
        "Establish ground rules for handling disagreements",
    ],
    "trust_intimacy": [
        "Share more personal thoughts and feelings",
        "Follow through consistently on commitments and promises",
    ],
    "shared_growth": [
        "Set mutual goals and discuss future aspirations",
        "Celebrate each other's personal achievements",
    ],
}

TREND_RECOMMENDATIONS = {
    TrendDirection.DECLINING: [
        "Consider having an open conversation about recent challenges",
        "Reflect on what has changed and what you both need right now",
    ],
    TrendDirection.IMPROVING: [
        "Acknowledge and celebrate the positive changes you've made",
        "Continue the behaviors and practices that are working well",
    ],
}


def _clamp_score(value: float) -> int:
    return int(round(max(0.0, min(100.0, value))))


def weights_for(rel_type: Optional[str]) -> Dict[str, float]:
    """Factor weights for a relationship type, normalized to sum to 1."""
    weights = config.RELATIONSHIP_WEIGHTS.get(rel_type or "default", config.RELATIONSHIP_WEIGHTS["default"])
    total = sum(weights.values())
    return {name: weights.get(name, 0.0) / total for name in FACTOR_NAMES}


# ============================================================================
# Scoring steps
# ============================================================================

def sentiment_progression(analyses: Sequence[AnyAnalysisResult]) -> Dict[str, Any]:
    """Overall vs recent average, volatility and polarity counts. Expects chronological order."""
    sentiments = np.array([a.sentiment_score for a in analyses], dtype=float)
    overall = float(sentiments.mean())
    recent = float(sentiments[-RECENT_WINDOW:].mean())
    return {
        "overall_average": overall,
        "recent_average": recent,
        "volatility": float(sentiments.std()),  # population std
        "trend": recent - overall,
        "positive_entries": int((sentiments > SENTIMENT_DEAD_ZONE).sum()),
        "negative_entries": int((sentiments < -SENTIMENT_DEAD_ZONE).sum()),
        "neutral_entries": int(((sentiments >= -SENTIMENT_DEAD_ZONE) & (sentiments <= SENTIMENT_DEAD_ZONE)).sum()),
    }


def factor_breakdown(analyses: Sequence[AnyAnalysisResult], rel_type: Optional[str]) -> FactorBreakdown:
    """Five factor scores, each clamped to [0, 100]."""
    keywords = [k.lower() for a in analyses for k in a.emotional_keywords]
    sentiments = [a.sentiment_score for a in analyses]

    # Communication: collaborative style counts most
    styles = [a.patterns.communication_style for a in analyses if a.patterns.communication_style]
    communication = COMMUNICATION_DEFAULT
    if styles:
        collaborative = styles.count("collaborative") / len(styles)
        direct = styles.count("direct") / len(styles)
        communication = COMMUNICATION_BASE + collaborative * COLLABORATIVE_BONUS + direct * DIRECT_BONUS

    # Emotional support
    support_themes = sum(
        1 for a in analyses if any(t in a.patterns.recurring_themes for t in SUPPORT_THEMES)
    )
    positives = [s for s in sentiments if s > 0]
    avg_positive = sum(positives) / max(1, len(positives))
    emotional_support = SUPPORT_BASE + support_themes * SUPPORT_THEME_BONUS + avg_positive * SUPPORT_SENTIMENT_BONUS

    # Conflict resolution: high by default, penalized by how often conflict shows up
    conflict_entries = [
        a for a in analyses if any(k.lower() in CONFLICT_KEYWORDS for k in a.emotional_keywords)
    ]
    conflict_resolution = CONFLICT_DEFAULT
    if conflict_entries:
        ratio = len(conflict_entries) / len(analyses)
        avg_conflict_sentiment = sum(a.sentiment_score for a in conflict_entries) / len(conflict_entries)
        recovery = CONFLICT_RECOVERY_BONUS if avg_conflict_sentiment > CONFLICT_RECOVERY_SENTIMENT else 0
        conflict_resolution = max(CONFLICT_FLOOR, CONFLICT_BASE - ratio * CONFLICT_RATIO_PENALTY + recovery)

    # Trust / intimacy, adjusted by relationship type
    intimacy_mentions = sum(1 for k in keywords if any(ik in k for ik in INTIMACY_KEYWORDS))
    trust_intimacy = TRUST_BASE + min(TRUST_MENTION_CAP, intimacy_mentions * TRUST_MENTION_BONUS)
    if rel_type == "partner":
        trust_intimacy += TRUST_PARTNER_BONUS
    elif rel_type == "colleague":
        trust_intimacy = min(trust_intimacy, TRUST_COLLEAGUE_CAP)

    # Shared growth
    growth_themes = sum(
        1 for a in analyses
        if "personal_growth" in a.patterns.recurring_themes
        or "building_connection" in a.patterns.relationship_dynamics
    )
    growth_mentions = sum(1 for k in keywords if any(gk in k for gk in GROWTH_KEYWORDS))
    shared_growth = GROWTH_BASE + growth_themes * GROWTH_THEME_BONUS + growth_mentions * GROWTH_MENTION_BONUS

    return FactorBreakdown(
        communication=_clamp_score(communication),
        emotional_support=_clamp_score(emotional_support),
        conflict_resolution=_clamp_score(conflict_resolution),
        trust_intimacy=_clamp_score(trust_intimacy),
        shared_growth=_clamp_score(shared_growth),
    )


def trend_direction(analyses: Sequence[AnyAnalysisResult]) -> TrendDirection:
    """First quarter vs last quarter mean sentiment. Expects chronological order."""
    if len(analyses) < TREND_MIN_ANALYSES:
        return TrendDirection.STABLE

    quarter = len(analyses) // 4
    sentiments = [a.sentiment_score for a in analyses]
    first = sum(sentiments[:quarter]) / quarter
    last = sum(sentiments[-quarter:]) / quarter
    difference = last - first

    if difference > TREND_THRESHOLD:
        return TrendDirection.IMPROVING
    if difference < -TREND_THRESHOLD:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def score_confidence(analyses: Sequence[AnyAnalysisResult], now: float) -> float:
    """
    Weighted confidence in [0, 1].

    0.3 volume + 0.3 recency + 0.3 mean analysis confidence + 0.1 time span.
    The span runs from the oldest to the newest analysis.
    """
    volume = min(1.0, len(analyses) / CONFIDENCE_VOLUME_TARGET)

    recent = sum(1 for a in analyses if now - a.created_at < CONFIDENCE_RECENT_DAYS * DAY_SECONDS)
    recency = min(1.0, recent / CONFIDENCE_RECENT_TARGET)

    avg_confidence = sum(a.confidence_level for a in analyses) / len(analyses)

    times = [a.created_at for a in analyses]
    span_days = (max(times) - min(times)) / DAY_SECONDS
    if span_days < CONFIDENCE_SHORT_SPAN_DAYS:
        span = span_days / CONFIDENCE_SHORT_SPAN_DAYS
    elif span_days > CONFIDENCE_LONG_SPAN_DAYS:
        span = CONFIDENCE_LONG_SPAN_FACTOR
    else:
        span = 1.0

    confidence = volume * 0.3 + recency * 0.3 + avg_confidence * 0.3 + span * 0.1
    return round(max(0.0, min(1.0, confidence)), 3)


def weighted_score(factors: FactorBreakdown, progression: Dict[str, Any], rel_type: Optional[str]) -> int:
    weights = weights_for(rel_type)
    base = sum(score * weights[name] for name, score in factors.as_dict().items())
    sentiment_offset = (progression["overall_average"] + 1) * SENTIMENT_OFFSET_SCALE
    volatility_penalty = min(VOLATILITY_PENALTY_CAP, progression["volatility"] * VOLATILITY_PENALTY_SCALE)
    return _clamp_score(base + sentiment_offset - volatility_penalty)


def recommendations_for(
    factors: FactorBreakdown,
    trend: TrendDirection,
    analyses: Sequence[AnyAnalysisResult],
) -> List[str]:
    """Up to four suggestions: weakest factor, trend, then recent sentiment."""
    recommendations: List[str] = []

    # min() keeps the first registered factor on ties
    lowest_name, lowest_score = min(factors.as_dict().items(), key=lambda kv: kv[1])
    if lowest_score < LOW_FACTOR_THRESHOLD:
        recommendations.extend(FACTOR_RECOMMENDATIONS[lowest_name])

    recommendations.extend(TREND_RECOMMENDATIONS.get(trend, []))

    recent = analyses[-RECENT_WINDOW:]
    avg_recent = sum(a.sentiment_score for a in recent) / len(recent)
    if avg_recent < LOW_RECENT_SENTIMENT:
        recommendations.append("Consider seeking professional relationship counseling if challenges persist")
    elif avg_recent > HIGH_RECENT_SENTIMENT:
        recommendations.append("Use this positive momentum to deepen your connection further")

    return recommendations[:MAX_RECOMMENDATIONS]


def contributing_factors(factors: FactorBreakdown, progression: Dict[str, Any]) -> List[str]:
    tags: List[str] = []
    breakdown = factors.as_dict()
    for name, score in breakdown.items():
        if score > STRONG_FACTOR_THRESHOLD:
            tags.append(f"Strong {name.replace('_', ' ')}")
    for name, score in breakdown.items():
        if score < WEAK_FACTOR_THRESHOLD:
            tags.append(f"{name.replace('_', ' ')} needs improvement")

    if progression["volatility"] > HIGH_VOLATILITY:
        tags.append("High emotional variability")
    elif progression["volatility"] < LOW_VOLATILITY:
        tags.append("Consistent emotional stability")

    if progression["positive_entries"] > progression["negative_entries"] * 2:
        tags.append("Predominantly positive interactions")
    elif progression["negative_entries"] > progression["positive_entries"]:
        tags.append("Frequent challenging interactions")

    return tags[:MAX_CONTRIBUTING_FACTORS]


def calculate_health_score(
    relationship_id: str,
    analyses: Sequence[AnyAnalysisResult],
    rel_type: Optional[str],
    now: float,
    timeframe_start: float,
    user_id: Optional[str] = None,
) -> HealthScore:
    """Compute a HealthScore from at least two completed analyses (any order)."""
    ordered = sorted(analyses, key=lambda a: (a.created_at, a.entry_id))
    progression = sentiment_progression(ordered)
    factors = factor_breakdown(ordered, rel_type)
    trend = trend_direction(ordered)

    return HealthScore(
        relationship_id=relationship_id,
        score=weighted_score(factors, progression, rel_type),
        factor_breakdown=factors,
        trend_direction=trend,
        confidence=score_confidence(ordered, now),
        contributing_factors=contributing_factors(factors, progression),
        recommendations=recommendations_for(factors, trend, ordered),
        entries_analyzed=len(ordered),
        timeframe_start=timeframe_start,
        timeframe_end=now,
        last_calculated=now,
        user_id=user_id,
    )


# ============================================================================
# Engine
# ============================================================================

RecalculationOutcome = Union[HealthScore, InsufficientData, RecalculationSkipped]


class HealthScoreEngine:
    """Recalculates, stores and summarizes health scores."""

    def __init__(
        self,
        store,
        notifier=None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        window_days: int = None,
        min_analyses: int = None,
        swing_threshold: int = None,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or time.time
        self.rng = rng or random.Random()
        self.window_days = window_days or config.HEALTH_WINDOW_DAYS
        self.min_analyses = min_analyses or config.HEALTH_MIN_ANALYSES
        self.swing_threshold = swing_threshold if swing_threshold is not None else config.HEALTH_SWING_THRESHOLD

        self._in_flight = set()
        self._lock = threading.Lock()

    def recalculate(self, relationship_id: str) -> RecalculationOutcome:
        """
        Recompute and overwrite the score for one relationship.

        A second call for the same relationship while one is running returns
        RecalculationSkipped instead of racing on the stored row.
        """
        with self._lock:
            if relationship_id in self._in_flight:
                logger.info(f"Recalculation for {relationship_id} already in progress, skipping")
                return RecalculationSkipped(relationship_id)
            self._in_flight.add(relationship_id)

        try:
            return self._recalculate(relationship_id)
        finally:
            with self._lock:
                self._in_flight.discard(relationship_id)

    def _recalculate(self, relationship_id: str) -> RecalculationOutcome:
        now = self.clock()
        timeframe_start = now - self.window_days * DAY_SECONDS
        analyses = self.store.list_analyses(relationship_id, since=timeframe_start)

        if len(analyses) < self.min_analyses:
            logger.info(
                f"Insufficient data for {relationship_id}: {len(analyses)} analyses, need {self.min_analyses}"
            )
            return InsufficientData(relationship_id, analyses_found=len(analyses), required=self.min_analyses)

        relationship = self.store.get_relationship(relationship_id)
        if relationship is None or not relationship["is_active"]:
            return RecalculationSkipped(relationship_id, reason="Relationship not found or inactive")

        previous = self.store.get_health_score(relationship_id)
        health = calculate_health_score(
            relationship_id,
            analyses,
            relationship["type"],
            now=now,
            timeframe_start=timeframe_start,
            user_id=relationship["user_id"],
        )
        self.store.save_health_score(health)

        logger.info(
            f"Health score for {relationship_id}: {health.score} ({health.trend_direction.value}, "
            f"confidence {health.confidence:.2f}, {health.entries_analyzed} analyses)"
        )

        if previous is not None and abs(previous.score - health.score) > self.swing_threshold:
            self._emit_swing(previous, health)
        return health

    def _emit_swing(self, previous: HealthScore, current: HealthScore):
        logger.info(f"Health score swing for {current.relationship_id}: {previous.score} -> {current.score}")
        if self.notifier is None:
            return
        self.notifier.emit("health_score_changed", {
            "relationship_id": current.relationship_id,
            "user_id": current.user_id,
            "previous_score": previous.score,
            "score": current.score,
            "trend_direction": current.trend_direction.value,
        })

    def get_by_relationship(self, relationship_id: str) -> Optional[Dict[str, Any]]:
        health = self.store.get_health_score(relationship_id)
        if health is None:
            return None
        age = self.clock() - health.last_calculated
        data = health.to_dict()
        data["is_stale"] = age > config.HEALTH_STALE_DAYS * DAY_SECONDS
        data["days_old"] = int(age // DAY_SECONDS)
        return data

    def get_summary(self, user_id: str) -> Dict[str, Any]:
        """Dashboard roll-up of every active relationship's score for a user."""
        scores = self.store.list_health_scores(user_id)
        distribution = {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
        if not scores:
            return {
                "total_relationships": 0,
                "average_score": 0,
                "healthy_relationships": 0,
                "needs_attention": 0,
                "improving": 0,
                "declining": 0,
                "stable": 0,
                "score_distribution": distribution,
                "top_performing_relationship": None,
                "relationship_needing_attention": None,
            }

        for hs in scores:
            if hs.score >= 85:
                distribution["excellent"] += 1
            elif hs.score >= 70:
                distribution["good"] += 1
            elif hs.score >= 50:
                distribution["fair"] += 1
            else:
                distribution["poor"] += 1

        trends = [hs.trend_direction for hs in scores]
        ranked = sorted(scores, key=lambda hs: hs.score, reverse=True)
        top, bottom = ranked[0], ranked[-1]

        def brief(hs: HealthScore) -> Dict[str, Any]:
            return {
                "relationship_id": hs.relationship_id,
                "score": hs.score,
                "trend_direction": hs.trend_direction.value,
            }

        return {
            "total_relationships": len(scores),
            "average_score": int(round(sum(hs.score for hs in scores) / len(scores))),
            "healthy_relationships": distribution["excellent"] + distribution["good"],
            "needs_attention": distribution["poor"],
            "improving": trends.count(TrendDirection.IMPROVING),
            "declining": trends.count(TrendDirection.DECLINING),
            "stable": trends.count(TrendDirection.STABLE),
            "score_distribution": distribution,
            "top_performing_relationship": brief(top),
            "relationship_needing_attention": brief(bottom) if bottom.score < LOW_FACTOR_THRESHOLD else None,
        }

    def force_recalculate(self, user_id: str, relationship_id: Optional[str] = None) -> List[Tuple[str, float]]:
        """
        Plan recalculation of one relationship (immediately) or all of a
        user's active relationships (each with up to BULK_RECALC_MAX_JITTER_SECONDS of jitter).

        Returns (relationship_id, delay_seconds) pairs for the caller to schedule.
        """
        if relationship_id is not None:
            return [(relationship_id, 0.0)]
        relationships = self.store.list_relationships(user_id=user_id, active_only=True)
        return [
            (rel["id"], self.rng.random() * config.BULK_RECALC_MAX_JITTER_SECONDS)
            for rel in relationships
        ]

    def plan_bulk_recalculation(
        self,
        batch_size: int = None,
        delay_seconds: float = None,
        max_jitter_seconds: float = None,
    ) -> Dict[str, Any]:
        """
        Plan recalculation of every active relationship.

        Delay grows by delay_seconds per relationship, plus random jitter, so
        the remote provider and the store never see a burst.
        """
        batch_size = batch_size or config.BULK_RECALC_BATCH_SIZE
        delay_seconds = delay_seconds if delay_seconds is not None else config.BULK_RECALC_DELAY_SECONDS
        max_jitter = max_jitter_seconds if max_jitter_seconds is not None else config.BULK_RECALC_MAX_JITTER_SECONDS

        relationships = self.store.list_relationships(active_only=True)
        schedule = []
        for index, rel in enumerate(relationships):
            delay = index * delay_seconds + self.rng.random() * max_jitter
            schedule.append({
                "relationship_id": rel["id"],
                "user_id": rel["user_id"],
                "batch": index // batch_size,
                "delay_seconds": round(delay, 3),
            })

        return {
            "total_relationships": len(relationships),
            "batches_scheduled": -(-len(relationships) // batch_size),
            "schedule": schedule,
        }
