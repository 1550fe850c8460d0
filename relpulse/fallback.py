"""
Fallback sentiment estimator for RelPulse

Network-free analysis used when the remote provider is degraded, disabled or
explicitly bypassed. Combines weighted keyword buckets, a few linguistic rules,
an optional mood lookup and the pattern analyzer into a FallbackResult.

run_fallback_analysis() never raises: any internal failure degrades to a
neutral, low-confidence result tagged with the reason.
"""

import re
import time
import logging
from typing import Dict, Any, List, Optional

from .models import (
    FallbackMetadata,
    FallbackResult,
    FallbackTrigger,
    PatternSummary,
    Priority,
    RemoteResult,
)
from .pattern_analyzer import analyze_patterns, generate_pattern_recommendations, trend_context

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURABLE CONSTANTS
# ============================================================================

POSITIVE_KEYWORDS = {
    "love": 2.0, "amazing": 1.8, "wonderful": 1.6, "ecstatic": 1.9, "blissful": 1.7,
    "overjoyed": 1.8, "thrilled": 1.5, "grateful": 1.4, "fulfilled": 1.5,
    "happy": 1.0, "joy": 1.0, "excited": 1.0, "great": 1.0, "fantastic": 1.0,
    "blessed": 1.0, "content": 1.0, "peaceful": 1.0, "delighted": 1.0, "cheerful": 1.0,
    "optimistic": 1.0, "hopeful": 1.0, "confident": 1.0, "proud": 1.0,
}

NEGATIVE_KEYWORDS = {
    "hate": -2.0, "terrible": -1.8, "awful": -1.6, "devastated": -1.9, "heartbroken": -1.8,
    "despair": -1.7, "betrayed": -1.6, "miserable": -1.5, "suffering": -1.4,
    "sad": -1.0, "angry": -1.0, "frustrated": -1.0, "disappointed": -1.0, "depressed": -1.0,
    "lonely": -1.0, "isolated": -1.0, "anxious": -1.0, "worried": -1.0, "stressed": -1.0,
    "overwhelmed": -1.0, "exhausted": -1.0, "bitter": -1.0, "resentful": -1.0, "hurt": -1.0,
}

RELATIONSHIP_POSITIVE_KEYWORDS = {
    "trust": 1.5, "intimacy": 1.4, "connection": 1.3, "understanding": 1.3,
    "communication": 1.2, "forgiveness": 1.4, "breakthrough": 1.3,
    "support": 1.1, "closeness": 1.1, "bond": 1.1, "partnership": 1.1, "teamwork": 1.1,
    "respect": 1.1, "appreciation": 1.1, "affection": 1.1, "commitment": 1.1,
    "caring": 1.1, "growth": 1.1, "progress": 1.1, "resolution": 1.1,
}

# The "conflict" bucket
RELATIONSHIP_NEGATIVE_KEYWORDS = {
    "betrayal": -1.8, "infidelity": -1.9, "divorce": -1.7, "breakup": -1.6,
    "abandonment": -1.5, "rejection": -1.4, "conflict": -1.3, "fight": -1.2,
    "argument": -1.1, "argue": -1.1, "disagree": -1.1, "tension": -1.1, "distance": -1.1,
    "misunderstanding": -1.1, "friction": -1.1, "resentment": -1.1, "jealousy": -1.1,
    "mistrust": -1.1, "neglect": -1.1, "lies": -1.1,
}

MOOD_INDICATORS = {
    "joyful": ["celebration", "laughter", "smile", "giggle", "grin"],
    "content": ["calm", "serene", "relaxed", "comfortable"],
    "excited": ["adventure", "surprise", "spontaneous", "eager"],
    "grateful": ["thankful", "appreciate", "fortunate", "lucky"],
    "hopeful": ["future", "plans", "dreams", "goals"],
    "sad": ["tears", "cry", "cried", "mourn", "grieve"],
    "anxious": ["worry", "fear", "nervous", "uneasy", "restless"],
    "angry": ["rage", "fury", "mad", "irritated", "annoyed"],
    "frustrated": ["blocked", "obstacle", "barrier", "difficulty"],
    "lonely": ["alone", "abandoned", "solitary"],
}

MOOD_SCORES = {
    "excited": 1.0, "ecstatic": 1.0, "grateful": 0.8, "joyful": 0.8, "happy": 0.6,
    "content": 0.4, "calm": 0.2, "neutral": 0.0, "confused": -0.1, "concerned": -0.2,
    "anxious": -0.3, "sad": -0.4, "frustrated": -0.6, "angry": -0.8, "devastated": -1.0,
}

NEGATION_WORDS = ["not", "never", "no", "nothing", "nobody", "none"]
INTENSIFIERS = ["very", "extremely", "incredibly", "absolutely", "completely", "totally"]
DIMINISHERS = ["slightly", "somewhat", "a bit", "kind of", "sort of"]

SENTIMENT_DEAD_ZONE = 0.2
MAX_KEYWORDS = 10

# Tag extraction consumed by the health score engine
THEME_KEYWORDS = {
    "mutual_support": ["support", "help", "there for"],
    "quality_time": ["time together", "quality time"],
    "communication": ["communicate", "talk"],
    "empathy": ["understand", "listen"],
    "personal_growth": ["learn", "grow", "improve"],
}
TRIGGER_KEYWORDS = {
    "work_stress": ["work", "job", "career"],
    "family_dynamics": ["family", "parents"],
    "financial_concerns": ["money", "financial"],
    "time_pressure": ["busy", "no time"],
}

MIN_STORE_CONFIDENCE = 0.3
UPGRADE_QUALITY_THRESHOLD = 0.7


def _contains_word(text: str, word: str, whole: bool = False) -> bool:
    suffix = r"\b" if whole else ""
    return re.search(rf"\b{re.escape(word)}{suffix}", text) is not None


def analyze_sentiment_keywords(text: str) -> Dict[str, Any]:
    """
    Rule-based sentiment over keyword buckets plus linguistic adjustments.

    Returns:
        Dict with sentiment, normalized_score, confidence_score, keywords_matched,
        rules_fired, insights and mood_suggestion
    """
    content = (text or "").lower().strip()
    words = content.split()

    score = 0.0
    weight = 0.0
    matched: List[str] = []

    for bucket in (POSITIVE_KEYWORDS, NEGATIVE_KEYWORDS, RELATIONSHIP_POSITIVE_KEYWORDS, RELATIONSHIP_NEGATIVE_KEYWORDS):
        for keyword, keyword_weight in bucket.items():
            if _contains_word(content, keyword):
                score += keyword_weight
                weight += abs(keyword_weight)
                matched.append(keyword)

    rules: List[str] = []
    insights: List[str] = []

    if any(_contains_word(content, neg, whole=True) for neg in NEGATION_WORDS):
        score = -abs(score) * 0.5 if score > 0 else score
        score -= 0.5
        weight += 0.5
        rules.append("negation_adjustment")

    multiplier = 1.0
    if any(_contains_word(content, w, whole=True) for w in INTENSIFIERS):
        multiplier = 1.3
        rules.append("intensity_boost")
    if any(w in content for w in DIMINISHERS):
        multiplier = 0.7
        rules.append("intensity_reduction")
    score *= multiplier

    questions = content.count("?")
    if questions:
        score -= questions * 0.1
        weight += questions * 0.1
        rules.append("question_uncertainty")
        insights.append("Questions indicate reflection or uncertainty")

    exclamations = content.count("!")
    if exclamations:
        boost = min(exclamations * 0.2, 0.6)
        if score > 0:
            score += boost
        elif score < 0:
            score -= boost
        weight += boost
        rules.append("exclamation_emphasis")
        insights.append("Strong emotional expression detected")

    if len(words) < 10:
        weight *= 0.7
        rules.append("short_entry_adjustment")
    elif len(words) > 50:
        weight *= 1.2
        rules.append("detailed_entry_boost")

    normalized = score / weight if weight > 0 else 0.0
    normalized = max(-1.0, min(1.0, normalized))

    if normalized > SENTIMENT_DEAD_ZONE:
        sentiment = "positive"
    elif normalized < -SENTIMENT_DEAD_ZONE:
        sentiment = "negative"
    else:
        sentiment = "neutral"

    confidence = min(weight / 3, 0.6)
    if matched:
        confidence += 0.1
    if rules:
        confidence += 0.1
    if len(words) >= 20:
        confidence += 0.05
    elif len(words) < 10:
        confidence -= 0.1
    confidence = max(0.1, min(0.9, confidence))

    return {
        "sentiment": sentiment,
        "normalized_score": normalized,
        "confidence_score": confidence,
        "keywords_matched": matched,
        "rules_fired": rules,
        "insights": insights,
        "mood_suggestion": suggest_mood(content, sentiment, normalized),
    }


def suggest_mood(content: str, sentiment: str, score: float) -> str:
    for mood, keywords in MOOD_INDICATORS.items():
        if any(_contains_word(content, k, whole=True) for k in keywords):
            return mood

    if sentiment == "positive":
        return "joyful" if score > 0.7 else "content" if score > 0.4 else "hopeful"
    if sentiment == "negative":
        return "sad" if score < -0.7 else "frustrated" if score < -0.4 else "anxious"
    return "content"


def mood_score(mood: Optional[str]) -> Optional[float]:
    """Map a self-reported mood to [-1, 1]; None for unknown moods."""
    if not mood:
        return None
    return MOOD_SCORES.get(mood.strip().lower())


# ============================================================================
# Pattern tags
# ============================================================================

def extract_themes(content: str, pattern_analysis: Dict[str, Any]) -> List[str]:
    themes = [t for t, keys in THEME_KEYWORDS.items() if any(k in content for k in keys)]
    names = {m["name"] for m in pattern_analysis["matches"]}
    if "stress_support" in names and "mutual_support" not in themes:
        themes.append("mutual_support")
    if "active_listening" in names and "empathy" not in themes:
        themes.append("empathy")
    if names & {"personal_growth", "learning_together"} and "personal_growth" not in themes:
        themes.append("personal_growth")
    return themes


def extract_triggers(content: str, pattern_analysis: Dict[str, Any], rules_fired: List[str]) -> List[str]:
    triggers = [t for t, keys in TRIGGER_KEYWORDS.items() if any(_contains_word(content, k) for k in keys)]
    for match in pattern_analysis["matches"]:
        if match["sentiment"] != "negative":
            continue
        tag = {
            "conflict": "conflict_situations",
            "communication": "communication_difficulties",
            "stress": "external_stressors",
        }.get(match["category"])
        if tag and tag not in triggers:
            triggers.append(tag)
    if "question_uncertainty" in rules_fired:
        triggers.append("uncertainty")
    return triggers


def detect_communication_style(content: str, pattern_analysis: Dict[str, Any]) -> str:
    if any(p in content for p in ("we talked", "we discussed", "discussed our", "talked it through")):
        return "collaborative"
    names = {m["name"] for m in pattern_analysis["matches"]}
    if names & {"open_dialogue", "active_listening", "constructive_conflict"}:
        return "collaborative"
    if "i told" in content or "i said" in content:
        return "direct"
    if names & {"heated_argument"} or "argue" in content or "fight" in content:
        return "confrontational"
    return "neutral"


def extract_dynamics(pattern_analysis: Dict[str, Any]) -> List[str]:
    dynamics = []
    for category, score in pattern_analysis["category_scores"].items():
        if score > 0.5:
            dynamics.append(f"positive_{category}")
        elif score < -0.5:
            dynamics.append(f"{category}_challenges")
    names = {m["name"] for m in pattern_analysis["matches"]}
    if names & {"relationship_growth", "learning_together", "emotional_intimacy", "quality_time"}:
        dynamics.append("building_connection")
    return dynamics


# ============================================================================
# Quality
# ============================================================================

def validate_fallback_result(
    confidence: float,
    keywords_matched: List[str],
    rules_fired: List[str],
    pattern_matches: List[str],
    insights: List[str],
    processing_time_ms: float,
) -> Dict[str, Any]:
    """
    Score the quality of a fallback analysis.

    Returns:
        Dict with is_valid, quality_score (0-1) and issues
    """
    issues = []
    quality = 0.5

    if confidence < 0.2:
        issues.append("Very low confidence score")
        quality -= 0.2
    elif confidence > 0.6:
        quality += 0.1

    signal_types = sum(1 for signal in (keywords_matched, rules_fired, pattern_matches) if signal)
    if signal_types >= 2:
        quality += 0.2
    elif signal_types == 0:
        issues.append("No clear sentiment signals detected")
        quality -= 0.3

    if processing_time_ms > 5000:
        issues.append("Slow processing time for fallback analysis")
        quality -= 0.1
    elif processing_time_ms < 100:
        quality += 0.1

    if not insights:
        issues.append("No insights generated")
        quality -= 0.1
    elif len(insights) >= 2:
        quality += 0.1

    return {
        "is_valid": quality >= 0.3 and len(issues) < 3,
        "quality_score": max(0.0, min(1.0, quality)),
        "issues": issues,
    }


def combined_confidence(sentiment_confidence: float, pattern_confidence: float, quality_score: float) -> float:
    combined = sentiment_confidence * 0.4 + pattern_confidence * 0.3 + quality_score * 0.3
    bonus = 0.0
    if sentiment_confidence > 0.5 and pattern_confidence > 0.5:
        bonus += 0.1
    if quality_score > 0.7:
        bonus += 0.05
    return min(0.95, max(0.1, combined + bonus))


# ============================================================================
# Entry point
# ============================================================================

def run_fallback_analysis(
    text: str,
    mood: Optional[str] = None,
    trigger: FallbackTrigger = FallbackTrigger.MANUAL_REQUEST,
    entry_id: str = "",
    user_id: str = "",
    relationship_id: Optional[str] = None,
    created_at: float = 0.0,
    prior_texts: Optional[List[str]] = None,
) -> FallbackResult:
    """
    Analyze an entry locally. Never raises.

    Args:
        text: Entry text
        mood: Optional self-reported mood, averaged into the sentiment score
        trigger: Why the fallback path was taken
        entry_id, user_id, relationship_id: Identifiers copied onto the result
        created_at: Result timestamp (epoch seconds)
        prior_texts: Earlier entries of the same relationship, for trend context

    Returns:
        FallbackResult tagged with source=fallback and fallback metadata
    """
    start = time.perf_counter()
    try:
        return _run(text, mood, trigger, entry_id, user_id, relationship_id, created_at, start, prior_texts)
    except Exception as e:
        logger.error(f"Fallback analysis failed for entry {entry_id}: {e}", exc_info=True)
        elapsed = (time.perf_counter() - start) * 1000
        return FallbackResult(
            entry_id=entry_id,
            user_id=user_id,
            relationship_id=relationship_id,
            sentiment_score=0.0,
            confidence_level=0.1,
            reasoning=f"Fallback analysis degraded to neutral: {e}",
            created_at=created_at,
            processing_time_ms=elapsed,
            fallback_metadata=FallbackMetadata(
                trigger=trigger,
                quality_score=0.0,
                processing_time_ms=elapsed,
                is_valid=False,
                issues=["Fallback analysis error"],
            ),
        )


def _run(text, mood, trigger, entry_id, user_id, relationship_id, created_at, start,
         prior_texts=None) -> FallbackResult:
    content = (text or "").lower()
    sentiment = analyze_sentiment_keywords(text)
    patterns = analyze_patterns(text)
    context = trend_context(patterns, prior_texts)

    score = sentiment["normalized_score"]
    # Pattern polarity nudges keyword-only sentiment
    if patterns["matches"]:
        score = (score * 2 + patterns["normalized_sentiment"]) / 3

    reported = mood_score(mood)
    if reported is not None:
        score = (score + reported) / 2
    score = max(-1.0, min(1.0, score))

    keywords = list(dict.fromkeys(sentiment["keywords_matched"] + [m["name"] for m in patterns["matches"]]))
    insights = sentiment["insights"] + patterns["relationship_insights"]

    elapsed = (time.perf_counter() - start) * 1000
    quality = validate_fallback_result(
        sentiment["confidence_score"],
        sentiment["keywords_matched"],
        sentiment["rules_fired"],
        [m["name"] for m in patterns["matches"]],
        insights,
        elapsed,
    )
    confidence = combined_confidence(sentiment["confidence_score"], patterns["confidence_score"], quality["quality_score"])

    summary = PatternSummary(
        recurring_themes=extract_themes(content, patterns),
        emotional_triggers=extract_triggers(content, patterns, sentiment["rules_fired"]),
        communication_style=detect_communication_style(content, patterns),
        relationship_dynamics=extract_dynamics(patterns),
    )

    reasoning_parts = [
        f"Fallback analysis ({trigger.value}): {sentiment['sentiment']} with "
        f"{round(sentiment['confidence_score'] * 100)}% keyword confidence",
        f"{len(sentiment['keywords_matched'])} sentiment indicators",
        f"{len(patterns['matches'])} relationship patterns",
    ]
    if patterns["dominant_category"]:
        reasoning_parts.append(f"Primary focus area: {patterns['dominant_category']}")
    if insights:
        reasoning_parts.append(f"Key insights: {'; '.join(insights[:2])}")

    return FallbackResult(
        entry_id=entry_id,
        user_id=user_id,
        relationship_id=relationship_id,
        sentiment_score=round(score, 4),
        confidence_level=round(confidence, 4),
        reasoning=". ".join(reasoning_parts) + ".",
        emotional_keywords=keywords[:MAX_KEYWORDS],
        patterns=summary,
        created_at=created_at,
        processing_time_ms=elapsed,
        fallback_metadata=FallbackMetadata(
            trigger=trigger,
            quality_score=round(quality["quality_score"], 4),
            processing_time_ms=elapsed,
            is_valid=quality["is_valid"],
            issues=quality["issues"],
            mood_suggestion=sentiment["mood_suggestion"],
            trend_analysis=context["trend_analysis"],
            contextual_insights=context["contextual_insights"],
            recommendations=generate_pattern_recommendations(patterns),
        ),
    )


def should_store(result: FallbackResult) -> bool:
    return result.confidence_level >= MIN_STORE_CONFIDENCE and result.fallback_metadata.is_valid


# ============================================================================
# Reconciliation with remote re-analysis
# ============================================================================

def should_upgrade_fallback(result: FallbackResult, quality_threshold: float = UPGRADE_QUALITY_THRESHOLD) -> Dict[str, Any]:
    """Decide whether a stored fallback result is worth re-running remotely."""
    meta = result.fallback_metadata
    if not meta.is_valid:
        return {"should_upgrade": True, "reason": "Fallback result failed quality validation",
                "recommended_priority": Priority.HIGH}
    if meta.quality_score < quality_threshold or result.confidence_level < 0.5:
        return {"should_upgrade": True, "reason": "Low fallback quality or confidence",
                "recommended_priority": Priority.NORMAL}
    return {"should_upgrade": False, "reason": "Fallback quality acceptable",
            "recommended_priority": Priority.NORMAL}


def _label(score: float) -> str:
    if score > SENTIMENT_DEAD_ZONE:
        return "positive"
    if score < -SENTIMENT_DEAD_ZONE:
        return "negative"
    return "neutral"


def compare_results(remote: RemoteResult, fallback: FallbackResult) -> Dict[str, Any]:
    """Compare a remote re-analysis against the fallback result it replaces."""
    remote_kw = {k.lower() for k in remote.emotional_keywords}
    fallback_kw = {k.lower() for k in fallback.emotional_keywords}
    union = remote_kw | fallback_kw
    overlap = len(remote_kw & fallback_kw) / len(union) if union else 1.0

    return {
        "sentiment_agreement": _label(remote.sentiment_score) == _label(fallback.sentiment_score),
        "score_distance": round(abs(remote.sentiment_score - fallback.sentiment_score), 4),
        "confidence_delta": round(remote.confidence_level - fallback.confidence_level, 4),
        "keyword_overlap": round(overlap, 4),
        "fallback_quality": fallback.fallback_metadata.quality_score,
        "trigger": fallback.fallback_metadata.trigger.value,
    }
