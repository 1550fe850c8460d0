"""
Relationship pattern analyzer for RelPulse

Local, deterministic scan of journal text against a fixed table of weighted
regex patterns. Used to enrich remote results and as the backbone of the
fallback path when the remote provider is unavailable.

CATEGORIES (in registration order, which also breaks dominance ties):
communication, intimacy, conflict, growth, stress, celebration

CONFIGURABLE CONSTANTS:
Pattern weights are confidence values in (0, 1]; polarity is carried separately
by the 'sentiment' field. Thresholds below are tunable.
"""

import re
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURABLE CONSTANTS
# ============================================================================

CATEGORIES = ["communication", "intimacy", "conflict", "growth", "stress", "celebration"]

# Normalized sentiment dead-zone (sum of signed weights / sum of weights)
SENTIMENT_DEAD_ZONE = 0.2

# Confidence = min(1, BASE + PER_MATCH * matches); zero matches -> 0.0
CONFIDENCE_BASE = 0.2
CONFIDENCE_PER_MATCH = 0.08

# Category score above/below which a category counts as a strength/challenge
MULTI_CATEGORY_THRESHOLD = 0.0
RECOMMENDATION_THRESHOLD = 0.3

# Change vs prior average needed to call a category improving/declining
TREND_CHANGE_THRESHOLD = 0.3

# Entry count at which trend insights are considered well supported
TREND_HIGH_CONFIDENCE_ENTRIES = 5

NO_PATTERNS_INSIGHT = "No specific relationship patterns detected"
CURRENT_ENTRY_ONLY_INSIGHT = "Analysis based on current entry only"

RELATIONSHIP_PATTERNS: List[Dict[str, Any]] = [
    # Communication
    {
        "name": "active_listening",
        "pattern": r"\b(listen|listened|listening|heard|understand|acknowledged?|validated?)\b.*"
                   r"\b(feelings|thoughts|perspective|point of view|each other|one another)\b",
        "category": "communication",
        "sentiment": "positive",
        "weight": 0.8,
        "insight": "Active listening and validation in communication",
    },
    {
        "name": "open_dialogue",
        "pattern": r"\b(talked|discussed|shared|opened up|communicated)\b.*\b(openly|honestly|deeply|freely)\b",
        "category": "communication",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Open and honest communication",
    },
    {
        "name": "communication_breakdown",
        "pattern": r"\b(can't talk|won't listen|shut down|silent treatment|ignoring)\b",
        "category": "communication",
        "sentiment": "negative",
        "weight": 0.8,
        "insight": "Communication barriers or breakdown",
    },
    {
        "name": "misunderstanding",
        "pattern": r"\b(misunderstood|confused|mixed signals|unclear|assumption)\b",
        "category": "communication",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "Misunderstandings affecting communication",
    },
    # Intimacy
    {
        "name": "emotional_intimacy",
        "pattern": r"\b(vulnerable|intimate|close|connected|bonded|deep)\b.*\b(conversation|moment|sharing|experience)\b",
        "category": "intimacy",
        "sentiment": "positive",
        "weight": 0.8,
        "insight": "Emotional intimacy and connection",
    },
    {
        "name": "physical_affection",
        "pattern": r"\b(hug|hugged|kiss|kissed|cuddle|cuddled|hold hands|held hands|caress|embrace)\b",
        "category": "intimacy",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Physical affection and intimacy",
    },
    {
        "name": "quality_time",
        "pattern": r"\b(quality time|spending time|spent time|date night)\b|"
                   r"\b(enjoyed|together|date|adventure|memory)\b.*\b(partner|spouse|loved one)\b",
        "category": "intimacy",
        "sentiment": "positive",
        "weight": 0.6,
        "insight": "Quality time and shared experiences",
    },
    {
        "name": "emotional_distance",
        "pattern": r"\b(distant|cold|withdrawn|detached|unavailable|disconnected)\b",
        "category": "intimacy",
        "sentiment": "negative",
        "weight": 0.7,
        "insight": "Emotional distance or disconnection",
    },
    {
        "name": "intimacy_concerns",
        "pattern": r"\b(lack of|missing|no|little)\b.*\b(intimacy|closeness|connection|affection)\b",
        "category": "intimacy",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "Concerns about intimacy levels",
    },
    # Conflict
    {
        "name": "constructive_conflict",
        "pattern": r"\b(disagreed|different views)\b.*\b(respectfully|calmly|worked through|resolved)\b",
        "category": "conflict",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Constructive conflict resolution",
    },
    {
        "name": "compromise",
        "pattern": r"\b(compromise|compromised|middle ground|meet halfway|agreed|solution)\b",
        "category": "conflict",
        "sentiment": "positive",
        "weight": 0.8,
        "insight": "Successful compromise and problem-solving",
    },
    {
        "name": "heated_argument",
        "pattern": r"\b(fight|fought|argue|argued|yell|yelled|scream|shouting|heated|explosive)\b",
        "category": "conflict",
        "sentiment": "negative",
        "weight": 0.8,
        "insight": "Intense conflict or heated argument",
    },
    {
        "name": "recurring_issues",
        "pattern": r"\b(again|same|always|never|every time|constantly|repeatedly)\b.*\b(problem|issue|fight|argument)\b",
        "category": "conflict",
        "sentiment": "negative",
        "weight": 0.7,
        "insight": "Recurring relationship issues",
    },
    {
        "name": "unresolved_tension",
        "pattern": r"\b(tension|awkward|uncomfortable|unresolved|avoiding)\b",
        "category": "conflict",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "Unresolved tension or avoidance",
    },
    # Growth
    {
        "name": "relationship_growth",
        "pattern": r"\b(growing|improving|progress|development|stronger|better)\b.*\b(relationship|us|we|together)\b",
        "category": "growth",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Relationship growth and improvement",
    },
    {
        "name": "learning_together",
        "pattern": r"\b(learned|discovered|realized|understood)\b.*\b(about each other|together|as a couple)\b",
        "category": "growth",
        "sentiment": "positive",
        "weight": 0.6,
        "insight": "Learning and discovery in relationship",
    },
    {
        "name": "personal_growth",
        "pattern": r"\b(growing|changing|developing|improving|becoming)\b.*\b(person|individual|better|stronger)\b",
        "category": "growth",
        "sentiment": "positive",
        "weight": 0.5,
        "insight": "Personal growth affecting relationship",
    },
    {
        "name": "stagnation",
        "pattern": r"\b(stuck|routine|boring|monotonous|stagnant|unchanging)\b",
        "category": "growth",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "Feeling of stagnation or lack of growth",
    },
    # Stress
    {
        "name": "external_stress",
        "pattern": r"\b(work|job|family|money|health|stress|pressure)\b.*"
                   r"\b(affecting|impacting|difficult|challenging)\b.*\b(relationship|us)\b",
        "category": "stress",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "External stressors affecting relationship",
    },
    {
        "name": "stress_support",
        "pattern": r"\b(support|supported|helped|there for|comfort|understanding)\b.*\b(stress|difficult|challenge|problem)\b",
        "category": "stress",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Mutual support during stressful times",
    },
    {
        "name": "overwhelmed",
        "pattern": r"\b(overwhelmed|exhausted|drained|can't cope|too much)\b",
        "category": "stress",
        "sentiment": "negative",
        "weight": 0.6,
        "insight": "Feeling overwhelmed or exhausted",
    },
    # Celebration
    {
        "name": "milestone_celebration",
        "pattern": r"\b(anniversary|birthday|achievement|celebration|celebrated|milestone)\b",
        "category": "celebration",
        "sentiment": "positive",
        "weight": 0.8,
        "insight": "Celebrating milestones or achievements",
    },
    {
        "name": "gratitude_expression",
        "pattern": r"\b(grateful|thankful|appreciate|blessed|fortunate|lucky)\b.*\b(partner|relationship|love|support|them|her|him)\b",
        "category": "celebration",
        "sentiment": "positive",
        "weight": 0.7,
        "insight": "Expressing gratitude for relationship",
    },
    {
        "name": "shared_joy",
        "pattern": r"\b(happy|joy|delight|excitement|fun|laughter|laughed)\b.*\b(together|shared|both|we)\b",
        "category": "celebration",
        "sentiment": "positive",
        "weight": 0.6,
        "insight": "Shared joy and positive experiences",
    },
]

_COMPILED_PATTERNS = [
    (pattern, re.compile(pattern["pattern"], re.IGNORECASE))
    for pattern in RELATIONSHIP_PATTERNS
]


def _signed_weight(pattern: Dict[str, Any]) -> float:
    return pattern["weight"] if pattern["sentiment"] == "positive" else -pattern["weight"]


def pattern_confidence(match_count: int) -> float:
    """Confidence for a given number of matched patterns (monotone, saturating)."""
    if match_count <= 0:
        return 0.0
    return min(1.0, CONFIDENCE_BASE + CONFIDENCE_PER_MATCH * match_count)


def analyze_patterns(text: str) -> Dict[str, Any]:
    """
    Scan text against the relationship pattern table.

    Args:
        text: Journal entry text

    Returns:
        Dict with matches, category_scores, dominant_category,
        overall_sentiment, confidence_score and relationship_insights
    """
    text = text or ""
    matches: List[Dict[str, Any]] = []
    category_scores: Dict[str, float] = {}

    if text.strip():
        for pattern, regex in _COMPILED_PATTERNS:
            if regex.search(text):
                matches.append({
                    "name": pattern["name"],
                    "category": pattern["category"],
                    "sentiment": pattern["sentiment"],
                    "weight": pattern["weight"],
                    "insight": pattern["insight"],
                })
                category = pattern["category"]
                category_scores[category] = category_scores.get(category, 0.0) + _signed_weight(pattern)

    # Largest absolute bucket wins; strict '>' keeps the first-registered category on ties
    dominant_category: Optional[str] = None
    best = -1.0
    for category in CATEGORIES:
        if category in category_scores and abs(category_scores[category]) > best:
            best = abs(category_scores[category])
            dominant_category = category

    total_weight = sum(m["weight"] for m in matches)
    signed_total = sum(category_scores.values())
    normalized = signed_total / total_weight if total_weight > 0 else 0.0

    if normalized > SENTIMENT_DEAD_ZONE:
        overall_sentiment = "positive"
    elif normalized < -SENTIMENT_DEAD_ZONE:
        overall_sentiment = "negative"
    else:
        overall_sentiment = "neutral"

    result = {
        "matches": matches,
        "category_scores": {k: round(v, 4) for k, v in category_scores.items()},
        "dominant_category": dominant_category,
        "overall_sentiment": overall_sentiment,
        "normalized_sentiment": round(normalized, 4),
        "confidence_score": pattern_confidence(len(matches)),
    }
    result["relationship_insights"] = _generate_insights(matches, category_scores, dominant_category)

    logger.debug(
        f"Pattern scan: {len(matches)} matches, dominant={dominant_category}, "
        f"sentiment={overall_sentiment}"
    )
    return result


def _generate_insights(
    matches: List[Dict[str, Any]],
    category_scores: Dict[str, float],
    dominant_category: Optional[str],
) -> List[str]:
    if not matches:
        return [NO_PATTERNS_INSIGHT]

    insights = []
    if dominant_category:
        score = category_scores[dominant_category]
        if score > 0:
            insights.append(f"Strong positive patterns in {dominant_category} detected")
        elif score < 0:
            insights.append(f"Challenges in {dominant_category} area identified")
        else:
            insights.append(f"Mixed signals in {dominant_category} area")

    positive = [c for c in CATEGORIES if category_scores.get(c, 0.0) > MULTI_CATEGORY_THRESHOLD]
    negative = [c for c in CATEGORIES if category_scores.get(c, 0.0) < -MULTI_CATEGORY_THRESHOLD]

    if len(positive) >= 2:
        insights.append(f"Multiple relationship strengths identified: {', '.join(positive)}")
    if len(negative) >= 2:
        insights.append(f"Several areas may need attention: {', '.join(negative)}")

    names = {m["name"] for m in matches}
    if "active_listening" in names and "emotional_intimacy" in names:
        insights.append("Strong communication foundation supporting emotional connection")
    if "heated_argument" in names and "compromise" in names:
        insights.append("Conflict resolution skills evident despite intense disagreements")
    if "external_stress" in names and "stress_support" in names:
        insights.append("Relationship showing resilience under external pressure")
    if "recurring_issues" in names and "compromise" not in names:
        insights.append("Recurring issues may benefit from new conflict resolution approaches")
    if "relationship_growth" in names or "learning_together" in names:
        insights.append("Positive growth trajectory in relationship development")
    if "stagnation" in names and not positive:
        insights.append("Consider exploring new activities or approaches to break routine patterns")

    return insights


def analyze_pattern_trends(text: str, prior_texts: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Pattern analysis of the current entry compared against prior entries.

    A category is "improving" when its current score beats the prior average
    by more than TREND_CHANGE_THRESHOLD, "declining" when it falls short by
    the same margin, and "stable" otherwise.

    Args:
        text: Current entry text
        prior_texts: Texts of earlier entries (oldest first or any order)

    Returns:
        analyze_patterns() output plus trend_analysis and contextual_insights
    """
    current = analyze_patterns(text)
    return {**current, **trend_context(current, prior_texts)}


def trend_context(current: Dict[str, Any], prior_texts: Optional[List[str]] = None) -> Dict[str, Any]:
    """Trend analysis and contextual insights for an already scanned entry."""
    priors = [p for p in (prior_texts or []) if p is not None]

    if not priors:
        return {
            "trend_analysis": None,
            "contextual_insights": [
                CURRENT_ENTRY_ONLY_INSIGHT,
                "Consider multiple entries for trend analysis",
            ],
        }

    previous = [analyze_patterns(p) for p in priors]
    improving, declining, stable = [], [], []

    for category in CATEGORIES:
        prior_scores = [p["category_scores"].get(category, 0.0) for p in previous]
        current_score = current["category_scores"].get(category, 0.0)
        if current_score == 0.0 and not any(prior_scores):
            continue

        change = current_score - sum(prior_scores) / len(prior_scores)
        if change > TREND_CHANGE_THRESHOLD:
            improving.append(category)
        elif change < -TREND_CHANGE_THRESHOLD:
            declining.append(category)
        else:
            stable.append(category)

    trends = {"improving": improving, "declining": declining, "stable": stable}
    return {
        "trend_analysis": trends,
        "contextual_insights": _contextual_insights(trends, len(previous) + 1),
    }


def _contextual_insights(trends: Dict[str, List[str]], entry_count: int) -> List[str]:
    insights = []
    if trends["improving"]:
        insights.append(f"Positive trends observed in: {', '.join(trends['improving'])}")
    if trends["declining"]:
        insights.append(f"Areas showing decline: {', '.join(trends['declining'])} - may need attention")
    if trends["stable"]:
        insights.append(f"Consistent patterns in: {', '.join(trends['stable'])}")

    trajectory = len(trends["improving"]) - len(trends["declining"])
    if trajectory > 1:
        insights.append("Overall relationship trajectory appears positive")
    elif trajectory < -1:
        insights.append("Multiple areas showing challenges - consider focusing on core relationship strengths")
    else:
        insights.append("Relationship showing mixed patterns - normal variation in relationship dynamics")

    if entry_count >= TREND_HIGH_CONFIDENCE_ENTRIES:
        insights.append(f"Analysis based on {entry_count} recent entries - high confidence in patterns")
    else:
        insights.append(
            f"Analysis based on {entry_count} entries - consider more data points for deeper insights"
        )
    return insights


def generate_pattern_recommendations(analysis: Dict[str, Any]) -> Dict[str, List[str]]:
    """Turn a pattern analysis into actionable insights, focus areas and strengths."""
    scores = analysis.get("category_scores", {})
    strengths = [c for c, s in scores.items() if s > RECOMMENDATION_THRESHOLD]
    challenges = [c for c, s in scores.items() if s < -RECOMMENDATION_THRESHOLD]

    actionable: List[str] = []
    focus_areas: List[str] = []
    leverage: List[str] = []

    if "communication" in strengths:
        leverage.append("Strong communication skills - use this foundation to address other areas")
    if "growth" in strengths:
        leverage.append("Growth mindset - continue learning and developing together")
    if "celebration" in strengths:
        leverage.append("Shared celebrations - keep marking the moments that matter")

    if "communication" in challenges:
        focus_areas.append("communication")
        actionable.append("Consider setting aside dedicated time for open, uninterrupted conversation")
    if "conflict" in challenges:
        focus_areas.append("conflict resolution")
        actionable.append('Explore conflict resolution techniques like active listening and "I" statements')
    if "intimacy" in challenges:
        focus_areas.append("emotional/physical intimacy")
        actionable.append("Schedule regular one-on-one time without distractions")
    if "stress" in challenges:
        focus_areas.append("stress management")
        actionable.append("Develop strategies to support each other during stressful periods")

    if not actionable:
        actionable.append("Consider regular relationship check-ins to maintain connection")
        actionable.append("Focus on expressing appreciation and gratitude daily")

    return {
        "actionable_insights": actionable,
        "focus_areas": focus_areas,
        "strengths_to_leverage": leverage,
    }


if __name__ == "__main__":
    import json
    sample = "I love spending quality time and we listened to each other"
    print(json.dumps(analyze_patterns(sample), indent=2))
