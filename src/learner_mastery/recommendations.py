"""Recommendation engine: multi-factor topic scoring and explained selection.

Each topic gets three sub-scores on a 0-100 scale, combined by weight:

- mastery (30%): ``(1 - p_decayed) * 100``; untouched topics sit at 50
- urgency (40%): nearest upcoming test, ``100 * exp(-days / 7)``, never
  below a small baseline
- goal (30%): parent goals, exact match 100 / partial 70, scaled up as the
  target date approaches
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime

from loguru import logger

from .bkt import LEARNING_THRESHOLD, MASTERED_THRESHOLD
from .forgetting import SECONDS_PER_DAY, apply_decay
from .models import (
    Category,
    Confidence,
    LearnerProfile,
    LearningGoal,
    Priority,
    Recommendation,
    ScoredTopic,
    TopicMastery,
    UpcomingTest,
    utc,
    utcnow,
)
from .prerequisites import PrerequisiteTable, find_prerequisite_hint

WEIGHT_MASTERY = 0.30
WEIGHT_URGENCY = 0.40
WEIGHT_GOAL = 0.30

NEUTRAL_MASTERY_SCORE = 50.0

URGENCY_SCALE_DAYS = 7.0
URGENCY_BASELINE = 5.0

GOAL_EXACT_SCORE = 100.0
GOAL_PARTIAL_SCORE = 70.0
GOAL_BASE_FRACTION = 0.6
GOAL_SCALE_DAYS = 14.0

URGENT_TEST_DAYS = 3
IMPORTANT_TEST_DAYS = 14
URGENT_P_KNOWN = 0.3
IMPORTANT_SCORE = 40.0

DEFAULT_COUNT = 5
DECAY_NOTE_THRESHOLD = 0.10

# Per-topic confidence counts attempts on that topic.
TOPIC_CONFIDENCE_LOW = 5
TOPIC_CONFIDENCE_MEDIUM = 20
# Whole-profile confidence counts every answered question; kept separate on purpose.
PROFILE_CONFIDENCE_LOW = 20
PROFILE_CONFIDENCE_MEDIUM = 50


def _days_between(start: datetime, end: datetime) -> float:
    return (utc(end) - utc(start)).total_seconds() / SECONDS_PER_DAY


def calculate_mastery_score(mastery: TopicMastery | None) -> float:
    """Lower mastery scores higher. ``mastery`` should already be decayed."""
    if mastery is None or mastery.attempts == 0:
        return NEUTRAL_MASTERY_SCORE
    return (1 - mastery.p_known) * 100


def nearest_test_days(
    topic: str, tests: Iterable[UpcomingTest], now: datetime, subject_id: str | None = None
) -> float | None:
    """Days until the nearest test on ``topic``; a test dated today counts as 0."""
    moment = utc(now)
    days: list[float] = []
    for test in tests:
        if topic not in test.topics:
            continue
        if subject_id is not None and test.subject_id != subject_id:
            continue
        test_day = utc(test.date).date()
        if test_day == moment.date():
            days.append(0.0)
        elif test_day > moment.date():
            days.append(_days_between(moment, test.date))
    return min(days) if days else None


def calculate_urgency_score(days_to_test: float | None) -> float:
    if days_to_test is None:
        return URGENCY_BASELINE
    return max(URGENCY_BASELINE, 100 * math.exp(-days_to_test / URGENCY_SCALE_DAYS))


def calculate_goal_score(
    topic: str, goals: Iterable[LearningGoal], now: datetime, subject_id: str | None = None
) -> float:
    needle = topic.casefold()
    best = 0.0
    for goal in goals:
        if subject_id is not None and goal.subject_id != subject_id:
            continue
        wanted = goal.topic.casefold()
        if not wanted:
            continue
        if wanted == needle:
            base = GOAL_EXACT_SCORE
        elif wanted in needle or needle in wanted:
            base = GOAL_PARTIAL_SCORE
        else:
            continue
        fraction = GOAL_BASE_FRACTION
        if goal.target_date is not None:
            days = max(0.0, _days_between(now, goal.target_date))
            fraction += (1 - GOAL_BASE_FRACTION) * math.exp(-days / GOAL_SCALE_DAYS)
        best = max(best, base * fraction)
    return best


def topic_confidence(attempts: int) -> Confidence:
    if attempts < TOPIC_CONFIDENCE_LOW:
        return "low"
    if attempts < TOPIC_CONFIDENCE_MEDIUM:
        return "medium"
    return "high"


def profile_confidence(profile: LearnerProfile | None) -> Confidence:
    if profile is None or profile.total_questions < PROFILE_CONFIDENCE_LOW:
        return "low"
    if profile.total_questions < PROFILE_CONFIDENCE_MEDIUM:
        return "medium"
    return "high"


def get_confidence_message(level: Confidence) -> str:
    return {
        "low": "בונים פרופיל אישי... נצבור עוד מידע ב-2-3 תרגולים",
        "medium": "הפרופיל האישי מתחיל להיות מדויק",
        "high": "פרופיל אישי מפורט ומדויק",
    }[level]


def _categorize(
    decayed: TopicMastery | None, mastery_score: float, urgency_score: float, goal_score: float
) -> Category:
    if decayed is None or decayed.attempts == 0:
        return "growth"
    p_known = decayed.p_known
    if p_known >= MASTERED_THRESHOLD:
        return "maintenance"
    if p_known >= LEARNING_THRESHOLD and decayed.recent_trend == "improving":
        return "growth"
    weighted_mastery = mastery_score * WEIGHT_MASTERY
    dominates = weighted_mastery >= max(urgency_score * WEIGHT_URGENCY, goal_score * WEIGHT_GOAL)
    if dominates or p_known < LEARNING_THRESHOLD:
        return "weakness"
    return "growth"


def score_topic(
    topic: str,
    profile: LearnerProfile | None,
    relevant_tests: Iterable[UpcomingTest],
    goals: Iterable[LearningGoal],
    subject_id: str | None = None,
    now: datetime | None = None,
) -> ScoredTopic:
    """Score one topic from decayed mastery, test urgency and parent goals."""
    moment = utc(now) if now else utcnow()
    stored = profile.find_topic(topic, subject_id) if profile is not None else None
    decayed = apply_decay(stored, moment) if stored is not None else None

    mastery_score = calculate_mastery_score(decayed)
    days_to_test = nearest_test_days(topic, relevant_tests, moment, subject_id)
    urgency_score = calculate_urgency_score(days_to_test)
    goal_score = calculate_goal_score(topic, goals, moment, subject_id)

    score = (
        mastery_score * WEIGHT_MASTERY
        + urgency_score * WEIGHT_URGENCY
        + goal_score * WEIGHT_GOAL
    )
    attempts = decayed.attempts if decayed is not None else 0
    return ScoredTopic(
        topic=topic,
        subject_id=subject_id if subject_id is not None else (stored.subject_id if stored else None),
        score=round(score, 2),
        mastery_score=round(mastery_score, 2),
        urgency_score=round(urgency_score, 2),
        goal_score=round(goal_score, 2),
        category=_categorize(decayed, mastery_score, urgency_score, goal_score),
        confidence=topic_confidence(attempts),
        p_known=decayed.p_known if decayed is not None else None,
        attempts=attempts,
        recent_trend=decayed.recent_trend if decayed is not None else "stable",
        days_to_test=days_to_test,
        goal_match=goal_score > 0,
        decay_drop=(stored.p_known - decayed.p_known) if stored is not None and decayed is not None else 0.0,
    )


def _priority(scored: ScoredTopic) -> Priority:
    attempted_p = scored.p_known if scored.attempts > 0 else None
    if scored.days_to_test is not None and scored.days_to_test <= URGENT_TEST_DAYS:
        return "urgent"
    if attempted_p is not None and attempted_p < URGENT_P_KNOWN:
        return "urgent"
    if scored.score >= IMPORTANT_SCORE:
        return "important"
    if attempted_p is not None and attempted_p < LEARNING_THRESHOLD:
        return "important"
    if scored.days_to_test is not None and scored.days_to_test <= IMPORTANT_TEST_DAYS:
        return "important"
    return "review"


def _test_reason(days: float) -> str:
    whole_days = math.ceil(days)
    if whole_days <= 0:
        return "מבחן היום"
    if whole_days == 1:
        return "מבחן מחר"
    return f"מבחן בעוד {whole_days} ימים"


def _mastery_reason(scored: ScoredTopic) -> str:
    if scored.attempts == 0 or scored.p_known is None:
        return "נושא חדש - טרם נלמד"
    percent = round(scored.p_known * 100)
    if scored.category == "maintenance":
        return f"נושא שנשלט ({percent}%) - חזרה למניעת שכחה"
    if scored.p_known < LEARNING_THRESHOLD:
        return f"רמת שליטה נמוכה ({percent}%) - נושא שדורש חיזוק"
    return f"רמת שליטה חלקית ({percent}%)"


def build_reasoning(scored: ScoredTopic) -> list[str]:
    """Human-readable reasons, strongest contributing sub-score first."""
    contributions: list[tuple[float, int, str]] = []
    if scored.days_to_test is not None and scored.days_to_test <= IMPORTANT_TEST_DAYS:
        contributions.append((scored.urgency_score * WEIGHT_URGENCY, 0, _test_reason(scored.days_to_test)))
    contributions.append((scored.mastery_score * WEIGHT_MASTERY, 1, _mastery_reason(scored)))
    if scored.goal_match:
        contributions.append((scored.goal_score * WEIGHT_GOAL, 2, "ההורה הגדיר/ה את הנושא כמטרת למידה"))
    contributions.sort(key=lambda item: (-item[0], item[1]))
    reasoning = [text for _, _, text in contributions]

    if scored.recent_trend == "declining":
        reasoning.append("ביצועים יורדים לאחרונה")
    elif scored.recent_trend == "improving":
        reasoning.append("ביצועים עולים - כדאי להמשיך")
    if scored.decay_drop >= DECAY_NOTE_THRESHOLD:
        reasoning.append("השליטה נשחקה מאז התרגול האחרון")
    return reasoning


def generate_recommendations(
    scored_topics: Iterable[ScoredTopic],
    count: int = DEFAULT_COUNT,
    prerequisites: PrerequisiteTable | None = None,
    profile: LearnerProfile | None = None,
) -> list[Recommendation]:
    """Top ``count`` topics by score, each with priority and reasoning.

    Ties are broken by topic name so identical inputs always rank the same.
    """
    if count < 0:
        raise ValueError(f"count must be non-negative, got {count}")
    ranked = sorted(scored_topics, key=lambda scored: (-scored.score, scored.topic))

    recommendations: list[Recommendation] = []
    for scored in ranked[:count]:
        hint = None
        if prerequisites and scored.category == "weakness":
            hint = find_prerequisite_hint(scored.topic, scored.subject_id, profile, prerequisites)
        reasoning = build_reasoning(scored)
        if hint is not None:
            reasoning.insert(0, hint.rationale)
        recommendations.append(
            Recommendation(
                topic=scored.topic,
                score=scored.score,
                priority=_priority(scored),
                confidence=scored.confidence,
                category=scored.category,
                reasoning=reasoning,
                prerequisite=hint,
            )
        )

    logger.debug(
        f"recommendations: {len(recommendations)} of {len(ranked)} topics selected "
        f"(urgent={sum(1 for rec in recommendations if rec.priority == 'urgent')})"
    )
    return recommendations


__all__ = [
    "DEFAULT_COUNT",
    "WEIGHT_GOAL",
    "WEIGHT_MASTERY",
    "WEIGHT_URGENCY",
    "build_reasoning",
    "calculate_goal_score",
    "calculate_mastery_score",
    "calculate_urgency_score",
    "generate_recommendations",
    "get_confidence_message",
    "nearest_test_days",
    "profile_confidence",
    "score_topic",
    "topic_confidence",
]
