"""Bayesian Knowledge Tracing (BKT) engine for topic mastery tracking."""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime

from loguru import logger

from .models import BKTParams, MasteryLevel, TopicMastery, Trend, WINDOW_SIZE, utc, utcnow

# Grade-band parameters (Corbett & Anderson style, tuned for grades 1-8)
BKT_DEFAULTS: dict[str, BKTParams] = {
    "grades_1_3": BKTParams(p_init=0.10, p_learn=0.30, p_guess=0.25, p_slip=0.15),
    "grades_4_6": BKTParams(p_init=0.20, p_learn=0.20, p_guess=0.20, p_slip=0.10),
    "grades_7_8": BKTParams(p_init=0.25, p_learn=0.15, p_guess=0.20, p_slip=0.08),
}
DEFAULT_GRADE = 4
DEFAULT_PARAMS = BKT_DEFAULTS["grades_4_6"]

P_KNOWN_MIN = 0.01
P_KNOWN_MAX = 0.99

MASTERED_THRESHOLD = 0.80
LEARNING_THRESHOLD = 0.50
MIN_ATTEMPTS_FOR_MASTERY = 5

MIN_TREND_WINDOW = 6
TREND_DELTA = 0.2

_HEBREW_GRADES = {"א": 1, "ב": 2, "ג": 3, "ד": 4, "ה": 5, "ו": 6, "ז": 7, "ח": 8}
_HEBREW_GRADE_RE = re.compile(r"כיתה\s+([א-ח])")


def grade_number(grade: int | str | None) -> int:
    """Normalise a grade (1-8 or a label like "כיתה ד'") to an integer."""
    if isinstance(grade, int) and not isinstance(grade, bool):
        return grade if 1 <= grade <= 8 else DEFAULT_GRADE
    if isinstance(grade, str):
        text = grade.strip()
        if text.isdigit():
            return grade_number(int(text))
        match = _HEBREW_GRADE_RE.search(text)
        if match:
            return _HEBREW_GRADES[match.group(1)]
    return DEFAULT_GRADE


def grade_band(grade: int | str | None) -> str:
    number = grade_number(grade)
    if number <= 3:
        return "grades_1_3"
    if number <= 6:
        return "grades_4_6"
    return "grades_7_8"


def get_bkt_params(grade: int | str | None) -> BKTParams:
    return BKT_DEFAULTS.get(grade_band(grade), DEFAULT_PARAMS)


def bkt_update(p_known: float, is_correct: bool, params: BKTParams = DEFAULT_PARAMS) -> float:
    """Standard BKT: posterior update then learning transition.

    Correct: P(L|obs) = P(L)*(1-P(S)) / [P(L)*(1-P(S)) + (1-P(L))*P(G)]
    Wrong:   P(L|obs) = P(L)*P(S) / [P(L)*P(S) + (1-P(L))*(1-P(G))]
    Then:    P(L_new) = P(L|obs) + (1 - P(L|obs)) * P(T)

    The result is clamped to [0.01, 0.99].
    """
    p_known = max(0.0, min(1.0, p_known))
    if is_correct:
        numerator = p_known * (1 - params.p_slip)
        denominator = numerator + (1 - p_known) * params.p_guess
    else:
        numerator = p_known * params.p_slip
        denominator = numerator + (1 - p_known) * (1 - params.p_guess)

    if denominator == 0:
        p_posterior = p_known
    else:
        p_posterior = numerator / denominator

    # Learning transition
    p_new = p_posterior + (1 - p_posterior) * params.p_learn
    return max(P_KNOWN_MIN, min(P_KNOWN_MAX, p_new))


def calculate_trend(window: list[int]) -> Trend:
    """Compare the newest third of the window against the oldest third."""
    if len(window) < MIN_TREND_WINDOW:
        return "stable"
    third = len(window) // 3
    oldest = sum(window[:third]) / third
    newest = sum(window[-third:]) / third
    if newest - oldest > TREND_DELTA:
        return "improving"
    if oldest - newest > TREND_DELTA:
        return "declining"
    return "stable"


def new_topic_mastery(
    topic: str,
    subject_id: str,
    params: BKTParams = DEFAULT_PARAMS,
    now: datetime | None = None,
) -> TopicMastery:
    moment = utc(now) if now else utcnow()
    return TopicMastery(
        topic=topic,
        subject_id=subject_id,
        p_known=params.p_init,
        first_attempt=moment,
        last_attempt=moment,
    )


def apply_bkt_step(
    mastery: TopicMastery,
    was_correct: bool,
    params: BKTParams = DEFAULT_PARAMS,
    now: datetime | None = None,
    *,
    response_time: float | None = None,
) -> TopicMastery:
    """Apply one answered question to ``mastery`` and return the updated record.

    Steps must be threaded in answer order: the posterior for question k+1
    depends on the ``p_known`` left by question k.
    """
    moment = utc(now) if now else utcnow()
    p_known = bkt_update(mastery.p_known, was_correct, params)

    correct = mastery.correct_count + (1 if was_correct else 0)
    incorrect = mastery.incorrect_count + (0 if was_correct else 1)
    attempts = correct + incorrect

    window = [*mastery.performance_window, 1 if was_correct else 0]
    if len(window) > WINDOW_SIZE:
        window = window[-WINDOW_SIZE:]

    average_time = mastery.average_time
    if response_time is not None and response_time >= 0:
        if average_time is None:
            average_time = float(response_time)
        else:
            average_time += (response_time - average_time) / attempts

    logger.debug(
        f"bkt: {mastery.key} {'correct' if was_correct else 'wrong'} "
        f"p_known {mastery.p_known:.3f} -> {p_known:.3f}"
    )
    return replace(
        mastery,
        p_known=p_known,
        attempts=attempts,
        correct_count=correct,
        incorrect_count=incorrect,
        performance_window=window,
        recent_trend=calculate_trend(window),
        first_attempt=mastery.first_attempt or moment,
        last_attempt=moment,
        average_time=average_time,
    )


def mastery_level(p_known: float) -> MasteryLevel:
    if p_known >= MASTERED_THRESHOLD:
        return "mastered"
    if p_known >= LEARNING_THRESHOLD:
        return "learning"
    return "weak"


def is_mastered(p_known: float, n_attempts: int) -> bool:
    """A topic is mastered when p_known >= threshold AND enough attempts."""
    return p_known >= MASTERED_THRESHOLD and n_attempts >= MIN_ATTEMPTS_FOR_MASTERY


def recommend_difficulty(p_known: float) -> str:
    if p_known < 0.4:
        return "easy"
    if p_known < 0.7:
        return "medium"
    return "hard"


__all__ = [
    "BKT_DEFAULTS",
    "DEFAULT_PARAMS",
    "LEARNING_THRESHOLD",
    "MASTERED_THRESHOLD",
    "MIN_ATTEMPTS_FOR_MASTERY",
    "P_KNOWN_MAX",
    "P_KNOWN_MIN",
    "TREND_DELTA",
    "apply_bkt_step",
    "bkt_update",
    "calculate_trend",
    "get_bkt_params",
    "grade_band",
    "grade_number",
    "is_mastered",
    "mastery_level",
    "new_topic_mastery",
    "recommend_difficulty",
]
