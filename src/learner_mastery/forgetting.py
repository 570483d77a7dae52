"""Forgetting curve: time-based decay of mastery for display and scoring.

Decay is a read-only view. The stored ``p_known`` only changes on the next
answered question.

    p_decayed = floor + (p_known - floor) * exp(-elapsed_days / HALF_LIFE_DAYS)
    floor     = FLOOR_RATIO * p_known

A mastered topic (0.85) left alone for 30 days keeps about 0.47.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime

from .models import LearnerProfile, TopicMastery, utc

HALF_LIFE_DAYS = 30.0
FLOOR_RATIO = 0.3
SECONDS_PER_DAY = 86_400


def elapsed_days(since: datetime | None, now: datetime) -> float:
    if since is None:
        return 0.0
    return (utc(now) - utc(since)).total_seconds() / SECONDS_PER_DAY


def decayed_p_known(p_known: float, days: float) -> float:
    if days <= 0:
        return p_known
    floor = FLOOR_RATIO * p_known
    return floor + (p_known - floor) * math.exp(-days / HALF_LIFE_DAYS)


def apply_decay(mastery: TopicMastery, now: datetime) -> TopicMastery:
    """Return a copy of ``mastery`` with ``p_known`` projected forward to ``now``."""
    days = elapsed_days(mastery.last_attempt, now)
    if days <= 0:
        return replace(mastery, performance_window=list(mastery.performance_window))
    return replace(
        mastery,
        p_known=decayed_p_known(mastery.p_known, days),
        performance_window=list(mastery.performance_window),
    )


def apply_decay_to_profile(profile: LearnerProfile, now: datetime) -> LearnerProfile:
    decayed = {key: apply_decay(mastery, now) for key, mastery in profile.topic_mastery.items()}
    return replace(profile, topic_mastery=decayed)


__all__ = [
    "FLOOR_RATIO",
    "HALF_LIFE_DAYS",
    "apply_decay",
    "apply_decay_to_profile",
    "decayed_p_known",
    "elapsed_days",
]
