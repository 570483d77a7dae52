"""Tests for forgetting.py: exponential decay toward a floor."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from learner_mastery.forgetting import apply_decay, apply_decay_to_profile, decayed_p_known
from learner_mastery.models import LearnerProfile, TopicMastery

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _mastery(p_known: float, days_ago: float) -> TopicMastery:
    return TopicMastery(
        topic="כפל",
        subject_id="math",
        p_known=p_known,
        attempts=10,
        correct_count=8,
        incorrect_count=2,
        performance_window=[1] * 8 + [0] * 2,
        last_attempt=NOW - timedelta(days=days_ago),
    )


def test_no_decay_at_zero_days():
    assert apply_decay(_mastery(0.85, 0), NOW).p_known == 0.85


def test_thirty_days_from_mastered():
    assert apply_decay(_mastery(0.85, 30), NOW).p_known == pytest.approx(0.4739, abs=1e-4)


def test_fractional_days_decay_a_little():
    decayed = apply_decay(_mastery(0.85, 0.5), NOW).p_known
    assert 0.83 < decayed < 0.85


def test_never_below_floor():
    assert decayed_p_known(0.9, 10_000) == pytest.approx(0.27, abs=1e-6)


def test_future_last_attempt_does_not_inflate():
    assert apply_decay(_mastery(0.6, -3), NOW).p_known == 0.6


def test_decay_is_a_view():
    stored = _mastery(0.85, 30)
    decayed = apply_decay(stored, NOW)
    assert stored.p_known == 0.85
    assert decayed.attempts == stored.attempts
    decayed.performance_window.append(1)
    assert len(stored.performance_window) == 10


def test_profile_decay_covers_every_topic():
    profile = LearnerProfile(
        child_id="c1",
        family_id="f1",
        topic_mastery={"math/כפל": _mastery(0.85, 30), "math/חילוק": _mastery(0.4, 0)},
    )
    decayed = apply_decay_to_profile(profile, NOW)
    assert decayed.topic_mastery["math/כפל"].p_known < 0.5
    assert decayed.topic_mastery["math/חילוק"].p_known == 0.4
    assert profile.topic_mastery["math/כפל"].p_known == 0.85


@pytest.mark.parametrize("p_known", [0.2, 0.5, 0.85, 0.99])
def test_decay_strictly_decreases_with_elapsed_time(p_known):
    values = [apply_decay(_mastery(p_known, days), NOW).p_known for days in (0, 1, 7, 30, 365)]
    assert all(later < earlier for earlier, later in zip(values, values[1:]))
    assert values[-1] > p_known * 0.3
