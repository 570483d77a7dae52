"""Tests for db.py: profile documents, conditional insert, subscriptions, override log."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from learner_mastery import db
from learner_mastery.models import LearnerProfile, TopicMastery

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fresh_db(tmp_path):
    """Use a temp file DB for each test."""
    db_path = tmp_path / "test.db"
    db.DB_PATH = db_path
    db.init_db()
    yield
    if db_path.exists():
        db_path.unlink()


def _profile(total_quizzes: int = 1) -> LearnerProfile:
    mastery = TopicMastery(
        topic="כפל",
        subject_id="math",
        p_known=0.62,
        attempts=3,
        correct_count=2,
        incorrect_count=1,
        performance_window=[1, 0, 1],
        first_attempt=NOW,
        last_attempt=NOW,
    )
    return LearnerProfile(
        child_id="c1",
        family_id="f1",
        topic_mastery={mastery.key: mastery},
        total_quizzes=total_quizzes,
        total_questions=3,
        last_updated=NOW,
    )


class TestProfiles:
    def test_missing_profile_is_none(self):
        assert db.get_profile("nobody") is None

    def test_round_trip(self):
        db.put_profile(_profile())
        stored = db.get_profile("c1")
        assert stored == _profile()

    def test_put_replaces(self):
        db.put_profile(_profile(1))
        db.put_profile(_profile(2))
        assert db.get_profile("c1").total_quizzes == 2

    def test_put_if_absent(self):
        assert db.put_profile_if_absent(_profile(1)) is True
        assert db.put_profile_if_absent(_profile(9)) is False
        assert db.get_profile("c1").total_quizzes == 1

    def test_corrupt_document_treated_as_missing(self):
        with db._open_connection() as conn:
            conn.execute(
                "INSERT INTO learner_profiles (child_id, family_id, document, version, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                ("c1", "f1", "{not json", 1, db.now_iso()),
            )
            conn.commit()
        assert db.get_profile("c1") is None

    def test_malformed_fields_are_clamped(self):
        document = (
            '{"child_id": "c1", "family_id": "f1", "topic_mastery": {"math/כפל": '
            '{"topic": "כפל", "subject_id": "math", "p_known": 3, "correct_count": 2, '
            '"incorrect_count": -4, "performance_window": [1, 1, 1, 1, 1], "recent_trend": "sideways"}}}'
        )
        with db._open_connection() as conn:
            conn.execute(
                "INSERT INTO learner_profiles (child_id, family_id, document, version, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                ("c1", "f1", document, 1, db.now_iso()),
            )
            conn.commit()
        mastery = db.get_profile("c1").get("math", "כפל")
        assert mastery.p_known == 1.0
        assert mastery.attempts == 2
        assert mastery.performance_window == [1, 1]
        assert mastery.recent_trend == "stable"

    def test_delete(self):
        db.put_profile(_profile())
        db.delete_profile("c1")
        assert db.get_profile("c1") is None


class TestSubscriptions:
    def test_current_value_delivered_then_updates(self):
        seen: list = []
        unsubscribe = db.subscribe("c1", seen.append)
        assert seen == [None]

        db.put_profile(_profile(1))
        db.put_profile(_profile(2))
        assert [profile.total_quizzes for profile in seen[1:]] == [1, 2]

        unsubscribe()
        db.put_profile(_profile(3))
        assert len(seen) == 3

    def test_other_children_not_delivered(self):
        seen: list = []
        unsubscribe = db.subscribe("c2", seen.append)
        db.put_profile(_profile())
        unsubscribe()
        assert seen == [None]

    def test_failing_listener_does_not_break_writes(self):
        def boom(profile):
            if profile is not None:
                raise RuntimeError("listener bug")

        unsubscribe = db.subscribe("c1", boom)
        db.put_profile(_profile())
        unsubscribe()
        assert db.get_profile("c1") is not None


class TestOverrideLog:
    def test_record_and_list(self):
        db.record_override("c1", "כפל", "too_hard", now=NOW)
        db.record_override("c1", "חילוק", "other", "כבר למדנו", now=NOW)
        db.record_override("c2", "כפל", "too_easy", now=NOW)
        records = db.list_overrides("c1")
        assert [record.topic for record in records] == ["כפל", "חילוק"]
        assert records[1].custom_reason == "כבר למדנו"
        assert records[0].timestamp == NOW
