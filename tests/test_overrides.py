"""Tests for overrides.py: local exclusion set, best-effort recording, refresh."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from learner_mastery import db
from learner_mastery.models import LearnerProfile, LearningGoal, Subject, UpcomingTest
from learner_mastery.overrides import RecommendationBoard

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MATH = Subject(id="math", name="מתמטיקה", topics=["כפל", "חילוק", "שברים", "גאומטריה"])


@pytest.fixture(autouse=True)
def fresh_db(tmp_path):
    db.DB_PATH = tmp_path / "test.db"
    db.init_db()
    yield


def _profile() -> LearnerProfile:
    return LearnerProfile(child_id="c1", family_id="f1")


def _topics(recs) -> list[str]:
    return [rec.topic for rec in recs]


class RecordingStub:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple] = []

    def record_override(self, child_id, topic, reason, custom_reason=None):
        self.calls.append((child_id, topic, reason, custom_reason))
        if self.fail:
            raise RuntimeError("network down")


def test_override_hides_topic_until_refresh():
    board = RecommendationBoard("c1", RecordingStub())
    tests = [UpcomingTest(child_id="c1", subject_id="math", topics=["כפל"], date=NOW + timedelta(days=2))]
    assert _topics(board.recommendations(_profile(), MATH, tests, [], NOW))[0] == "כפל"

    board.handle_override("כפל", "too_hard").result(timeout=5)
    assert "כפל" not in _topics(board.recommendations(_profile(), MATH, tests, [], NOW))

    board.refresh()
    assert "כפל" in _topics(board.recommendations(_profile(), MATH, tests, [], NOW))


def test_recorder_failure_keeps_topic_hidden():
    recorder = RecordingStub(fail=True)
    board = RecommendationBoard("c1", recorder)
    future = board.handle_override("כפל", "wrong_priority")
    assert future.result(timeout=5) is None
    assert recorder.calls == [("c1", "כפל", "wrong_priority", None)]
    assert "כפל" not in _topics(board.recommendations(_profile(), MATH, [], [], NOW))


def test_custom_reason_only_kept_for_other():
    recorder = RecordingStub()
    board = RecommendationBoard("c1", recorder)
    board.handle_override("כפל", "too_easy", "ignored").result(timeout=5)
    board.handle_override("חילוק", "other", "כבר למדנו בבית").result(timeout=5)
    assert recorder.calls[0][3] is None
    assert recorder.calls[1][3] == "כבר למדנו בבית"


def test_invalid_reason_rejected():
    board = RecommendationBoard("c1", RecordingStub())
    with pytest.raises(ValueError):
        board.handle_override("כפל", "boring")
    assert board.overrides == frozenset()


def test_override_is_recorded_in_store():
    board = RecommendationBoard("c1")
    board.handle_override("כפל", "other", "לא רלוונטי").result(timeout=5)
    (record,) = db.list_overrides("c1")
    assert record.topic == "כפל"
    assert record.reason == "other"
    assert record.custom_reason == "לא רלוונטי"


def test_no_profile_yields_nothing():
    board = RecommendationBoard("c1", None)
    assert board.recommendations(None, MATH, [], [], NOW) == []


def test_other_childrens_context_ignored():
    board = RecommendationBoard("c1", None)
    tests = [UpcomingTest(child_id="c2", subject_id="math", topics=["שברים"], date=NOW + timedelta(days=1))]
    goals = [LearningGoal(child_id="c2", subject_id="math", topic="שברים")]
    recs = board.recommendations(_profile(), MATH, tests, goals, NOW)
    assert all(rec.score == pytest.approx(17.0) for rec in recs)
