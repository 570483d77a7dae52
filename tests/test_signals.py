"""Tests for signals.py: quiz processing, bootstrap and per-child serialisation."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from learner_mastery import db
from learner_mastery.bkt import DEFAULT_PARAMS, apply_bkt_step, new_topic_mastery
from learner_mastery.errors import ProfileUpdateError
from learner_mastery.models import LearnerProfile, StudySession
from learner_mastery.signals import (
    bootstrap_and_store,
    bootstrap_in_background,
    bootstrap_profile,
    process_quiz_signal,
    session_outcomes,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fresh_db(tmp_path):
    """Use a temp file DB for each test."""
    db_path = tmp_path / "test.db"
    db.DB_PATH = db_path
    db.init_db()
    yield


def _session(score: int, total: int, days_ago: float = 0, answers=None, topic="כפל", child_id="c1") -> StudySession:
    return StudySession(
        child_id=child_id,
        subject_id="math",
        topic=topic,
        date=NOW - timedelta(days=days_ago),
        score=score,
        total_questions=total,
        answers=answers,
    )


class TestSessionOutcomes:
    def test_uses_answers_when_present(self):
        assert session_outcomes(_session(2, 3, answers=[True, False, True])) == [True, False, True]

    def test_expands_score_misses_first(self):
        assert session_outcomes(_session(2, 4)) == [False, False, True, True]

    def test_score_clamped_to_total(self):
        assert session_outcomes(_session(7, 5)) == [True] * 5


class TestBootstrap:
    def test_matches_question_by_question_replay(self):
        answers = [index % 3 != 0 for index in range(20)]
        sessions = [
            _session(int(answer), 1, days_ago=20 - index, answers=[answer])
            for index, answer in enumerate(answers)
        ]
        profile = bootstrap_profile("c1", "f1", sessions, grade=5)

        expected = new_topic_mastery("כפל", "math", DEFAULT_PARAMS, NOW)
        for answer in answers:
            expected = apply_bkt_step(expected, answer, DEFAULT_PARAMS, NOW)

        mastery = profile.get("math", "כפל")
        assert mastery.p_known == pytest.approx(expected.p_known)
        assert mastery.attempts == 20
        assert mastery.performance_window == expected.performance_window
        assert profile.total_quizzes == 20
        assert profile.total_questions == 20

    def test_sessions_replayed_oldest_first(self):
        older = _session(0, 5, days_ago=3)
        newer = _session(5, 5, days_ago=1)
        forward = bootstrap_profile("c1", "f1", [newer, older], grade=4)
        ordered = bootstrap_profile("c1", "f1", [older, newer], grade=4)
        assert forward.get("math", "כפל").p_known == ordered.get("math", "כפל").p_known
        assert forward.get("math", "כפל").performance_window == [0] * 5 + [1] * 5

    def test_is_deterministic(self):
        sessions = [_session(5, 10, 3), _session(7, 10, 2), _session(9, 10, 1)]
        first = bootstrap_profile("c1", "f1", sessions, grade=4, now=NOW)
        second = bootstrap_profile("c1", "f1", sessions, grade=4, now=NOW)
        assert first.to_dict() == second.to_dict()

    def test_flat_scores_without_answers_read_as_improving(self):
        sessions = [_session(5, 10, 3), _session(5, 10, 2), _session(5, 10, 1)]
        mastery = bootstrap_profile("c1", "f1", sessions, grade=4).get("math", "כפל")
        assert mastery.performance_window == [0] * 5 + [1] * 5
        assert mastery.recent_trend == "improving"

    def test_ignores_other_children(self):
        profile = bootstrap_profile("c1", "f1", [_session(5, 5, child_id="c2")], grade=4)
        assert profile.topic_mastery == {}

    def test_grade_selects_params(self):
        young = bootstrap_profile("c1", "f1", [_session(1, 1)], grade=2)
        old = bootstrap_profile("c1", "f1", [_session(1, 1)], grade=8)
        assert young.get("math", "כפל").p_known != old.get("math", "כפל").p_known

    def test_store_skips_existing_profile(self):
        existing = LearnerProfile(child_id="c1", family_id="f1", total_quizzes=42)
        db.put_profile(existing)
        assert bootstrap_and_store("c1", "f1", [_session(5, 10)], grade=4) is None
        assert db.get_profile("c1").total_quizzes == 42

    def test_store_writes_new_profile(self):
        stored = bootstrap_and_store("c1", "f1", [_session(5, 10)], grade=4)
        assert stored is not None
        assert db.get_profile("c1").get("math", "כפל").attempts == 10

    def test_background_bootstrap_never_raises(self):
        class BrokenStore:
            def get_profile(self, child_id):
                return None

            def put_profile(self, profile):
                raise RuntimeError("offline")

            def put_profile_if_absent(self, profile):
                raise RuntimeError("offline")

        future = bootstrap_in_background("c1", "f1", [_session(5, 10)], grade=4, store=BrokenStore())
        assert future.result(timeout=5) is None


class TestProcessQuizSignal:
    def test_creates_profile_on_first_quiz(self):
        profile = process_quiz_signal(_session(3, 4, answers=[True, True, False, True]), 4, "f1")
        assert profile.total_quizzes == 1
        assert profile.total_questions == 4
        stored = db.get_profile("c1")
        assert stored.get("math", "כפל").correct_count == 3

    def test_updates_existing_profile(self):
        process_quiz_signal(_session(5, 5, days_ago=1), 4, "f1")
        profile = process_quiz_signal(_session(0, 5), 4, "f1")
        mastery = profile.get("math", "כפל")
        assert mastery.attempts == 10
        assert mastery.performance_window == [1] * 5 + [0] * 5
        assert profile.total_quizzes == 2

    def test_topics_are_independent(self):
        process_quiz_signal(_session(5, 5), 4, "f1")
        profile = process_quiz_signal(_session(0, 5, topic="חילוק"), 4, "f1")
        assert profile.get("math", "כפל").correct_count == 5
        assert profile.get("math", "חילוק").incorrect_count == 5

    def test_write_failure_raises_profile_update_error(self):
        class FailingStore:
            writes = 0

            def get_profile(self, child_id):
                return None

            def put_profile(self, profile):
                FailingStore.writes += 1
                raise RuntimeError("disk full")

            def put_profile_if_absent(self, profile):
                return False

        with pytest.raises(ProfileUpdateError):
            process_quiz_signal(_session(1, 1), 4, "f1", store=FailingStore())
        assert FailingStore.writes == 3

    def test_transient_write_failure_is_retried(self):
        class FlakyStore:
            def __init__(self):
                self.saved = None
                self.calls = 0

            def get_profile(self, child_id):
                return self.saved

            def put_profile(self, profile):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("busy")
                self.saved = profile

            def put_profile_if_absent(self, profile):
                return False

        store = FlakyStore()
        process_quiz_signal(_session(1, 1), 4, "f1", store=store)
        assert store.saved.total_quizzes == 1

    def test_concurrent_quizzes_are_not_lost(self):
        barrier = threading.Barrier(8)
        errors: list[Exception] = []

        def submit(index: int) -> None:
            barrier.wait()
            try:
                process_quiz_signal(_session(1, 1, days_ago=index / 100), 4, "f1")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=submit, args=(index,)) for index in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        profile = db.get_profile("c1")
        assert profile.total_quizzes == 8
        assert profile.get("math", "כפל").attempts == 8
