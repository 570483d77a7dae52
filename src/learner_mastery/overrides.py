"""Parent overrides: dismiss a recommendation until the next refresh."""

from __future__ import annotations

from concurrent.futures import Future
from datetime import datetime
from typing import Protocol

from loguru import logger

from . import db
from .background import spawn
from .models import (
    OVERRIDE_REASONS,
    LearnerProfile,
    LearningGoal,
    OverrideReason,
    OverrideRecord,
    Recommendation,
    Subject,
    UpcomingTest,
    utc,
    utcnow,
)
from .prerequisites import PrerequisiteTable
from .recommendations import DEFAULT_COUNT, generate_recommendations, score_topic


class OverrideRecorder(Protocol):
    def record_override(
        self,
        child_id: str,
        topic: str,
        reason: OverrideReason,
        custom_reason: str | None = None,
    ) -> OverrideRecord: ...


class RecommendationBoard:
    """One child's recommendation view with its local exclusion set.

    Overrides apply immediately and only in memory; recording the reason is
    best-effort and never brings a dismissed topic back. :meth:`refresh`
    clears every local override.
    """

    def __init__(
        self,
        child_id: str,
        recorder: OverrideRecorder | None = db,
        prerequisites: PrerequisiteTable | None = None,
    ) -> None:
        self.child_id = child_id
        self.recorder = recorder
        self.prerequisites = prerequisites
        self._overrides: set[str] = set()

    @property
    def overrides(self) -> frozenset[str]:
        return frozenset(self._overrides)

    def handle_override(
        self, topic: str, reason: OverrideReason, custom_reason: str | None = None
    ) -> Future | None:
        if reason not in OVERRIDE_REASONS:
            raise ValueError(f"Unsupported override reason: {reason}")
        self._overrides.add(topic)
        logger.info(f"overrides: {self.child_id} dismissed {topic} ({reason})")
        if self.recorder is None:
            return None
        return spawn(
            self.recorder.record_override,
            self.child_id,
            topic,
            reason,
            custom_reason if reason == "other" else None,
            description=f"override record for {self.child_id}/{topic}",
        )

    def refresh(self) -> None:
        logger.info(f"overrides: refreshing {self.child_id}, clearing {len(self._overrides)} overrides")
        self._overrides.clear()

    def recommendations(
        self,
        profile: LearnerProfile | None,
        subject: Subject,
        tests: list[UpcomingTest],
        goals: list[LearningGoal],
        now: datetime | None = None,
        count: int = DEFAULT_COUNT,
    ) -> list[Recommendation]:
        """Score the subject's topics for this child and drop overridden ones."""
        if profile is None:
            return []
        moment = utc(now) if now else utcnow()
        relevant_tests = [
            test for test in tests
            if test.child_id == self.child_id and test.subject_id == subject.id
        ]
        relevant_goals = [
            goal for goal in goals
            if goal.child_id == self.child_id and goal.subject_id == subject.id
        ]
        scored = [
            score_topic(topic, profile, relevant_tests, relevant_goals, subject.id, moment)
            for topic in subject.topics
            if topic not in self._overrides
        ]
        return generate_recommendations(scored, count, self.prerequisites, profile)


__all__ = ["OverrideRecorder", "RecommendationBoard"]
