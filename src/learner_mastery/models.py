from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

Trend = Literal["improving", "stable", "declining"]
MasteryLevel = Literal["weak", "learning", "mastered"]
Category = Literal["weakness", "growth", "maintenance"]
Priority = Literal["urgent", "important", "review"]
Confidence = Literal["low", "medium", "high"]
OverrideReason = Literal["too_easy", "too_hard", "wrong_priority", "other"]

TRENDS: tuple[Trend, ...] = ("improving", "stable", "declining")
OVERRIDE_REASONS: tuple[OverrideReason, ...] = ("too_easy", "too_hard", "wrong_priority", "other")

WINDOW_SIZE = 10
PROFILE_VERSION = 1


def utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def topic_key(subject_id: str, topic: str) -> str:
    return f"{subject_id}/{topic}"


def _parse_datetime(value: Any, default: datetime | None) -> datetime | None:
    if isinstance(value, datetime):
        return utc(value)
    if isinstance(value, (int, float)) and math.isfinite(value):
        # Epoch milliseconds, as written by older profile documents.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return utc(datetime.fromisoformat(value))
        except ValueError:
            return default
    return default


def _non_negative_int(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, number)


def _probability(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(0.0, min(1.0, number))


@dataclass(slots=True, frozen=True)
class BKTParams:
    p_init: float
    p_learn: float
    p_guess: float
    p_slip: float

    def __post_init__(self) -> None:
        for name in ("p_init", "p_learn", "p_guess", "p_slip"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value!r}")


@dataclass(slots=True)
class TopicMastery:
    topic: str
    subject_id: str
    p_known: float
    attempts: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    performance_window: list[int] = field(default_factory=list)
    recent_trend: Trend = "stable"
    first_attempt: datetime | None = None
    last_attempt: datetime | None = None
    average_time: float | None = None

    @property
    def key(self) -> str:
        return topic_key(self.subject_id, self.topic)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "subject_id": self.subject_id,
            "p_known": self.p_known,
            "attempts": self.attempts,
            "correct_count": self.correct_count,
            "incorrect_count": self.incorrect_count,
            "performance_window": list(self.performance_window),
            "recent_trend": self.recent_trend,
            "first_attempt": self.first_attempt.isoformat() if self.first_attempt else None,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "average_time": self.average_time,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TopicMastery":
        """Build a mastery record from stored data, clamping anything malformed."""

        window = [1 if bit else 0 for bit in (data.get("performance_window") or [])]
        correct = _non_negative_int(data.get("correct_count"))
        incorrect = _non_negative_int(data.get("incorrect_count"))
        keep = min(WINDOW_SIZE, correct + incorrect)
        window = window[-keep:] if keep else []
        trend = data.get("recent_trend")
        first = _parse_datetime(data.get("first_attempt"), default=None)
        last = _parse_datetime(data.get("last_attempt"), default=first)
        average = data.get("average_time")
        try:
            average_time = float(average) if average is not None else None
        except (TypeError, ValueError):
            average_time = None
        if average_time is not None and (not math.isfinite(average_time) or average_time < 0):
            average_time = None
        return cls(
            topic=str(data.get("topic") or ""),
            subject_id=str(data.get("subject_id") or ""),
            p_known=_probability(data.get("p_known"), default=0.5),
            attempts=correct + incorrect,
            correct_count=correct,
            incorrect_count=incorrect,
            performance_window=window,
            recent_trend=trend if trend in TRENDS else "stable",
            first_attempt=first,
            last_attempt=last,
            average_time=average_time,
        )


@dataclass(slots=True)
class LearnerProfile:
    child_id: str
    family_id: str
    topic_mastery: dict[str, TopicMastery] = field(default_factory=dict)
    total_quizzes: int = 0
    total_questions: int = 0
    last_updated: datetime = field(default_factory=utcnow)
    version: int = PROFILE_VERSION

    def get(self, subject_id: str, topic: str) -> TopicMastery | None:
        return self.topic_mastery.get(topic_key(subject_id, topic))

    def find_topic(self, topic: str, subject_id: str | None = None) -> TopicMastery | None:
        """Look a topic up by key, falling back to a name match across subjects."""

        if subject_id is not None:
            return self.get(subject_id, topic)
        direct = self.topic_mastery.get(topic)
        if direct is not None:
            return direct
        for key in sorted(self.topic_mastery):
            mastery = self.topic_mastery[key]
            if mastery.topic == topic:
                return mastery
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "child_id": self.child_id,
            "family_id": self.family_id,
            "topic_mastery": {key: value.to_dict() for key, value in self.topic_mastery.items()},
            "total_quizzes": self.total_quizzes,
            "total_questions": self.total_questions,
            "last_updated": self.last_updated.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LearnerProfile":
        mastery: dict[str, TopicMastery] = {}
        raw_topics = data.get("topic_mastery") or {}
        if isinstance(raw_topics, Mapping):
            for raw in raw_topics.values():
                if not isinstance(raw, Mapping):
                    continue
                record = TopicMastery.from_dict(raw)
                if record.topic:
                    mastery[record.key] = record
        version = _non_negative_int(data.get("version")) or PROFILE_VERSION
        return cls(
            child_id=str(data.get("child_id") or ""),
            family_id=str(data.get("family_id") or ""),
            topic_mastery=mastery,
            total_quizzes=_non_negative_int(data.get("total_quizzes")),
            total_questions=_non_negative_int(data.get("total_questions")),
            last_updated=_parse_datetime(data.get("last_updated"), default=utcnow()),
            version=version,
        )


@dataclass(slots=True)
class RegressionAlert:
    id: str
    child_id: str
    child_name: str
    topic: str
    subject_id: str
    subject_name: str
    message: str
    previous_p_known: float
    current_p_known: float
    timestamp: datetime
    dismissed: bool = False


@dataclass(slots=True)
class PrerequisiteHint:
    topic: str
    rationale: str


@dataclass(slots=True)
class ScoredTopic:
    topic: str
    subject_id: str | None
    score: float
    mastery_score: float
    urgency_score: float
    goal_score: float
    category: Category
    confidence: Confidence
    p_known: float | None = None
    attempts: int = 0
    recent_trend: Trend = "stable"
    days_to_test: float | None = None
    goal_match: bool = False
    decay_drop: float = 0.0


@dataclass(slots=True)
class Recommendation:
    topic: str
    score: float
    priority: Priority
    confidence: Confidence
    category: Category
    reasoning: list[str] = field(default_factory=list)
    prerequisite: PrerequisiteHint | None = None


@dataclass(slots=True)
class LearningGoal:
    child_id: str
    subject_id: str
    topic: str
    target_date: datetime | None = None
    description: str = ""


@dataclass(slots=True)
class UpcomingTest:
    child_id: str
    subject_id: str
    topics: list[str]
    date: datetime


@dataclass(slots=True)
class StudySession:
    """A completed quiz: one topic, answered questions in order."""

    child_id: str
    subject_id: str
    topic: str
    date: datetime
    score: int
    total_questions: int
    answers: list[bool] | None = None
    average_time: float | None = None


@dataclass(slots=True)
class Subject:
    id: str
    name: str
    topics: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OverrideRecord:
    child_id: str
    topic: str
    reason: OverrideReason
    custom_reason: str | None
    timestamp: datetime


__all__ = [
    "BKTParams",
    "Category",
    "Confidence",
    "LearnerProfile",
    "LearningGoal",
    "MasteryLevel",
    "OVERRIDE_REASONS",
    "OverrideReason",
    "OverrideRecord",
    "PROFILE_VERSION",
    "PrerequisiteHint",
    "Priority",
    "Recommendation",
    "RegressionAlert",
    "ScoredTopic",
    "StudySession",
    "Subject",
    "TRENDS",
    "TopicMastery",
    "Trend",
    "UpcomingTest",
    "WINDOW_SIZE",
    "topic_key",
    "utc",
    "utcnow",
]
