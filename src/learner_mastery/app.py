from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from . import db
from .catalog import load_subjects
from .errors import ProfileUpdateError
from .forgetting import apply_decay_to_profile
from .models import (
    LearningGoal,
    OverrideReason,
    StudySession,
    Subject,
    UpcomingTest,
    utc,
    utcnow,
)
from .overrides import RecommendationBoard
from .prerequisites import load_prerequisites
from .recommendations import DEFAULT_COUNT, get_confidence_message, profile_confidence
from .regression import RegressionMonitor
from .signals import bootstrap_in_background, process_quiz_signal

# Schema must exist before the first request, with or without lifespan events.
db.init_db()


@asynccontextmanager
async def lifespan(_: FastAPI):
    db.init_db()
    yield
    reset_registries()


app = FastAPI(title="Learner Mastery", lifespan=lifespan)

_boards: dict[str, RecommendationBoard] = {}
_monitors: dict[str, RegressionMonitor] = {}
_unsubscribers: dict[str, Callable[[], None]] = {}
_bootstraps: dict[str, Future] = {}


def reset_registries() -> None:
    """Drop every per-child board and monitor, detaching monitors from the store."""
    for unsubscribe in _unsubscribers.values():
        unsubscribe()
    _unsubscribers.clear()
    _monitors.clear()
    _boards.clear()
    _bootstraps.clear()


class SessionIn(BaseModel):
    subject_id: str
    topic: str
    score: int = Field(ge=0)
    total_questions: int = Field(ge=0)
    date: datetime | None = None
    answers: list[bool] | None = None
    average_time: float | None = None

    def to_session(self, child_id: str) -> StudySession:
        return StudySession(
            child_id=child_id,
            subject_id=self.subject_id,
            topic=self.topic,
            date=utc(self.date) if self.date else utcnow(),
            score=self.score,
            total_questions=self.total_questions,
            answers=self.answers,
            average_time=self.average_time,
        )


class QuizIn(SessionIn):
    family_id: str
    grade: int | str | None = None
    child_name: str = ""


class BootstrapIn(BaseModel):
    family_id: str
    grade: int | str | None = None
    sessions: list[SessionIn] = Field(default_factory=list)


class UpcomingTestIn(BaseModel):
    subject_id: str
    topics: list[str]
    date: datetime


class GoalIn(BaseModel):
    subject_id: str
    topic: str
    target_date: datetime | None = None
    description: str = ""


class RecommendationsIn(BaseModel):
    subject_id: str
    topics: list[str] | None = None
    tests: list[UpcomingTestIn] = Field(default_factory=list)
    goals: list[GoalIn] = Field(default_factory=list)
    count: int = Field(default=DEFAULT_COUNT, ge=0)


class OverrideIn(BaseModel):
    topic: str
    reason: OverrideReason
    custom_reason: str | None = None


def _board(child_id: str) -> RecommendationBoard:
    board = _boards.get(child_id)
    if board is None:
        board = RecommendationBoard(child_id, db, load_prerequisites())
        _boards[child_id] = board
    return board


def _monitor(child_id: str, child_name: str = "") -> RegressionMonitor:
    monitor = _monitors.get(child_id)
    if monitor is None:
        monitor = RegressionMonitor(child_id, child_name, load_subjects())
        # Receives the stored profile now and every later write, bootstraps included.
        _unsubscribers[child_id] = db.subscribe(child_id, monitor.observe)
        _monitors[child_id] = monitor
    elif child_name:
        monitor.child_name = child_name
    return monitor


def _alert_payload(monitor: RegressionMonitor) -> dict[str, Any]:
    active = monitor.active_notification()
    return {
        "alerts": [asdict(alert) for alert in monitor.alerts],
        "active_notification": asdict(active) if active else None,
    }


@app.get("/")
async def index() -> dict[str, str]:
    return {"name": "Learner Mastery", "status": "ok"}


@app.get("/children/{child_id}/profile")
async def read_profile(child_id: str, decayed: bool = True) -> dict[str, Any]:
    profile = db.get_profile(child_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    view = apply_decay_to_profile(profile, utcnow()) if decayed else profile
    confidence = profile_confidence(profile)
    return {
        "profile": view.to_dict(),
        "confidence": confidence,
        "confidence_message": get_confidence_message(confidence),
    }


@app.post("/children/{child_id}/sessions")
async def complete_session(child_id: str, payload: QuizIn) -> dict[str, Any]:
    monitor = _monitor(child_id, payload.child_name)
    seen = len(monitor.alerts)
    try:
        profile = process_quiz_signal(payload.to_session(child_id), payload.grade, payload.family_id)
    except ProfileUpdateError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    new_alerts = monitor.alerts[seen:]
    return {
        "profile": profile.to_dict(),
        "new_alerts": [asdict(alert) for alert in new_alerts],
        **_alert_payload(monitor),
    }


@app.post("/children/{child_id}/bootstrap", status_code=status.HTTP_202_ACCEPTED)
async def bootstrap(child_id: str, payload: BootstrapIn) -> dict[str, Any]:
    if db.get_profile(child_id) is not None:
        return {"status": "exists"}
    if not payload.sessions:
        return {"status": "skipped"}
    sessions = [session.to_session(child_id) for session in payload.sessions]
    _bootstraps[child_id] = bootstrap_in_background(child_id, payload.family_id, sessions, payload.grade)
    return {"status": "scheduled", "sessions": len(sessions)}


@app.post("/children/{child_id}/recommendations")
async def recommendations(child_id: str, payload: RecommendationsIn) -> dict[str, Any]:
    if payload.topics is not None:
        subject = Subject(id=payload.subject_id, name=payload.subject_id, topics=payload.topics)
    else:
        subject = load_subjects().get(payload.subject_id)
        if subject is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown subject")
    tests = [
        UpcomingTest(child_id=child_id, subject_id=test.subject_id, topics=test.topics, date=utc(test.date))
        for test in payload.tests
    ]
    goals = [
        LearningGoal(
            child_id=child_id,
            subject_id=goal.subject_id,
            topic=goal.topic,
            target_date=utc(goal.target_date) if goal.target_date else None,
            description=goal.description,
        )
        for goal in payload.goals
    ]
    profile = db.get_profile(child_id)
    board = _board(child_id)
    recs = board.recommendations(profile, subject, tests, goals, count=payload.count)
    return {
        "recommendations": [asdict(rec) for rec in recs],
        "overrides": sorted(board.overrides),
        "has_profile": profile is not None,
    }


@app.post("/children/{child_id}/overrides")
async def override(child_id: str, payload: OverrideIn) -> dict[str, Any]:
    board = _board(child_id)
    board.handle_override(payload.topic, payload.reason, payload.custom_reason)
    return {"overrides": sorted(board.overrides)}


@app.post("/children/{child_id}/recommendations/refresh")
async def refresh(child_id: str) -> dict[str, Any]:
    board = _board(child_id)
    board.refresh()
    return {"overrides": []}


@app.get("/children/{child_id}/alerts")
async def alerts(child_id: str) -> dict[str, Any]:
    return _alert_payload(_monitor(child_id))


@app.post("/children/{child_id}/alerts/{alert_id}/dismiss")
async def dismiss_alert(child_id: str, alert_id: str) -> dict[str, Any]:
    monitor = _monitor(child_id)
    monitor.dismiss_alert(alert_id)
    return _alert_payload(monitor)


def main() -> None:
    import uvicorn

    uvicorn.run("learner_mastery.app:app", host="127.0.0.1", port=8000, reload=True)


if __name__ == "__main__":
    main()
