"""Quiz signals: apply completed sessions to learner profiles, bootstrap from history."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from loguru import logger

from . import db
from .background import spawn
from .bkt import apply_bkt_step, get_bkt_params, new_topic_mastery
from .errors import ProfileUpdateError
from .models import BKTParams, LearnerProfile, StudySession, topic_key, utc, utcnow

MAX_WRITE_RETRIES = 2


class ProfileStore(Protocol):
    def get_profile(self, child_id: str) -> LearnerProfile | None: ...

    def put_profile(self, profile: LearnerProfile) -> None: ...

    def put_profile_if_absent(self, profile: LearnerProfile) -> bool: ...


_child_locks: dict[str, threading.Lock] = {}
_child_locks_guard = threading.Lock()


def _lock_for(child_id: str) -> threading.Lock:
    with _child_locks_guard:
        return _child_locks.setdefault(child_id, threading.Lock())


def initialize_profile(child_id: str, family_id: str, now: datetime | None = None) -> LearnerProfile:
    return LearnerProfile(child_id=child_id, family_id=family_id, last_updated=utc(now) if now else utcnow())


def session_outcomes(session: StudySession) -> list[bool]:
    """Per-question correctness in answer order.

    Sessions recorded without per-question answers are expanded from their
    score: the misses first, then the hits. A side effect is that a flat
    history such as 5/10, 5/10, 5/10 ends with an "improving" trend, since
    the last window holds five misses followed by five hits.
    """
    if session.answers is not None:
        return [bool(answer) for answer in session.answers]
    total = max(0, session.total_questions)
    correct = max(0, min(session.score, total))
    return [False] * (total - correct) + [True] * correct


def apply_session(
    profile: LearnerProfile,
    session: StudySession,
    params: BKTParams,
    now: datetime | None = None,
) -> LearnerProfile:
    """Return a new profile with every answer of ``session`` applied in order."""
    moment = utc(now) if now else utc(session.date)
    outcomes = session_outcomes(session)
    key = topic_key(session.subject_id, session.topic)

    mastery = profile.topic_mastery.get(key)
    if mastery is None:
        mastery = new_topic_mastery(session.topic, session.subject_id, params, moment)
    for was_correct in outcomes:
        mastery = apply_bkt_step(
            mastery, was_correct, params, moment, response_time=session.average_time
        )

    topics = dict(profile.topic_mastery)
    if outcomes:
        topics[key] = mastery
    return replace(
        profile,
        topic_mastery=topics,
        total_quizzes=profile.total_quizzes + 1,
        total_questions=profile.total_questions + len(outcomes),
        last_updated=moment,
    )


def bootstrap_profile(
    child_id: str,
    family_id: str,
    sessions: Iterable[StudySession],
    grade: int | str | None,
    now: datetime | None = None,
) -> LearnerProfile:
    """Rebuild a profile by replaying historical sessions oldest first.

    Starts from the default prior every time, so re-running against the
    same history yields the same profile.
    """
    params = get_bkt_params(grade)
    ordered = sorted(
        (session for session in sessions if session.child_id == child_id),
        key=lambda session: utc(session.date),
    )
    logger.info(f"signals: bootstrapping profile for {child_id} from {len(ordered)} sessions")

    profile = initialize_profile(child_id, family_id, now)
    for session in ordered:
        profile = apply_session(profile, session, params)
    if now is not None:
        profile = replace(profile, last_updated=utc(now))

    logger.info(
        f"signals: profile bootstrapped for {child_id}: "
        f"{len(profile.topic_mastery)} topics, {profile.total_quizzes} quizzes"
    )
    return profile


def _put_with_retry(store: ProfileStore, profile: LearnerProfile) -> None:
    for attempt in range(MAX_WRITE_RETRIES + 1):
        try:
            store.put_profile(profile)
            return
        except Exception as exc:
            if attempt == MAX_WRITE_RETRIES:
                raise
            logger.warning(
                f"signals: profile write for {profile.child_id} failed "
                f"(attempt {attempt + 1}), retrying: {exc!r}"
            )


def process_quiz_signal(
    session: StudySession,
    grade: int | str | None,
    family_id: str,
    store: ProfileStore = db,
) -> LearnerProfile:
    """Apply one completed session to the stored profile as a single unit.

    Updates for the same child are serialised so answers are never applied
    out of order or lost between read and write.
    """
    logger.info(
        f"signals: processing quiz for {session.child_id}: {session.topic} "
        f"{session.score}/{session.total_questions}"
    )
    with _lock_for(session.child_id):
        try:
            profile = store.get_profile(session.child_id)
            if profile is None:
                logger.info(f"signals: initializing first profile for {session.child_id}")
                profile = initialize_profile(session.child_id, family_id, session.date)
            updated = apply_session(profile, session, get_bkt_params(grade))
            _put_with_retry(store, updated)
        except Exception as exc:
            logger.error(f"signals: quiz processing failed for {session.child_id}: {exc!r}")
            raise ProfileUpdateError(f"Failed to process quiz for {session.child_id}") from exc
    return updated


def bootstrap_and_store(
    child_id: str,
    family_id: str,
    sessions: Iterable[StudySession],
    grade: int | str | None,
    store: ProfileStore = db,
    now: datetime | None = None,
) -> LearnerProfile | None:
    """Bootstrap and write the profile unless one was created meanwhile."""
    profile = bootstrap_profile(child_id, family_id, sessions, grade, now)
    with _lock_for(child_id):
        if not store.put_profile_if_absent(profile):
            logger.info(f"signals: profile for {child_id} already exists, bootstrap skipped")
            return None
    return profile


def bootstrap_in_background(
    child_id: str,
    family_id: str,
    sessions: Iterable[StudySession],
    grade: int | str | None,
    store: ProfileStore = db,
) -> Future:
    return spawn(
        bootstrap_and_store,
        child_id,
        family_id,
        list(sessions),
        grade,
        store,
        description=f"bootstrap for {child_id}",
    )


__all__ = [
    "ProfileStore",
    "apply_session",
    "bootstrap_and_store",
    "bootstrap_in_background",
    "bootstrap_profile",
    "initialize_profile",
    "process_quiz_signal",
    "session_outcomes",
]
