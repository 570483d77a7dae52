"""SQLite profile store: one JSON profile document per child, override log."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from loguru import logger

from .errors import StoreError
from .models import LearnerProfile, OverrideReason, OverrideRecord, utc, utcnow

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH = DATA_DIR / "learner_mastery.db"
DB_PATH = Path(os.environ.get("LEARNER_MASTERY_DB_PATH", DEFAULT_DB_PATH))

ProfileListener = Callable[[LearnerProfile | None], None]

_listeners: dict[str, list[ProfileListener]] = {}
_listeners_lock = threading.Lock()


def _open_connection() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(DB_PATH)
    connection.row_factory = sqlite3.Row
    return connection


def now_iso(value: datetime | None = None) -> str:
    """Return the UTC timestamp (seconds precision) as ISO 8601."""

    return utc(value or utcnow()).isoformat(timespec="seconds")


def init_db() -> None:
    """Initialise the database schema if tables are missing."""

    with _open_connection() as connection:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS learner_profiles (
                child_id TEXT PRIMARY KEY,
                family_id TEXT NOT NULL,
                document TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS recommendation_overrides (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                child_id TEXT NOT NULL,
                topic TEXT NOT NULL,
                reason TEXT NOT NULL,
                custom_reason TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_overrides_child ON recommendation_overrides(child_id)"
        )
        connection.commit()


# ── Profiles ──────────────────────────────────────────────────────────────────


def get_profile(child_id: str) -> LearnerProfile | None:
    """Return the stored profile, or None when the child has none yet."""
    try:
        with _open_connection() as conn:
            row = conn.execute(
                "SELECT document FROM learner_profiles WHERE child_id = ?", (child_id,)
            ).fetchone()
    except sqlite3.Error as exc:
        logger.error(f"db: failed to read profile for {child_id}: {exc}")
        raise StoreError(f"Failed to read profile for {child_id}") from exc
    if row is None:
        logger.debug(f"db: no profile found for {child_id}")
        return None
    try:
        data = json.loads(row["document"])
    except json.JSONDecodeError:
        logger.warning(f"db: unreadable profile document for {child_id}, treating as missing")
        return None
    return LearnerProfile.from_dict(data)


def _write_profile(profile: LearnerProfile, *, only_if_absent: bool) -> bool:
    document = json.dumps(profile.to_dict(), ensure_ascii=False)
    verb = "INSERT OR IGNORE" if only_if_absent else "INSERT OR REPLACE"
    try:
        with _open_connection() as conn:
            cursor = conn.execute(
                f"""
                {verb} INTO learner_profiles (child_id, family_id, document, version, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (profile.child_id, profile.family_id, document, profile.version, now_iso()),
            )
            conn.commit()
            written = cursor.rowcount > 0
    except sqlite3.Error as exc:
        logger.error(f"db: failed to write profile for {profile.child_id}: {exc}")
        raise StoreError(f"Failed to write profile for {profile.child_id}") from exc
    if written:
        logger.debug(
            f"db: profile written for {profile.child_id} "
            f"({len(profile.topic_mastery)} topics, {profile.total_quizzes} quizzes)"
        )
        _notify(profile.child_id, profile)
    return written


def put_profile(profile: LearnerProfile) -> None:
    _write_profile(profile, only_if_absent=False)


def put_profile_if_absent(profile: LearnerProfile) -> bool:
    """Insert ``profile`` unless one already exists. Returns True if written."""
    return _write_profile(profile, only_if_absent=True)


def delete_profile(child_id: str) -> None:
    with _open_connection() as conn:
        conn.execute("DELETE FROM learner_profiles WHERE child_id = ?", (child_id,))
        conn.commit()
    _notify(child_id, None)


# ── Subscriptions ─────────────────────────────────────────────────────────────


def subscribe(child_id: str, callback: ProfileListener) -> Callable[[], None]:
    """Call ``callback`` with the latest profile after every write for ``child_id``.

    The current profile is delivered immediately. Returns an unsubscribe callable.
    """
    with _listeners_lock:
        _listeners.setdefault(child_id, []).append(callback)

    def unsubscribe() -> None:
        with _listeners_lock:
            callbacks = _listeners.get(child_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                _listeners.pop(child_id, None)

    callback(get_profile(child_id))
    return unsubscribe


def _notify(child_id: str, profile: LearnerProfile | None) -> None:
    with _listeners_lock:
        callbacks = list(_listeners.get(child_id, []))
    for callback in callbacks:
        try:
            callback(profile)
        except Exception:
            logger.exception(f"db: profile listener for {child_id} failed")


# ── Overrides ─────────────────────────────────────────────────────────────────


def record_override(
    child_id: str,
    topic: str,
    reason: OverrideReason,
    custom_reason: str | None = None,
    *,
    now: datetime | None = None,
) -> OverrideRecord:
    timestamp = utc(now or utcnow())
    with _open_connection() as conn:
        conn.execute(
            """
            INSERT INTO recommendation_overrides (child_id, topic, reason, custom_reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (child_id, topic, reason, custom_reason, now_iso(timestamp)),
        )
        conn.commit()
    logger.info(f"db: recorded override for {child_id}: {topic} ({reason})")
    return OverrideRecord(
        child_id=child_id,
        topic=topic,
        reason=reason,
        custom_reason=custom_reason,
        timestamp=timestamp.replace(microsecond=0),
    )


def list_overrides(child_id: str) -> list[OverrideRecord]:
    with _open_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM recommendation_overrides WHERE child_id = ? ORDER BY id ASC",
            (child_id,),
        ).fetchall()
    return [
        OverrideRecord(
            child_id=str(row["child_id"]),
            topic=str(row["topic"]),
            reason=row["reason"],
            custom_reason=row["custom_reason"],
            timestamp=datetime.fromisoformat(row["created_at"]),
        )
        for row in rows
    ]


__all__ = [
    "DB_PATH",
    "delete_profile",
    "get_profile",
    "init_db",
    "list_overrides",
    "now_iso",
    "put_profile",
    "put_profile_if_absent",
    "record_override",
    "subscribe",
]
