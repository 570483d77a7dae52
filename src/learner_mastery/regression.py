"""Regression detection: mastered topics that slip below the re-alert band.

A topic regresses when the previous snapshot had ``p_known >= 0.8`` and the
current one is below ``0.7``. Alerts for the same topic are throttled by a
cooldown, and only the first alert of an update becomes the active
notification.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timedelta

from loguru import logger

from .bkt import MASTERED_THRESHOLD
from .models import LearnerProfile, RegressionAlert, Subject, TopicMastery, utc, utcnow

REALERT_THRESHOLD = 0.70
ALERT_COOLDOWN = timedelta(hours=24)
NOTIFICATION_TIMEOUT = timedelta(seconds=8)
DEFAULT_SUBJECT_NAME = "נושא"


def detect_regression(current: TopicMastery, previous: TopicMastery | None) -> bool:
    if previous is None or previous.key != current.key:
        return False
    was_mastered = previous.p_known >= MASTERED_THRESHOLD
    is_below = current.p_known < REALERT_THRESHOLD
    logger.debug(
        f"regression: {current.key} previous={previous.p_known:.3f} "
        f"current={current.p_known:.3f} was_mastered={was_mastered} below={is_below}"
    )
    return was_mastered and is_below


def should_alert_for_regression(
    current: TopicMastery,
    last_alerted_at: datetime | None,
    now: datetime | None = None,
    cooldown: timedelta = ALERT_COOLDOWN,
) -> bool:
    """True when the topic was never alerted or its cooldown has run out."""
    if last_alerted_at is None:
        return True
    moment = utc(now) if now else utcnow()
    expired = moment - utc(last_alerted_at) >= cooldown
    logger.debug(f"regression: cooldown check for {current.key}: expired={expired}")
    return expired


def format_alert_message(child_name: str, topic: str, subject_name: str) -> str:
    return f"{child_name} נראה/ת מתקשה ב{topic} ({subject_name})"


def create_regression_alert(
    child_id: str,
    child_name: str,
    mastery: TopicMastery,
    subject_name: str,
    previous_p_known: float,
    now: datetime | None = None,
) -> RegressionAlert:
    moment = utc(now) if now else utcnow()
    alert_id = f"alert_{child_id}_{mastery.subject_id}_{mastery.topic}_{int(moment.timestamp() * 1000)}"
    logger.info(
        f"regression: alert for {child_id} on {mastery.key} "
        f"({previous_p_known:.2f} -> {mastery.p_known:.2f})"
    )
    return RegressionAlert(
        id=alert_id,
        child_id=child_id,
        child_name=child_name,
        topic=mastery.topic,
        subject_id=mastery.subject_id,
        subject_name=subject_name,
        message=format_alert_message(child_name, mastery.topic, subject_name),
        previous_p_known=previous_p_known,
        current_p_known=mastery.p_known,
        timestamp=moment,
    )


class RegressionMonitor:
    """Per-child regression state: previous snapshot, cooldowns, alert history.

    Feed every fresh profile snapshot to :meth:`observe`. Call
    :meth:`switch_child` when the viewed child changes so nothing leaks
    between children.
    """

    def __init__(
        self,
        child_id: str | None = None,
        child_name: str = "",
        subjects: Mapping[str, Subject] | None = None,
        *,
        cooldown: timedelta = ALERT_COOLDOWN,
        notification_timeout: timedelta = NOTIFICATION_TIMEOUT,
    ) -> None:
        self.cooldown = cooldown
        self.notification_timeout = notification_timeout
        self.subjects: dict[str, Subject] = dict(subjects or {})
        self.child_id = child_id
        self.child_name = child_name
        self._previous: LearnerProfile | None = None
        self._last_alerted: dict[str, datetime] = {}
        self._alerts: list[RegressionAlert] = []
        self._active: RegressionAlert | None = None
        self._active_since: datetime | None = None
        self._lock = threading.RLock()

    def switch_child(self, child_id: str | None, child_name: str = "") -> None:
        with self._lock:
            if child_id == self.child_id:
                return
            logger.debug(f"regression: switching monitor from {self.child_id} to {child_id}")
            self.child_id = child_id
            self.child_name = child_name
            self._previous = None
            self._last_alerted = {}
            self._alerts = []
            self._active = None
            self._active_since = None

    @property
    def alerts(self) -> list[RegressionAlert]:
        return list(self._alerts)

    def observe(self, profile: LearnerProfile | None, now: datetime | None = None) -> list[RegressionAlert]:
        """Compare ``profile`` with the previous snapshot and return new alerts.

        Safe to use as a store subscription callback; snapshots may arrive
        from background writers.
        """
        with self._lock:
            return self._observe(profile, utc(now) if now else utcnow())

    def _observe(self, profile: LearnerProfile | None, moment: datetime) -> list[RegressionAlert]:
        if profile is not None and self.child_id is not None and profile.child_id != self.child_id:
            self.switch_child(profile.child_id)
        elif profile is not None and self.child_id is None:
            self.child_id = profile.child_id

        new_alerts: list[RegressionAlert] = []
        previous = self._previous
        if profile is not None and previous is not None:
            for key in sorted(profile.topic_mastery):
                current = profile.topic_mastery[key]
                before = previous.topic_mastery.get(key)
                if not detect_regression(current, before):
                    continue
                if not should_alert_for_regression(
                    current, self._last_alerted.get(key), moment, self.cooldown
                ):
                    continue
                subject = self.subjects.get(current.subject_id)
                alert = create_regression_alert(
                    profile.child_id,
                    self.child_name,
                    current,
                    subject.name if subject else DEFAULT_SUBJECT_NAME,
                    before.p_known,  # type: ignore[union-attr]
                    moment,
                )
                new_alerts.append(alert)
                self._last_alerted[key] = moment

        if new_alerts:
            self._alerts.extend(new_alerts)
            if self.active_notification(moment) is None:
                self._active = new_alerts[0]
                self._active_since = moment
        self._previous = profile
        return new_alerts

    def active_notification(self, now: datetime | None = None) -> RegressionAlert | None:
        if self._active is None or self._active_since is None:
            return None
        moment = utc(now) if now else utcnow()
        if moment - self._active_since >= self.notification_timeout:
            logger.debug(f"regression: notification {self._active.id} auto-dismissed")
            self._active = None
            self._active_since = None
        return self._active

    def dismiss_alert(self, alert_id: str) -> None:
        self._alerts = [
            replace(alert, dismissed=True) if alert.id == alert_id else alert
            for alert in self._alerts
        ]
        if self._active is not None and self._active.id == alert_id:
            self.dismiss_notification()

    def dismiss_notification(self) -> None:
        if self._active is not None:
            logger.debug(f"regression: notification {self._active.id} dismissed")
        self._active = None
        self._active_since = None


__all__ = [
    "ALERT_COOLDOWN",
    "NOTIFICATION_TIMEOUT",
    "REALERT_THRESHOLD",
    "RegressionMonitor",
    "create_regression_alert",
    "detect_regression",
    "format_alert_message",
    "should_alert_for_regression",
]
