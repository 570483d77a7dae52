"""Learner Mastery: BKT mastery tracking and study recommendations."""

from .bkt import apply_bkt_step, bkt_update, get_bkt_params
from .db import init_db
from .forgetting import apply_decay
from .models import LearnerProfile, Recommendation, StudySession, TopicMastery
from .recommendations import generate_recommendations, score_topic
from .signals import bootstrap_profile, process_quiz_signal

__all__ = [
    "LearnerProfile",
    "Recommendation",
    "StudySession",
    "TopicMastery",
    "apply_bkt_step",
    "apply_decay",
    "bkt_update",
    "bootstrap_profile",
    "generate_recommendations",
    "get_bkt_params",
    "init_db",
    "process_quiz_signal",
    "score_topic",
]
