"""Subject/topic catalog used for display text (alert messages, topic lists)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .models import Subject

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
SUBJECTS_FILE = DATA_DIR / "subjects.yaml"

_subject_cache: dict[str, Subject] | None = None


def load_subjects(path: Path | None = None) -> dict[str, Subject]:
    """Parse YAML file and return dict[subject_id, Subject]. Cached in memory."""
    global _subject_cache
    if _subject_cache is not None and path is None:
        return _subject_cache

    file_path = path or SUBJECTS_FILE
    with open(file_path, encoding="utf-8") as f:
        raw: list[dict[str, Any]] = yaml.safe_load(f) or []

    subjects: dict[str, Subject] = {}
    for entry in raw:
        subject = Subject(
            id=str(entry["id"]),
            name=str(entry.get("name", entry["id"])),
            topics=[str(topic) for topic in entry.get("topics", [])],
        )
        subjects[subject.id] = subject

    if path is None:
        _subject_cache = subjects
    return subjects


def clear_cache() -> None:
    global _subject_cache
    _subject_cache = None


def find_subject_by_id(subjects: dict[str, Subject], subject_id: str) -> Subject | None:
    return subjects.get(subject_id)


__all__ = ["clear_cache", "find_subject_by_id", "load_subjects"]
