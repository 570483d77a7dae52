"""Static prerequisite table: YAML loader, DAG validation, remediation hints."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .bkt import MASTERED_THRESHOLD
from .models import LearnerProfile, PrerequisiteHint, topic_key

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
PREREQUISITES_FILE = DATA_DIR / "prerequisites.yaml"


@dataclass(slots=True, frozen=True)
class PrerequisiteLink:
    subject_id: str
    topic: str
    prerequisite: str
    rationale: str = ""


PrerequisiteTable = dict[str, list[PrerequisiteLink]]

_table_cache: PrerequisiteTable | None = None


def load_prerequisites(path: Path | None = None) -> PrerequisiteTable:
    """Parse the YAML table into {topic_key: [links]}. Cached in memory."""
    global _table_cache
    if _table_cache is not None and path is None:
        return _table_cache

    file_path = path or PREREQUISITES_FILE
    with open(file_path, encoding="utf-8") as f:
        raw: list[dict[str, Any]] = yaml.safe_load(f) or []

    table: PrerequisiteTable = {}
    for entry in raw:
        subject_id = str(entry["subject_id"])
        topic = str(entry["topic"])
        for prereq in entry.get("prerequisites", []):
            link = PrerequisiteLink(
                subject_id=subject_id,
                topic=topic,
                prerequisite=str(prereq["topic"]),
                rationale=str(prereq.get("rationale", "")),
            )
            table.setdefault(topic_key(subject_id, topic), []).append(link)

    validate_dag(table)
    if path is None:
        _table_cache = table
    return table


def clear_cache() -> None:
    """Clear the in-memory prerequisite cache."""
    global _table_cache
    _table_cache = None


def validate_dag(table: PrerequisiteTable) -> list[str]:
    """Topological sort of the prerequisite graph (Kahn's algorithm).

    Returns topic keys in teaching order. Raises ValueError on a cycle.
    """
    nodes: set[str] = set()
    edges: dict[str, set[str]] = {}
    for key, links in table.items():
        nodes.add(key)
        for link in links:
            prereq_key = topic_key(link.subject_id, link.prerequisite)
            nodes.add(prereq_key)
            edges.setdefault(prereq_key, set()).add(key)

    in_degree: dict[str, int] = {node: 0 for node in nodes}
    for targets in edges.values():
        for target in targets:
            in_degree[target] += 1

    queue = sorted(node for node, degree in in_degree.items() if degree == 0)
    result: list[str] = []
    while queue:
        node = queue.pop(0)
        result.append(node)
        for neighbor in sorted(edges.get(node, ())):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)
        queue.sort()

    if len(result) != len(nodes):
        raise ValueError("Cycle detected in topic prerequisite graph")
    return result


def format_prerequisite_message(link: PrerequisiteLink) -> str:
    message = f'מומלץ לחזק את "{link.prerequisite}" לפני "{link.topic}".'
    if link.rationale:
        message = f"{message} {link.rationale}"
    return message


def find_prerequisite_hint(
    topic: str,
    subject_id: str | None,
    profile: LearnerProfile | None,
    table: PrerequisiteTable,
) -> PrerequisiteHint | None:
    """First listed prerequisite of ``topic`` that the child has not mastered."""
    if subject_id is None:
        candidates = [
            link for key in sorted(table) for link in table[key] if link.topic == topic
        ]
    else:
        candidates = table.get(topic_key(subject_id, topic), [])

    for link in candidates:
        mastery = profile.get(link.subject_id, link.prerequisite) if profile else None
        if mastery is not None and mastery.p_known >= MASTERED_THRESHOLD:
            continue
        return PrerequisiteHint(topic=link.prerequisite, rationale=format_prerequisite_message(link))
    return None


__all__ = [
    "PrerequisiteLink",
    "PrerequisiteTable",
    "clear_cache",
    "find_prerequisite_hint",
    "format_prerequisite_message",
    "load_prerequisites",
    "validate_dag",
]
