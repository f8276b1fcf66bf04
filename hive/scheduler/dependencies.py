"""Dependency graph and topological ordering for story batches."""

import logging
import sqlite3
from collections import deque

from hive.db.queries import stories as story_queries
from hive.lib.types import DEPENDENCY_SATISFIED_STATUSES

logger = logging.getLogger(__name__)

_SATISFIED = {s.value for s in DEPENDENCY_SATISFIED_STATUSES}


def build_dependency_graph(conn: sqlite3.Connection, stories: list) -> dict[str, list[str]]:
    """Map story id -> ids it depends on, restricted to the batch. Self edges are kept."""
    batch_ids = {s["id"] for s in stories}
    graph: dict[str, list[str]] = {}
    for story in stories:
        deps = story_queries.get_dependency_ids(conn, story["id"])
        graph[story["id"]] = [d for d in deps if d in batch_ids]
    return graph


def topological_sort(conn: sqlite3.Connection, stories: list) -> list | None:
    """Order stories so every in-batch dependency comes before its dependents.

    Kahn's algorithm seeded in batch order, so independent stories keep their
    relative order. Returns None if the batch contains a cycle.
    """
    graph = build_dependency_graph(conn, stories)
    by_id = {s["id"]: s for s in stories}

    in_degree = {story_id: len(deps) for story_id, deps in graph.items()}
    dependents: dict[str, list[str]] = {story_id: [] for story_id in graph}
    for story in stories:
        for dep in graph[story["id"]]:
            dependents[dep].append(story["id"])

    queue = deque(s["id"] for s in stories if in_degree[s["id"]] == 0)
    ordered = []
    while queue:
        story_id = queue.popleft()
        ordered.append(by_id[story_id])
        for dependent in dependents[story_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(ordered) < len(stories):
        stuck = sorted(sid for sid, degree in in_degree.items() if degree > 0)
        logger.error(f"[scheduler] Dependency cycle among stories: {', '.join(stuck)}")
        return None
    return ordered


def are_dependencies_satisfied(conn: sqlite3.Connection, story_id: str) -> bool:
    """True when every dependency is merged or actively being worked.

    In-progress work counts as satisfied so dependent stories are not
    serialized behind a merge. A dangling dependency is unsatisfied.
    """
    for dep_id, status in story_queries.get_dependency_statuses(conn, story_id):
        if status not in _SATISFIED:
            logger.debug(f"[scheduler] {story_id} waiting on {dep_id} ({status or 'missing'})")
            return False
    return True
