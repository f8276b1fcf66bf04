"""Least-workload agent selection."""

import sqlite3

from hive.db.queries import agents as agent_queries


def select_agent_with_least_workload(conn: sqlite3.Connection, candidates: list) -> sqlite3.Row | None:
    """Candidate with the fewest active stories.

    Ties keep the earliest candidate, so creation-ordered input gives a
    stable choice.
    """
    best = None
    best_count = None
    for agent in candidates:
        count = agent_queries.count_active_stories(conn, agent["id"])
        if best_count is None or count < best_count:
            best, best_count = agent, count
    return best
