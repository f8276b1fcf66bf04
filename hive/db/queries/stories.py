"""Story and story dependency accessors.

Status changes go through update_story_status(), which validates them
against the story status machine.
"""

import logging
import secrets
import sqlite3

from hive.db.client import now_ts
from hive.lib.types import StoryStatus, status_value
from hive.workflow.fsm import validate_story_transition

logger = logging.getLogger(__name__)

_UPDATABLE = {
    "team_id", "title", "description", "acceptance_criteria", "complexity_score",
    "story_points", "assigned_agent_id", "branch_name", "pr_url", "requirement_id",
}


def create_story(
    conn: sqlite3.Connection,
    title: str,
    description: str = "",
    team_id: str | None = None,
    complexity_score: int | None = None,
    story_points: int | None = None,
    status: str = StoryStatus.DRAFT,
    acceptance_criteria: str | None = None,
    requirement_id: str | None = None,
    story_id: str | None = None,
) -> str:
    story_id = story_id or f"STORY-{secrets.token_hex(3).upper()}"
    conn.execute(
        """
        INSERT INTO stories (
            id, requirement_id, team_id, title, description, acceptance_criteria,
            complexity_score, story_points, status
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            story_id, requirement_id, team_id, title, description, acceptance_criteria,
            complexity_score, story_points, status_value(status),
        ),
    )
    return story_id


def get_story(conn: sqlite3.Connection, story_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()


def get_stories(
    conn: sqlite3.Connection,
    status: str | None = None,
    team_id: str | None = None,
) -> list[sqlite3.Row]:
    clauses, params = [], []
    if status is not None:
        clauses.append("status = ?")
        params.append(status_value(status))
    if team_id is not None:
        clauses.append("team_id = ?")
        params.append(team_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return conn.execute(f"SELECT * FROM stories {where} ORDER BY created_at, rowid", params).fetchall()


def get_stories_in(conn: sqlite3.Connection, statuses) -> list[sqlite3.Row]:
    statuses = [status_value(s) for s in statuses]
    placeholders = ", ".join("?" for _ in statuses)
    return conn.execute(
        f"SELECT * FROM stories WHERE status IN ({placeholders}) ORDER BY created_at, rowid",
        statuses,
    ).fetchall()


def get_planned_stories(conn: sqlite3.Connection, team_id: str | None = None) -> list[sqlite3.Row]:
    """Planned, unassigned stories in creation order."""
    sql = "SELECT * FROM stories WHERE status = ? AND assigned_agent_id IS NULL"
    params: list = [StoryStatus.PLANNED.value]
    if team_id is not None:
        sql += " AND team_id = ?"
        params.append(team_id)
    return conn.execute(sql + " ORDER BY created_at, rowid", params).fetchall()


def get_stories_assigned_to(conn: sqlite3.Connection, agent_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM stories WHERE assigned_agent_id = ? ORDER BY created_at, rowid",
        (agent_id,),
    ).fetchall()


def update_story(conn: sqlite3.Connection, story_id: str, **fields) -> None:
    """Update non-status story fields."""
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update story fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(
        f"UPDATE stories SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), now_ts(), story_id),
    )


def update_story_status(
    conn: sqlite3.Connection,
    story_id: str,
    to_status: str,
    recovery: str | None = None,
    **fields,
) -> str | None:
    """Validate and apply a story status change, plus any other field updates.

    Returns the trigger used. Raises InvalidTransition or KeyError.
    """
    story = get_story(conn, story_id)
    if story is None:
        raise KeyError(f"Story not found: {story_id}")
    trigger = validate_story_transition(story_id, story["status"], to_status, recovery=recovery)
    if trigger is not None:
        logger.debug(f"[stories] {story_id}: {story['status']} -> {status_value(to_status)} ({trigger})")
    update_story(conn, story_id, **fields)
    conn.execute(
        "UPDATE stories SET status = ?, updated_at = ? WHERE id = ?",
        (status_value(to_status), now_ts(), story_id),
    )
    return trigger


def add_dependency(conn: sqlite3.Connection, story_id: str, depends_on_story_id: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO story_dependencies (story_id, depends_on_story_id) VALUES (?, ?)",
        (story_id, depends_on_story_id),
    )


def get_dependency_ids(conn: sqlite3.Connection, story_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT depends_on_story_id FROM story_dependencies WHERE story_id = ? ORDER BY rowid",
        (story_id,),
    ).fetchall()
    return [r["depends_on_story_id"] for r in rows]


def get_dependency_statuses(conn: sqlite3.Connection, story_id: str) -> list[tuple[str, str | None]]:
    """(dependency_id, status) pairs; status is None for a dangling edge."""
    rows = conn.execute(
        """
        SELECT d.depends_on_story_id AS dep_id, s.status AS status
        FROM story_dependencies d
        LEFT JOIN stories s ON s.id = d.depends_on_story_id
        WHERE d.story_id = ?
        ORDER BY d.rowid
        """,
        (story_id,),
    ).fetchall()
    return [(r["dep_id"], r["status"]) for r in rows]


def get_team_story_points(conn: sqlite3.Connection, team_id: str, statuses) -> int:
    statuses = [status_value(s) for s in statuses]
    placeholders = ", ".join("?" for _ in statuses)
    row = conn.execute(
        f"""
        SELECT COALESCE(SUM(COALESCE(story_points, 0)), 0) AS points FROM stories
        WHERE team_id = ? AND status IN ({placeholders})
        """,
        (team_id, *statuses),
    ).fetchone()
    return int(row["points"])
