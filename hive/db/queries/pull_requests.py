"""Pull request (merge queue) accessors."""

import logging
import secrets
import sqlite3

from hive.db.client import now_ts
from hive.lib.types import MERGE_QUEUE_STATUSES, PRStatus, status_value
from hive.workflow.fsm import validate_pr_transition

logger = logging.getLogger(__name__)

# PR statuses that no longer represent an open submission
CLOSED_PR_STATUSES = (PRStatus.MERGED, PRStatus.REJECTED, PRStatus.CLOSED)

_UPDATABLE = {
    "story_id", "team_id", "branch_name", "github_pr_number", "github_pr_url",
    "submitted_by", "reviewed_by", "review_notes",
}


def create_pull_request(
    conn: sqlite3.Connection,
    branch_name: str,
    story_id: str | None = None,
    team_id: str | None = None,
    github_pr_number: int | None = None,
    github_pr_url: str | None = None,
    submitted_by: str | None = None,
) -> str:
    pr_id = f"PR-{secrets.token_hex(4)}"
    conn.execute(
        """
        INSERT INTO pull_requests (
            id, story_id, team_id, branch_name, github_pr_number, github_pr_url, submitted_by, status
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (pr_id, story_id, team_id, branch_name, github_pr_number, github_pr_url,
         submitted_by, PRStatus.QUEUED.value),
    )
    return pr_id


def get_pull_request(conn: sqlite3.Connection, pr_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM pull_requests WHERE id = ?", (pr_id,)).fetchone()


def get_pull_requests(
    conn: sqlite3.Connection,
    status: str | None = None,
    team_id: str | None = None,
    story_id: str | None = None,
) -> list[sqlite3.Row]:
    clauses, params = [], []
    if status is not None:
        clauses.append("status = ?")
        params.append(status_value(status))
    if team_id is not None:
        clauses.append("team_id = ?")
        params.append(team_id)
    if story_id is not None:
        clauses.append("story_id = ?")
        params.append(story_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return conn.execute(
        f"SELECT * FROM pull_requests {where} ORDER BY created_at, rowid", params
    ).fetchall()


def get_merge_queue(conn: sqlite3.Connection, team_id: str | None = None) -> list[sqlite3.Row]:
    """Queued and reviewing PRs in submission order."""
    statuses = [s.value for s in MERGE_QUEUE_STATUSES]
    sql = f"SELECT * FROM pull_requests WHERE status IN ({', '.join('?' for _ in statuses)})"
    params: list = list(statuses)
    if team_id is not None:
        sql += " AND team_id = ?"
        params.append(team_id)
    return conn.execute(sql + " ORDER BY created_at, rowid", params).fetchall()


def get_open_pull_requests(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """PRs that are not merged, rejected or closed."""
    closed = [s.value for s in CLOSED_PR_STATUSES]
    return conn.execute(
        f"""
        SELECT * FROM pull_requests WHERE status NOT IN ({', '.join('?' for _ in closed)})
        ORDER BY created_at, rowid
        """,
        closed,
    ).fetchall()


def get_open_pr_for_story(conn: sqlite3.Connection, story_id: str) -> sqlite3.Row | None:
    for pr in get_open_pull_requests(conn):
        if pr["story_id"] == story_id:
            return pr
    return None


def get_pr_by_github_number(conn: sqlite3.Connection, number: int) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM pull_requests WHERE github_pr_number = ? ORDER BY created_at DESC LIMIT 1",
        (number,),
    ).fetchone()


def get_pr_by_branch(conn: sqlite3.Connection, branch_name: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM pull_requests WHERE branch_name = ? ORDER BY created_at DESC LIMIT 1",
        (branch_name,),
    ).fetchone()


def update_pull_request(conn: sqlite3.Connection, pr_id: str, **fields) -> None:
    """Update non-status PR fields."""
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update pull request fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(
        f"UPDATE pull_requests SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), now_ts(), pr_id),
    )


def update_pr_status(
    conn: sqlite3.Connection,
    pr_id: str,
    to_status: str,
    recovery: str | None = None,
    **fields,
) -> str | None:
    """Validate and apply a PR status change plus any other field updates."""
    pr = get_pull_request(conn, pr_id)
    if pr is None:
        raise KeyError(f"Pull request not found: {pr_id}")
    trigger = validate_pr_transition(pr_id, pr["status"], to_status, recovery=recovery)
    update_pull_request(conn, pr_id, **fields)
    conn.execute(
        "UPDATE pull_requests SET status = ?, updated_at = ? WHERE id = ?",
        (status_value(to_status), now_ts(), pr_id),
    )
    return trigger
