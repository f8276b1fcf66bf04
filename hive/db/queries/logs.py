"""Append-only audit log (agent_logs)."""

import json
import sqlite3
from typing import Any

# Actor recorded for every manager-loop side effect
MANAGER_ACTOR = "manager"
SCHEDULER_ACTOR = "scheduler"
CLI_ACTOR = "cli"


def create_log(
    conn: sqlite3.Connection,
    agent_id: str,
    event_type: str,
    message: str = "",
    story_id: str | None = None,
    status: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO agent_logs (agent_id, story_id, event_type, status, message, metadata)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (agent_id, story_id, event_type, status, message,
         json.dumps(metadata, sort_keys=True) if metadata else None),
    )


def get_logs(
    conn: sqlite3.Connection,
    limit: int = 50,
    event_type: str | None = None,
    story_id: str | None = None,
) -> list[sqlite3.Row]:
    """Most recent log entries first."""
    clauses, params = [], []
    if event_type is not None:
        clauses.append("event_type = ?")
        params.append(event_type)
    if story_id is not None:
        clauses.append("story_id = ?")
        params.append(story_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return conn.execute(
        f"SELECT * FROM agent_logs {where} ORDER BY id DESC LIMIT ?", (*params, limit)
    ).fetchall()
