"""Agent accessors."""

import secrets
import sqlite3

from hive.db.client import now_ts
from hive.lib.types import ACTIVE_STORY_STATUSES, AgentStatus, AgentType, status_value

TECH_LEAD_ID = "tech-lead"

# Columns update_agent() is allowed to touch
_UPDATABLE = {
    "tmux_session", "model", "cli_tool", "status", "current_story_id",
    "memory_state", "worktree_path", "team_id",
}


def create_agent(
    conn: sqlite3.Connection,
    agent_type: str,
    team_id: str | None = None,
    model: str | None = None,
    cli_tool: str = "claude",
    tmux_session: str | None = None,
) -> str:
    agent_type = status_value(agent_type)
    if agent_type == AgentType.TECH_LEAD.value:
        agent_id = TECH_LEAD_ID
    else:
        agent_id = f"{agent_type}-{secrets.token_hex(4)}"
    conn.execute(
        """
        INSERT INTO agents (id, type, team_id, model, cli_tool, tmux_session, status)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (agent_id, agent_type, team_id, model, status_value(cli_tool), tmux_session, AgentStatus.IDLE.value),
    )
    return agent_id


def get_agent(conn: sqlite3.Connection, agent_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()


def get_agent_by_session(conn: sqlite3.Connection, session: str) -> sqlite3.Row | None:
    """Most recent non-terminated agent bound to a session name."""
    return conn.execute(
        """
        SELECT * FROM agents WHERE tmux_session = ? AND status != ?
        ORDER BY created_at DESC LIMIT 1
        """,
        (session, AgentStatus.TERMINATED.value),
    ).fetchone()


def get_agents(
    conn: sqlite3.Connection,
    team_id: str | None = None,
    agent_type: str | None = None,
    status: str | None = None,
    include_terminated: bool = True,
) -> list[sqlite3.Row]:
    """Agents matching the filters, in creation order."""
    clauses, params = [], []
    if team_id is not None:
        clauses.append("team_id = ?")
        params.append(team_id)
    if agent_type is not None:
        clauses.append("type = ?")
        params.append(status_value(agent_type))
    if status is not None:
        clauses.append("status = ?")
        params.append(status_value(status))
    if not include_terminated:
        clauses.append("status != ?")
        params.append(AgentStatus.TERMINATED.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return conn.execute(f"SELECT * FROM agents {where} ORDER BY created_at, rowid", params).fetchall()


def get_active_agents(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """All agents that are not terminated."""
    return get_agents(conn, include_terminated=False)


def update_agent(conn: sqlite3.Connection, agent_id: str, **fields) -> None:
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update agent fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    values = [status_value(v) if v is not None else None for v in fields.values()]
    conn.execute(
        f"UPDATE agents SET {assignments}, updated_at = ? WHERE id = ?",
        (*values, now_ts(), agent_id),
    )


def terminate_agent(conn: sqlite3.Connection, agent_id: str) -> None:
    update_agent(conn, agent_id, status=AgentStatus.TERMINATED, current_story_id=None)


def release_agent(conn: sqlite3.Connection, agent_id: str) -> None:
    """Clear an agent's story pointer and return it to the idle pool."""
    agent = get_agent(conn, agent_id)
    if agent is None or agent["status"] == AgentStatus.TERMINATED.value:
        return
    update_agent(conn, agent_id, status=AgentStatus.IDLE, current_story_id=None)


def count_active_stories(conn: sqlite3.Connection, agent_id: str) -> int:
    """Stories assigned to an agent that are still being worked."""
    placeholders = ", ".join("?" for _ in ACTIVE_STORY_STATUSES)
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS n FROM stories
        WHERE assigned_agent_id = ? AND status IN ({placeholders})
        """,
        (agent_id, *(s.value for s in ACTIVE_STORY_STATUSES)),
    ).fetchone()
    return row["n"]
