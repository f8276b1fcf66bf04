"""Escalation accessors."""

import secrets
import sqlite3

from hive.db.client import now_ts
from hive.lib.types import ACTIVE_ESCALATION_STATUSES, EscalationStatus


def create_escalation(
    conn: sqlite3.Connection,
    reason: str,
    story_id: str | None = None,
    from_agent_id: str | None = None,
    to_agent_id: str | None = None,
) -> str:
    """Create a pending escalation. to_agent_id=None addresses a human."""
    escalation_id = f"ESC-{secrets.token_hex(3).upper()}"
    conn.execute(
        """
        INSERT INTO escalations (id, story_id, from_agent_id, to_agent_id, reason, status)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (escalation_id, story_id, from_agent_id, to_agent_id, reason, EscalationStatus.PENDING.value),
    )
    return escalation_id


def get_escalation(conn: sqlite3.Connection, escalation_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM escalations WHERE id = ?", (escalation_id,)).fetchone()


def get_active_escalations(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """Pending and acknowledged escalations, oldest first."""
    statuses = [s.value for s in ACTIVE_ESCALATION_STATUSES]
    return conn.execute(
        "SELECT * FROM escalations WHERE status IN (?, ?) ORDER BY created_at, rowid",
        statuses,
    ).fetchall()


def get_pending_human_escalations(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM escalations WHERE status = ? AND to_agent_id IS NULL ORDER BY created_at, rowid",
        (EscalationStatus.PENDING.value,),
    ).fetchall()


def get_active_escalations_from(conn: sqlite3.Connection, from_agent_id: str) -> list[sqlite3.Row]:
    return [e for e in get_active_escalations(conn) if e["from_agent_id"] == from_agent_id]


def get_recent_escalations_from(
    conn: sqlite3.Connection,
    from_agent_id: str,
    since: str,
) -> list[sqlite3.Row]:
    """Escalations of any status from a source created at or after `since`."""
    return conn.execute(
        """
        SELECT * FROM escalations WHERE from_agent_id = ? AND created_at >= ?
        ORDER BY created_at DESC
        """,
        (from_agent_id, since),
    ).fetchall()


def resolve_escalation(conn: sqlite3.Connection, escalation_id: str, resolution: str) -> None:
    conn.execute(
        "UPDATE escalations SET status = ?, resolution = ?, resolved_at = ? WHERE id = ?",
        (EscalationStatus.RESOLVED.value, resolution, now_ts(), escalation_id),
    )


def acknowledge_escalation(conn: sqlite3.Connection, escalation_id: str) -> None:
    conn.execute(
        "UPDATE escalations SET status = ? WHERE id = ? AND status = ?",
        (EscalationStatus.ACKNOWLEDGED.value, escalation_id, EscalationStatus.PENDING.value),
    )
