"""Inter-agent mailbox accessors."""

import secrets
import sqlite3

from hive.lib.types import MessageStatus


def create_message(
    conn: sqlite3.Connection,
    from_session: str,
    to_session: str,
    body: str,
    subject: str | None = None,
) -> str:
    message_id = f"MSG-{secrets.token_hex(4).upper()}"
    conn.execute(
        """
        INSERT INTO messages (id, from_session, to_session, subject, body, status)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (message_id, from_session, to_session, subject, body, MessageStatus.PENDING.value),
    )
    return message_id


def get_pending_messages(conn: sqlite3.Connection, to_session: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM messages WHERE to_session = ? AND status = ? ORDER BY created_at, rowid",
        (to_session, MessageStatus.PENDING.value),
    ).fetchall()


def mark_messages_read(conn: sqlite3.Connection, message_ids: list[str]) -> None:
    if not message_ids:
        return
    conn.execute(
        f"UPDATE messages SET status = ? WHERE id IN ({', '.join('?' for _ in message_ids)})",
        (MessageStatus.READ.value, *message_ids),
    )


def get_message(conn: sqlite3.Connection, message_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()


def mark_message_replied(conn: sqlite3.Connection, message_id: str) -> None:
    conn.execute("UPDATE messages SET status = ? WHERE id = ?", (MessageStatus.REPLIED.value, message_id))
