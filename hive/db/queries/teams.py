"""Team accessors."""

import secrets
import sqlite3


def create_team(conn: sqlite3.Connection, name: str, repo_url: str, repo_path: str) -> str:
    team_id = f"team-{secrets.token_hex(5)}"
    conn.execute(
        "INSERT INTO teams (id, name, repo_url, repo_path) VALUES (?, ?, ?, ?)",
        (team_id, name, repo_url, repo_path),
    )
    return team_id


def get_team(conn: sqlite3.Connection, team_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()


def get_team_by_name(conn: sqlite3.Connection, name: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM teams WHERE name = ?", (name,)).fetchone()


def get_all_teams(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM teams ORDER BY created_at, name").fetchall()


def delete_team(conn: sqlite3.Connection, team_id: str) -> None:
    conn.execute("DELETE FROM teams WHERE id = ?", (team_id,))
