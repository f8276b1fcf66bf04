"""Agent spawning: database row plus a tmux session running the agent CLI."""

import logging
import sqlite3
from pathlib import Path

from hive.db.client import flush
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.lib.config import HiveConfig, ModelConfig
from hive.lib.tmux import TmuxError, generate_session_name
from hive.lib.types import AgentStatus, CliTool

logger = logging.getLogger(__name__)

# Flags that let an agent run without per-command approval prompts
UNSAFE_FLAGS = {
    CliTool.CLAUDE.value: "--dangerously-skip-permissions",
    CliTool.CODEX.value: "--dangerously-bypass-approvals-and-sandbox",
    CliTool.GEMINI.value: "--yolo",
}


class AgentSpawnError(Exception):
    """An agent session could not be started."""
    pass


def build_agent_command(model_config: ModelConfig) -> str:
    """Shell command that starts the agent CLI in its session."""
    cli = model_config.cli_tool
    if cli not in UNSAFE_FLAGS:
        raise AgentSpawnError(f"Unsupported cli_tool: {cli}")
    parts = [cli]
    if model_config.safety_mode == "unsafe":
        parts.append(UNSAFE_FLAGS[cli])
    if model_config.model:
        parts += ["--model", model_config.model]
    return " ".join(parts)


def role_brief(agent_type: str, agent_id: str, session: str, team_name: str | None) -> str:
    team = f" on team {team_name}" if team_name else ""
    return (
        f"You are the Hive {agent_type} agent {agent_id}{team} (session {session}). "
        "The manager will send story assignments and review requests to this session. "
        f"Submit finished work with: hive pr submit -b <branch> -s <story-id> --from {session}"
    )


def _next_session_name(conn: sqlite3.Connection, agent_type: str, team, index: int | None) -> str:
    """First session name for this tier not held by a live agent row."""
    taken = {a["tmux_session"] for a in agent_queries.get_active_agents(conn) if a["tmux_session"]}
    team_name = team["name"] if team else None
    candidate = index or 1
    while True:
        name = generate_session_name(agent_type, team_name, candidate)
        if name not in taken:
            return name
        candidate += 1


def spawn_agent(
    conn: sqlite3.Connection,
    runtime,
    config: HiveConfig,
    root: Path,
    agent_type: str,
    team=None,
    index: int | None = None,
    actor: str = logs.SCHEDULER_ACTOR,
) -> str:
    """Create an agent and start its session. Returns the agent id.

    Pending writes are flushed before tmux is called so no write lock is held
    across the subprocess.

    Raises:
        AgentSpawnError: If the session could not be started
    """
    if runtime is None:
        raise AgentSpawnError("No session runtime available")
    model_config = config.model_for(agent_type)
    command = build_agent_command(model_config)
    team_id = team["id"] if team else None

    agent_id = agent_queries.create_agent(
        conn, agent_type, team_id=team_id, model=model_config.model, cli_tool=model_config.cli_tool,
    )
    session = _next_session_name(conn, agent_type, team, index)
    workdir = root / team["repo_path"] if team else root
    flush(conn)

    try:
        if not runtime.is_running(session):
            runtime.spawn(session, str(workdir), command)
            runtime.send_text(session, role_brief(agent_type, agent_id, session, team["name"] if team else None))
    except TmuxError as e:
        agent_queries.terminate_agent(conn, agent_id)
        logs.create_log(conn, actor, "AGENT_SPAWN_FAILED", f"{agent_type} spawn failed: {e}")
        flush(conn)
        raise AgentSpawnError(str(e)) from e

    agent_queries.update_agent(
        conn, agent_id, tmux_session=session, status=AgentStatus.IDLE, worktree_path=str(workdir),
    )
    logs.create_log(
        conn, agent_id, "AGENT_SPAWNED", f"Spawned {agent_type} in {session}",
        metadata={"session": session, "cli_tool": model_config.cli_tool, "team_id": team_id},
    )
    logger.info(f"[spawner] Spawned {agent_type} {agent_id} in {session}")
    return agent_id
