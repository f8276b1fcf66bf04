"""
Agent spin-down.

Agents whose story merged are told so and their sessions are closed. Once the
whole pipeline is empty, agents still marked working are closed too. Session
calls happen with no pending writes; the database is updated afterwards.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass

from hive.db.client import flush
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import stories as story_queries
from hive.lib.types import ACTIVE_STORY_STATUSES, AgentStatus, AgentType, StoryStatus

logger = logging.getLogger(__name__)

# Time for the farewell message to render before the session is killed
MERGED_SPIN_DOWN_DELAY_SECONDS = 1.0
IDLE_SPIN_DOWN_DELAY_SECONDS = 0.5

# Anything in one of these means the pipeline still has work
PIPELINE_STATUSES = (StoryStatus.PLANNED, StoryStatus.PR_SUBMITTED) + ACTIVE_STORY_STATUSES

_DONE_STATUSES = {StoryStatus.MERGED.value, StoryStatus.DRAFT.value}


@dataclass
class _SpinDown:
    agent_id: str
    session: str | None
    story_id: str | None = None


def _find_session(agent, live: list[str]) -> str | None:
    for session in live:
        if session == agent["tmux_session"] or agent["id"] in session:
            return session
    return None


def _has_other_active_story(conn: sqlite3.Connection, agent_id: str, story_id: str | None) -> bool:
    return any(
        s["id"] != story_id and s["status"] not in _DONE_STATUSES
        for s in story_queries.get_stories_assigned_to(conn, agent_id)
    )


def _close_sessions(runtime, actions: list[_SpinDown], delay: float, message_for) -> None:
    for action in actions:
        if not action.session:
            continue
        runtime.send_text(action.session, message_for(action))
        if delay:
            time.sleep(delay)
        runtime.kill(action.session)


def spin_down_merged_agents(conn: sqlite3.Connection, runtime, live_sessions: list[str]) -> list[str]:
    """Close agents whose assigned story merged and who have nothing else to do.

    Also closes working agents that hold no story at all. Returns the ids of
    agents spun down.
    """
    actions: list[_SpinDown] = []
    for story in story_queries.get_stories(conn, status=StoryStatus.MERGED):
        if not story["assigned_agent_id"]:
            continue
        agent = agent_queries.get_agent(conn, story["assigned_agent_id"])
        if agent is None or agent["status"] == AgentStatus.TERMINATED.value:
            continue
        moved_on = agent["current_story_id"] and agent["current_story_id"] != story["id"]
        if moved_on or _has_other_active_story(conn, agent["id"], story["id"]):
            story_queries.update_story(conn, story["id"], assigned_agent_id=None)
            logger.debug(f"[spin_down] {story['id']}: cleared assignment, {agent['id']} has other work")
            continue
        actions.append(_SpinDown(agent["id"], _find_session(agent, live_sessions), story["id"]))

    queued = {a.agent_id for a in actions}
    for agent in agent_queries.get_agents(conn, status=AgentStatus.WORKING):
        if agent["type"] == AgentType.TECH_LEAD.value or agent["current_story_id"] or agent["id"] in queued:
            continue
        if _has_other_active_story(conn, agent["id"], None):
            continue
        actions.append(_SpinDown(agent["id"], _find_session(agent, live_sessions)))

    if not actions:
        return []

    flush(conn)
    _close_sessions(runtime, actions, MERGED_SPIN_DOWN_DELAY_SECONDS, lambda a: (
        f"# Congratulations! Your story {a.story_id} has been merged.\n# Your work is complete. Spinning down..."
        if a.story_id else "# No active stories assigned. Spinning down..."
    ))

    for action in actions:
        agent_queries.terminate_agent(conn, action.agent_id)
        if action.story_id:
            story_queries.update_story(conn, action.story_id, assigned_agent_id=None)
            message = f"Agent spun down after story {action.story_id} was merged"
        else:
            message = "Agent spun down: working with no current story and no active stories"
        logs.create_log(conn, action.agent_id, "AGENT_TERMINATED", message, story_id=action.story_id)
    logger.info(f"[spin_down] Spun down {len(actions)} agent(s) after merge")
    return [a.agent_id for a in actions]


def spin_down_idle_agents(conn: sqlite3.Connection, runtime, live_sessions: list[str]) -> list[str]:
    """With no work anywhere in the pipeline, close every agent still marked working."""
    if story_queries.get_stories_in(conn, PIPELINE_STATUSES):
        return []

    actions = [
        _SpinDown(agent["id"], agent["tmux_session"] if agent["tmux_session"] in live_sessions else None)
        for agent in agent_queries.get_agents(conn, status=AgentStatus.WORKING)
        if agent["type"] != AgentType.TECH_LEAD.value
    ]
    if not actions:
        return []

    flush(conn)
    _close_sessions(runtime, actions, IDLE_SPIN_DOWN_DELAY_SECONDS,
                    lambda a: "# All work complete. No stories in pipeline. Spinning down...")

    for action in actions:
        agent_queries.terminate_agent(conn, action.agent_id)
        logs.create_log(conn, action.agent_id, "AGENT_TERMINATED", "Agent spun down: no work remaining in pipeline")
    logger.info(f"[spin_down] Spun down {len(actions)} agent(s), pipeline empty")
    return [a.agent_id for a in actions]
