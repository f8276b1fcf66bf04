"""Health reconciler.

Diffs the database's view of live agents against the sessions that actually
exist, and repairs the agent/story symmetry. Running it twice with no
session change mutates nothing on the second pass.
"""

import logging
import sqlite3
from dataclasses import dataclass, field

from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import stories as story_queries
from hive.lib.types import AgentStatus, StoryStatus

logger = logging.getLogger(__name__)

# Statuses the recover_orphan transition accepts
_RECOVERABLE = {
    StoryStatus.IN_PROGRESS.value,
    StoryStatus.REVIEW.value,
    StoryStatus.QA.value,
    StoryStatus.QA_FAILED.value,
}


@dataclass
class HealthResult:
    terminated: list[str] = field(default_factory=list)
    orphaned_recovered: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.terminated or self.orphaned_recovered or self.repaired)


def _release_story(conn: sqlite3.Connection, story, actor: str, reason: str, result: HealthResult) -> None:
    """Unassign a story, returning it to planned when it was mid-flight."""
    if story["status"] in _RECOVERABLE:
        story_queries.update_story_status(
            conn, story["id"], StoryStatus.PLANNED, recovery="recover_orphan", assigned_agent_id=None,
        )
        logs.create_log(
            conn, actor, "ORPHANED_STORY_RECOVERED", f"Returned to planned: {reason}",
            story_id=story["id"], metadata={"previous_status": story["status"]},
        )
        result.orphaned_recovered.append(story["id"])
    elif story["status"] != StoryStatus.MERGED.value and story["assigned_agent_id"]:
        # pr_submitted work keeps its status; only the dead owner is dropped
        story_queries.update_story(conn, story["id"], assigned_agent_id=None)


def health_check(
    conn: sqlite3.Connection,
    live_sessions: list[str],
    actor: str = logs.MANAGER_ACTOR,
) -> HealthResult:
    """Reconcile agents and stories against the live session list."""
    result = HealthResult()
    live = set(live_sessions)

    # Agents whose session died
    for agent in agent_queries.get_active_agents(conn):
        session = agent["tmux_session"]
        if not session or session in live:
            continue
        agent_queries.terminate_agent(conn, agent["id"])
        logs.create_log(conn, actor, "AGENT_TERMINATED", f"Session {session} is no longer running",
                        metadata={"agent_id": agent["id"]})
        result.terminated.append(agent["id"])
        logger.warning(f"[health] {agent['id']}: session {session} gone, marked terminated")

        for story in story_queries.get_stories_assigned_to(conn, agent["id"]):
            _release_story(conn, story, actor, f"agent {agent['id']} terminated", result)

    # Stories owned by terminated or unknown agents, and in-progress stories with no owner
    for story in story_queries.get_stories_in(conn, _RECOVERABLE | {StoryStatus.PR_SUBMITTED.value}):
        owner_id = story["assigned_agent_id"]
        if owner_id:
            owner = agent_queries.get_agent(conn, owner_id)
            if owner is not None and owner["status"] != AgentStatus.TERMINATED.value:
                continue
            _release_story(conn, story, actor, f"owner {owner_id} is not active", result)
        elif story["status"] == StoryStatus.IN_PROGRESS.value:
            _release_story(conn, story, actor, "no assigned agent", result)

    # Agent -> story pointer must be mirrored by the story
    for agent in agent_queries.get_active_agents(conn):
        story_id = agent["current_story_id"]
        if story_id:
            story = story_queries.get_story(conn, story_id)
            if (
                story is None
                or story["assigned_agent_id"] != agent["id"]
                or story["status"] == StoryStatus.MERGED.value
            ):
                agent_queries.release_agent(conn, agent["id"])
                logs.create_log(conn, actor, "AGENT_STORY_CLEARED",
                                f"Cleared stale story pointer {story_id}", story_id=story_id,
                                metadata={"agent_id": agent["id"]})
                result.repaired.append(agent["id"])
        elif agent["status"] == AgentStatus.IDLE.value:
            owned = [
                s for s in story_queries.get_stories_assigned_to(conn, agent["id"])
                if s["status"] == StoryStatus.IN_PROGRESS.value
            ]
            if owned:
                agent_queries.update_agent(
                    conn, agent["id"], status=AgentStatus.WORKING, current_story_id=owned[0]["id"],
                )
                result.repaired.append(agent["id"])

    if result.changed:
        logger.info(
            f"[health] terminated={len(result.terminated)} "
            f"recovered={len(result.orphaned_recovered)} repaired={len(result.repaired)}"
        )
    return result
