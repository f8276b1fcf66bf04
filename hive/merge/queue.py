"""
Merge queue controller.

Moves pull requests through queued -> reviewing -> approved/rejected,
keeps a QA agent available wherever PRs wait, and repairs review
assignments whose reviewer disappeared.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from hive.db.client import flush
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig
from hive.lib.types import AgentStatus, AgentType, PRStatus, StoryStatus
from hive.scheduler.spawner import AgentSpawnError, spawn_agent

logger = logging.getLogger(__name__)

STORY_MERGED_CLOSE_NOTE = "[auto-closed:story-merged] Story already merged"

# Story statuses a QA rejection can move back to qa_failed
REJECTABLE_STORY_STATUSES = {StoryStatus.REVIEW.value, StoryStatus.QA.value, StoryStatus.PR_SUBMITTED.value}


@dataclass
class DispatchResult:
    dispatched: list[tuple[str, str]] = field(default_factory=list)  # (pr_id, qa_session)
    reminded: list[str] = field(default_factory=list)


def check_merge_queue(conn: sqlite3.Connection, config: HiveConfig, runtime, root: Path) -> list[str]:
    """Spawn a QA agent for each team with queued work and no active QA."""
    spawned = []
    for team in team_queries.get_all_teams(conn):
        if not pr_queries.get_merge_queue(conn, team_id=team["id"]):
            continue
        qa_agents = agent_queries.get_agents(
            conn, team_id=team["id"], agent_type=AgentType.QA, include_terminated=False,
        )
        if qa_agents:
            continue
        try:
            agent_id = spawn_agent(conn, runtime, config, root, AgentType.QA.value, team=team,
                                   actor=logs.MANAGER_ACTOR)
        except AgentSpawnError as e:
            logger.warning(f"[merge] Could not spawn QA for {team['name']}: {e}")
            continue
        logs.create_log(conn, logs.MANAGER_ACTOR, "QA_SPAWNED", f"Spawned QA for {team['name']} merge queue",
                        metadata={"agent_id": agent_id, "team_id": team["id"]})
        spawned.append(agent_id)
    return spawned


def review_request_message(pr) -> str:
    return "\n".join([
        f"# PR review request: {pr['id']} for {pr['story_id'] or 'unlinked story'}",
        f"# Branch: {pr['branch_name']}" + (f" ({pr['github_pr_url']})" if pr["github_pr_url"] else ""),
        f"# Approve with: hive pr approve {pr['id']}",
        f"# Reject with: hive pr reject {pr['id']} -r \"<reason>\"",
    ])


def idle_qa_sessions(conn: sqlite3.Connection, live_sessions: list[str]) -> list[str]:
    """Live QA sessions that are idle and not already reviewing a PR."""
    reviewing = {pr["reviewed_by"] for pr in pr_queries.get_pull_requests(conn, status=PRStatus.REVIEWING)}
    live = set(live_sessions)
    return [
        agent["tmux_session"]
        for agent in agent_queries.get_agents(conn, agent_type=AgentType.QA, status=AgentStatus.IDLE)
        if agent["tmux_session"] in live and agent["tmux_session"] not in reviewing
    ]


def dispatch_queued_prs(conn: sqlite3.Connection, runtime, live_sessions: list[str]) -> DispatchResult:
    """Give each idle QA session exactly one queued PR, oldest first.

    If PRs are queued but no QA was free, every live QA session gets a
    one-line reminder instead.
    """
    result = DispatchResult()
    queued = pr_queries.get_pull_requests(conn, status=PRStatus.QUEUED)
    if not queued:
        return result

    qa_by_team: dict[str | None, list[str]] = {}
    for session in idle_qa_sessions(conn, live_sessions):
        agent = agent_queries.get_agent_by_session(conn, session)
        qa_by_team.setdefault(agent["team_id"] if agent else None, []).append(session)

    for pr in queued:
        # Prefer a reviewer from the PR's team, then anyone free
        candidates = qa_by_team.get(pr["team_id"]) or next((s for s in qa_by_team.values() if s), None)
        if not candidates:
            continue
        session = candidates.pop(0)
        pr_queries.update_pr_status(conn, pr["id"], PRStatus.REVIEWING, reviewed_by=session)
        logs.create_log(conn, logs.MANAGER_ACTOR, "PR_REVIEW_STARTED", f"{pr['id']} assigned to {session}",
                        story_id=pr["story_id"], metadata={"pr_id": pr["id"], "reviewer": session})
        flush(conn)
        runtime.send_text(session, review_request_message(pr))
        result.dispatched.append((pr["id"], session))

    if not result.dispatched:
        count = len(queued)
        live = set(live_sessions)
        for agent in agent_queries.get_agents(conn, agent_type=AgentType.QA, include_terminated=False):
            if agent["tmux_session"] in live:
                runtime.send_text(
                    agent["tmux_session"],
                    f"# {count} PR(s) waiting in queue. Finish your current review, then check the queue.",
                )
                result.reminded.append(agent["tmux_session"])
    return result


def handle_rejected_prs(conn: sqlite3.Connection, runtime, live_sessions: list[str]) -> list[str]:
    """Send rejected work back to its developer and close the PR record."""
    handled = []
    live = set(live_sessions)
    for pr in pr_queries.get_pull_requests(conn, status=PRStatus.REJECTED):
        story = story_queries.get_story(conn, pr["story_id"]) if pr["story_id"] else None
        if story is not None and story["status"] in REJECTABLE_STORY_STATUSES:
            story_queries.update_story_status(conn, story["id"], StoryStatus.QA_FAILED, recovery="qa_reject")
            logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_QA_FAILED", pr["review_notes"] or "Rejected by QA",
                            story_id=story["id"], metadata={"pr_id": pr["id"]})

        pr_queries.update_pr_status(conn, pr["id"], PRStatus.CLOSED)
        flush(conn)

        submitter = pr["submitted_by"]
        if submitter and submitter in live:
            runtime.send_text(submitter, "\n".join([
                f"# PR {pr['id']} for {pr['story_id'] or 'your story'} was rejected by QA.",
                f"# Notes: {pr['review_notes'] or 'none given'}",
                f"# Fix the issues, then resubmit with: hive pr submit -b {pr['branch_name']} "
                f"-s {pr['story_id'] or '<story-id>'} --from {submitter}",
            ]))
            runtime.send_enter(submitter)
        handled.append(pr["id"])
        logger.info(f"[merge] Closed rejected {pr['id']}, notified {submitter or 'nobody'}")
    return handled


def recover_unassigned_qa_failed(conn: sqlite3.Connection) -> list[str]:
    """qa_failed stories nobody owns go back to planned for reassignment."""
    recovered = []
    for story in story_queries.get_stories(conn, status=StoryStatus.QA_FAILED):
        if story["assigned_agent_id"]:
            continue
        story_queries.update_story_status(conn, story["id"], StoryStatus.PLANNED, recovery="recover_orphan")
        logs.create_log(conn, logs.MANAGER_ACTOR, "ORPHANED_STORY_RECOVERED",
                        "Unassigned qa_failed story returned to planned", story_id=story["id"])
        recovered.append(story["id"])
    return recovered


def recover_orphaned_review_assignments(conn: sqlite3.Connection, live_sessions: list[str]) -> dict[str, list[str]]:
    """Requeue reviews whose reviewer is gone and close PRs for merged stories."""
    live = set(live_sessions)
    requeued, closed = [], []

    for pr in pr_queries.get_pull_requests(conn, status=PRStatus.REVIEWING):
        reviewer = pr["reviewed_by"]
        agent = agent_queries.get_agent_by_session(conn, reviewer) if reviewer else None
        if reviewer and reviewer in live and agent is not None:
            continue
        pr_queries.update_pr_status(conn, pr["id"], PRStatus.QUEUED, recovery="requeue_review", reviewed_by=None)
        logs.create_log(conn, logs.MANAGER_ACTOR, "PR_REQUEUED", f"Reviewer {reviewer or 'unknown'} is gone",
                        story_id=pr["story_id"], metadata={"pr_id": pr["id"]})
        requeued.append(pr["id"])

    for pr in pr_queries.get_open_pull_requests(conn):
        if not pr["story_id"]:
            continue
        story = story_queries.get_story(conn, pr["story_id"])
        if story is None or story["status"] != StoryStatus.MERGED.value:
            continue
        # A merged story's PR is either merged itself or redundant
        pr_queries.update_pr_status(conn, pr["id"], PRStatus.CLOSED, review_notes=STORY_MERGED_CLOSE_NOTE)
        logs.create_log(conn, logs.MANAGER_ACTOR, "PR_CLOSED", STORY_MERGED_CLOSE_NOTE,
                        story_id=pr["story_id"], metadata={"pr_id": pr["id"]})
        closed.append(pr["id"])

    return {"requeued": requeued, "closed": closed}
