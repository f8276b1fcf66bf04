"""Automatic merge of approved pull requests via gh."""

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
from hive.lib import github
from hive.lib.config import HiveConfig
from hive.lib.types import PRStatus, StoryStatus
from hive.workflow.fsm import InvalidTransition

logger = logging.getLogger(__name__)


@dataclass
class AutoMergeResult:
    merged: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def repo_location(conn: sqlite3.Connection, root: Path, team_id: str | None) -> tuple[Path, str | None]:
    """(working directory, owner/name slug) for a team's repository."""
    team = team_queries.get_team(conn, team_id) if team_id else None
    if team is None:
        return root, None
    return root / team["repo_path"], github.repo_slug(team["repo_url"])


def mark_story_merged(conn: sqlite3.Connection, story_id: str | None, actor: str = logs.MANAGER_ACTOR) -> bool:
    """Record a story as merged, unassign it and free its agent."""
    if not story_id:
        return False
    story = story_queries.get_story(conn, story_id)
    if story is None or story["status"] == StoryStatus.MERGED.value:
        return False
    try:
        story_queries.update_story_status(
            conn, story_id, StoryStatus.MERGED, recovery="sync_merged", assigned_agent_id=None,
        )
    except InvalidTransition as e:
        logger.warning(f"[merge] Not marking {story_id} merged: {e}")
        return False
    if story["assigned_agent_id"]:
        agent = agent_queries.get_agent(conn, story["assigned_agent_id"])
        if agent is not None and agent["current_story_id"] == story_id:
            agent_queries.release_agent(conn, agent["id"])
    logs.create_log(conn, actor, "STORY_MERGED", "Story merged", story_id=story_id)
    return True


def auto_merge_approved_prs(conn: sqlite3.Connection, config: HiveConfig, root: Path) -> AutoMergeResult:
    """Merge approved PRs on GitHub; failures stay approved and retry next tick."""
    result = AutoMergeResult()
    if config.merge_queue.autonomy == "partial":
        return result

    for pr in pr_queries.get_pull_requests(conn, status=PRStatus.APPROVED):
        number = pr["github_pr_number"]
        if not number:
            result.skipped.append(pr["id"])
            continue

        repo_dir, slug = repo_location(conn, root, pr["team_id"])
        flush(conn)
        state = github.get_pr_state(number, repo_dir, slug)
        if state.error:
            logger.warning(f"[merge] Could not read state of #{number}: {state.error}")
            result.failed.append(pr["id"])
            continue

        if state.state == github.GH_STATE_MERGED:
            pr_queries.update_pr_status(conn, pr["id"], PRStatus.MERGED)
            mark_story_merged(conn, pr["story_id"])
            result.merged.append(pr["id"])
            continue
        if state.state == github.GH_STATE_CLOSED:
            pr_queries.update_pr_status(conn, pr["id"], PRStatus.CLOSED, review_notes="Closed on GitHub")
            result.closed.append(pr["id"])
            continue
        if not state.mergeable:
            logger.info(f"[merge] #{number} ({pr['id']}) is not mergeable yet, skipping")
            result.skipped.append(pr["id"])
            continue

        ok, message = github.merge_pr(number, repo_dir, slug)
        if not ok:
            logs.create_log(conn, logs.MANAGER_ACTOR, "PR_MERGE_FAILED", message[:500],
                            story_id=pr["story_id"], metadata={"pr_id": pr["id"], "number": number})
            logger.warning(f"[merge] Merge of #{number} failed: {message}")
            result.failed.append(pr["id"])
            continue

        pr_queries.update_pr_status(conn, pr["id"], PRStatus.MERGED)
        mark_story_merged(conn, pr["story_id"])
        logs.create_log(conn, logs.MANAGER_ACTOR, "PR_MERGED", f"Auto-merged #{number}",
                        story_id=pr["story_id"], metadata={"pr_id": pr["id"], "number": number})
        result.merged.append(pr["id"])
        logger.info(f"[merge] Auto-merged #{number} ({pr['id']})")

    return result
