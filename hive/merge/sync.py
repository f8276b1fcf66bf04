"""
Reconciliation between the local merge queue and GitHub.

Handles races where a human or another tool acted directly on GitHub:
merged PRs are synced locally, open PRs missing from the queue are
imported, superseded PRs are closed, and reviews that sat too long are
resolved from GitHub's view of the PR.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from hive.db.client import age_ms, flush, parse_ts
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib import github
from hive.lib.types import PRStatus, StoryStatus
from hive.merge.automerge import mark_story_merged, repo_location
from hive.merge.queue import STORY_MERGED_CLOSE_NOTE

logger = logging.getLogger(__name__)

MERGED_SYNC_LIMIT = 20

STALE_REVIEW_REJECT_NOTE = "[auto-rejected] closed on GitHub"
STALE_REVIEW_MISSING_NOTE = "[auto-rejected] PR no longer exists on GitHub"
SUPERSEDED_NOTE = "[superseded] A newer PR exists for this story"

# Stories that can still receive an imported PR
_IMPORTABLE_STORY_STATUSES = {
    StoryStatus.IN_PROGRESS.value,
    StoryStatus.REVIEW.value,
    StoryStatus.QA.value,
    StoryStatus.QA_FAILED.value,
    StoryStatus.PR_SUBMITTED.value,
}


@dataclass
class BackfillResult:
    pr_numbers: list[str] = field(default_factory=list)
    closed_for_merged: list[str] = field(default_factory=list)
    agents_cleared: list[str] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)


def _team_repos(conn: sqlite3.Connection, root: Path) -> list[tuple[str, Path, str | None]]:
    return [
        (team["id"], root / team["repo_path"], github.repo_slug(team["repo_url"]))
        for team in team_queries.get_all_teams(conn)
    ]


def _local_pr_for(conn: sqlite3.Connection, gh_pr: github.GitHubPR):
    return pr_queries.get_pr_by_github_number(conn, gh_pr.number) or pr_queries.get_pr_by_branch(conn, gh_pr.branch)


def sync_merged_prs(conn: sqlite3.Connection, root: Path) -> list[str]:
    """Mark stories merged when GitHub shows their PR merged. Returns story ids."""
    synced = []
    for team_id, repo_dir, slug in _team_repos(conn, root):
        flush(conn)
        try:
            merged = github.list_prs(repo_dir, state="merged", slug=slug, limit=MERGED_SYNC_LIMIT)
        except github.GitHubError as e:
            logger.warning(f"[sync] Skipping merged sync for {team_id}: {e}")
            continue

        for gh_pr in merged:
            local = _local_pr_for(conn, gh_pr)
            if local is not None and local["status"] in (
                PRStatus.QUEUED.value, PRStatus.REVIEWING.value, PRStatus.APPROVED.value,
            ):
                pr_queries.update_pr_status(conn, local["id"], PRStatus.MERGED, recovery="sync_merged")

            story_id = github.extract_story_id_from_branch(gh_pr.branch)
            if story_id and mark_story_merged(conn, story_id):
                logger.info(f"[sync] {story_id} merged on GitHub (#{gh_pr.number})")
                synced.append(story_id)
    return synced


def sync_open_prs(conn: sqlite3.Connection, root: Path, max_age_hours: float | None = None) -> list[str]:
    """Import open GitHub PRs that the queue does not know about. Returns new PR ids."""
    imported = []
    now = datetime.now(timezone.utc)
    for team_id, repo_dir, slug in _team_repos(conn, root):
        flush(conn)
        try:
            open_prs = github.list_prs(repo_dir, state="open", slug=slug)
        except github.GitHubError as e:
            logger.warning(f"[sync] Skipping open PR sync for {team_id}: {e}")
            continue

        for gh_pr in open_prs:
            if _local_pr_for(conn, gh_pr) is not None:
                continue
            if max_age_hours is not None:
                created = parse_ts(gh_pr.created_at)
                if created and (now - created).total_seconds() > max_age_hours * 3600:
                    continue

            story_id = github.extract_story_id_from_branch(gh_pr.branch)
            story = story_queries.get_story(conn, story_id) if story_id else None
            if story is None or story["status"] not in _IMPORTABLE_STORY_STATUSES:
                continue

            submitter = None
            if story["assigned_agent_id"]:
                agent = agent_queries.get_agent(conn, story["assigned_agent_id"])
                submitter = agent["tmux_session"] if agent else None

            pr_id = pr_queries.create_pull_request(
                conn, gh_pr.branch, story_id=story_id, team_id=story["team_id"] or team_id,
                github_pr_number=gh_pr.number, github_pr_url=gh_pr.url, submitted_by=submitter,
            )
            logs.create_log(conn, logs.MANAGER_ACTOR, "PR_IMPORTED", f"Imported #{gh_pr.number} from GitHub",
                            story_id=story_id, metadata={"pr_id": pr_id, "number": gh_pr.number})
            imported.append(pr_id)
    return imported


def close_stale_prs(conn: sqlite3.Connection, root: Path) -> list[int]:
    """Close open GitHub PRs superseded by a different PR in the queue."""
    closed = []
    for team_id, repo_dir, slug in _team_repos(conn, root):
        flush(conn)
        try:
            open_prs = github.list_prs(repo_dir, state="open", slug=slug)
        except github.GitHubError as e:
            logger.warning(f"[sync] Skipping stale PR cleanup for {team_id}: {e}")
            continue

        for gh_pr in open_prs:
            story_id = github.extract_story_id_from_branch(gh_pr.branch)
            if not story_id:
                continue
            queue_numbers = {
                pr["github_pr_number"]
                for pr in pr_queries.get_open_pull_requests(conn)
                if pr["story_id"] == story_id and pr["github_pr_number"]
            }
            if not queue_numbers or gh_pr.number in queue_numbers:
                continue

            newest = max(queue_numbers)
            ok, message = github.close_pr(gh_pr.number, repo_dir, slug, comment=f"Superseded by #{newest}")
            if not ok:
                logger.warning(f"[sync] Could not close superseded #{gh_pr.number}: {message}")
                continue
            logs.create_log(conn, logs.MANAGER_ACTOR, "PR_CLOSED_SUPERSEDED",
                            f"Closed #{gh_pr.number}, superseded by #{newest}", story_id=story_id)
            closed.append(gh_pr.number)
    return closed


def _reject_stale_review(conn: sqlite3.Connection, pr, note: str) -> None:
    pr_queries.update_pr_status(conn, pr["id"], PRStatus.REJECTED, review_notes=note)
    logs.create_log(conn, logs.MANAGER_ACTOR, "PR_REJECTED", note,
                    story_id=pr["story_id"], metadata={"pr_id": pr["id"]})


def reconcile_stale_reviews(conn: sqlite3.Connection, root: Path, min_age_ms: int) -> dict[str, list[str]]:
    """Resolve PRs stuck in reviewing from GitHub's state.

    MERGED syncs the PR and story to merged. CLOSED and PRs GitHub no longer
    knows about are rejected with an explanatory note. Open PRs and other
    lookup failures are left alone.
    """
    merged, rejected = [], []
    for pr in pr_queries.get_pull_requests(conn, status=PRStatus.REVIEWING):
        if not pr["github_pr_number"]:
            continue
        age = age_ms(pr["updated_at"])
        if age is None or age < min_age_ms:
            continue

        repo_dir, slug = repo_location(conn, root, pr["team_id"])
        flush(conn)
        state = github.get_pr_state(pr["github_pr_number"], repo_dir, slug)
        if state.not_found:
            _reject_stale_review(conn, pr, STALE_REVIEW_MISSING_NOTE)
            rejected.append(pr["id"])
            continue
        if state.error:
            logger.warning(f"[sync] Could not check stale review {pr['id']}: {state.error}")
            continue

        if state.state == github.GH_STATE_MERGED:
            pr_queries.update_pr_status(conn, pr["id"], PRStatus.MERGED, recovery="sync_merged")
            mark_story_merged(conn, pr["story_id"])
            merged.append(pr["id"])
        elif state.state == github.GH_STATE_CLOSED:
            _reject_stale_review(conn, pr, STALE_REVIEW_REJECT_NOTE)
            rejected.append(pr["id"])
    return {"merged": merged, "rejected": rejected}


def backfill(conn: sqlite3.Connection) -> BackfillResult:
    """Repair local data drift before the rest of the tick runs."""
    result = BackfillResult()

    for pr in pr_queries.get_pull_requests(conn):
        if pr["github_pr_number"] is None and pr["github_pr_url"]:
            number = github.pr_number_from_url(pr["github_pr_url"])
            if number is not None:
                pr_queries.update_pull_request(conn, pr["id"], github_pr_number=number)
                result.pr_numbers.append(pr["id"])

    seen_story: dict[str, str] = {}
    # Newest first so the latest submission per story survives
    for pr in reversed(pr_queries.get_open_pull_requests(conn)):
        story_id = pr["story_id"]
        if not story_id:
            continue
        story = story_queries.get_story(conn, story_id)
        if story is not None and story["status"] == StoryStatus.MERGED.value:
            pr_queries.update_pr_status(conn, pr["id"], PRStatus.CLOSED,
                                        review_notes=STORY_MERGED_CLOSE_NOTE)
            result.closed_for_merged.append(pr["id"])
            continue
        if story_id in seen_story:
            pr_queries.update_pr_status(conn, pr["id"], PRStatus.CLOSED, review_notes=SUPERSEDED_NOTE)
            logs.create_log(conn, logs.MANAGER_ACTOR, "PR_CLOSED_SUPERSEDED",
                            f"{pr['id']} superseded by {seen_story[story_id]}", story_id=story_id)
            result.superseded.append(pr["id"])
            continue
        seen_story[story_id] = pr["id"]

    for agent in agent_queries.get_active_agents(conn):
        if not agent["current_story_id"]:
            continue
        story = story_queries.get_story(conn, agent["current_story_id"])
        if story is not None and story["status"] == StoryStatus.MERGED.value:
            agent_queries.release_agent(conn, agent["id"])
            result.agents_cleared.append(agent["id"])

    return result
