"""
hive pr - Merge queue commands used by developer and QA agents.
"""

import sqlite3
from pathlib import Path

from hive.db.client import flush, hive_db
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib import github
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.tmux import TmuxRuntime
from hive.lib.types import PRStatus, StoryStatus
from hive.merge import queue
from hive.workflow.fsm import InvalidTransition

# Steps from each story status to pr_submitted: (to_status, recovery trigger or None)
_SUBMIT_PATHS = {
    StoryStatus.IN_PROGRESS.value: [(StoryStatus.PR_SUBMITTED, "auto_submit")],
    StoryStatus.QA_FAILED.value: [(StoryStatus.IN_PROGRESS, None), (StoryStatus.PR_SUBMITTED, "auto_submit")],
    StoryStatus.REVIEW.value: [(StoryStatus.QA, None), (StoryStatus.PR_SUBMITTED, None)],
    StoryStatus.QA.value: [(StoryStatus.PR_SUBMITTED, None)],
    StoryStatus.PR_SUBMITTED.value: [],
}


def advance_to_submitted(conn: sqlite3.Connection, story, branch: str) -> None:
    """Walk a story to pr_submitted through valid transitions.

    Raises:
        InvalidTransition: The story is not in a submittable status
    """
    steps = _SUBMIT_PATHS.get(story["status"])
    if steps is None:
        raise InvalidTransition("story", story["status"], StoryStatus.PR_SUBMITTED.value, story["id"])
    for to_status, recovery in steps:
        story_queries.update_story_status(conn, story["id"], to_status, recovery=recovery)
    story_queries.update_story(conn, story["id"], branch_name=branch)


def _start_review(conn: sqlite3.Connection, pr, reviewer: str | None) -> None:
    if pr["status"] == PRStatus.QUEUED.value:
        pr_queries.update_pr_status(conn, pr["id"], PRStatus.REVIEWING, reviewed_by=reviewer)


def cmd_pr_submit(args, root: Path, config: HiveConfig) -> int:
    actor = args.from_session or logs.CLI_ACTOR
    story_id = args.story or github.extract_story_id_from_branch(args.branch)
    pr_number = args.pr_number or github.pr_number_from_url(args.pr_url)

    with hive_db(HivePaths(root).db_path) as conn:
        team_id = None
        if args.team:
            team = team_queries.get_team_by_name(conn, args.team) or team_queries.get_team(conn, args.team)
            if team is None:
                print(f"ERROR: Team '{args.team}' not found")
                return 1
            team_id = team["id"]

        story = story_queries.get_story(conn, story_id) if story_id else None
        if story_id and story is None:
            print(f"ERROR: Story not found: {story_id}")
            return 1

        if story is not None:
            team_id = story["team_id"]
            try:
                advance_to_submitted(conn, story, args.branch)
            except InvalidTransition as e:
                print(f"ERROR: {e}")
                return 1
            for existing in pr_queries.get_pull_requests(conn, story_id=story_id):
                if existing["status"] in (PRStatus.MERGED.value, PRStatus.CLOSED.value):
                    continue
                pr_queries.update_pr_status(conn, existing["id"], PRStatus.CLOSED)
                logs.create_log(conn, actor, "PR_CLOSED", f"Auto-closed duplicate PR {existing['id']}",
                                story_id=story_id, metadata={"pr_id": existing["id"], "reason": "duplicate"})

        pr_id = pr_queries.create_pull_request(
            conn, args.branch, story_id=story_id, team_id=team_id, github_pr_number=pr_number,
            github_pr_url=args.pr_url, submitted_by=args.from_session,
        )
        position = len(pr_queries.get_merge_queue(conn))
        logs.create_log(conn, actor, "PR_SUBMITTED", f"Submitted PR for branch {args.branch}",
                        story_id=story_id, metadata={"pr_id": pr_id, "queue_position": position})
        flush(conn)
        spawned = queue.check_merge_queue(conn, config, TmuxRuntime(), root)

    print("PR submitted to merge queue")
    print(f"  ID: {pr_id}")
    print(f"  Branch: {args.branch}")
    print(f"  Queue position: {position}")
    if args.pr_url:
        print(f"  GitHub: {args.pr_url}")
    if spawned:
        print(f"  Spawned QA: {', '.join(spawned)}")
    return 0


def cmd_pr_queue(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        prs = pr_queries.get_merge_queue(conn)

    if not prs:
        print("Merge queue is empty")
        return 0
    print(f"{'#':<4} {'ID':<15} {'Branch':<30} {'Status':<12} Story")
    for position, pr in enumerate(prs, 1):
        print(f"{position:<4} {pr['id']:<15} {pr['branch_name']:<30} {pr['status']:<12} {pr['story_id'] or '-'}")
    return 0


def cmd_pr_review(args, root: Path, config: HiveConfig) -> int:
    """Claim a queued PR for review and show its details."""
    with hive_db(HivePaths(root).db_path) as conn:
        pr = pr_queries.get_pull_request(conn, args.pr_id)
        if pr is None:
            print(f"ERROR: PR not found: {args.pr_id}")
            return 1
        if pr["status"] not in (PRStatus.QUEUED.value, PRStatus.REVIEWING.value):
            print(f"ERROR: PR {args.pr_id} is {pr['status']}, not reviewable")
            return 1
        _start_review(conn, pr, args.from_session)
        pr = pr_queries.get_pull_request(conn, args.pr_id)

    print(f"Reviewing {pr['id']}")
    print(f"Branch:       {pr['branch_name']}")
    print(f"Story:        {pr['story_id'] or '-'}")
    print(f"Submitted by: {pr['submitted_by'] or '-'}")
    if pr["github_pr_url"]:
        print(f"GitHub:       {pr['github_pr_url']}")
    print(f"\nApprove: hive pr approve {pr['id']} --from <session>")
    print(f'Reject:  hive pr reject {pr["id"]} -r "<reason>" --from <session>')
    return 0


def cmd_pr_approve(args, root: Path, config: HiveConfig) -> int:
    """Approve a PR. The manager merges approved PRs under full autonomy."""
    with hive_db(HivePaths(root).db_path) as conn:
        pr = pr_queries.get_pull_request(conn, args.pr_id)
        if pr is None:
            print(f"ERROR: PR not found: {args.pr_id}")
            return 1
        try:
            _start_review(conn, pr, args.from_session)
            pr_queries.update_pr_status(
                conn, pr["id"], PRStatus.APPROVED,
                reviewed_by=args.from_session or pr["reviewed_by"], review_notes=args.notes,
            )
        except InvalidTransition as e:
            print(f"ERROR: {e}")
            return 1
        logs.create_log(conn, args.from_session or logs.CLI_ACTOR, "PR_APPROVED", f"Approved PR {pr['id']}",
                        story_id=pr["story_id"], metadata={"pr_id": pr["id"], "branch": pr["branch_name"]})

    print(f"PR {args.pr_id} approved.")
    if config.merge_queue.autonomy != "full":
        print("Manual merge is needed.")
    return 0


def cmd_pr_reject(args, root: Path, config: HiveConfig) -> int:
    """Reject a PR. The manager notifies the developer and closes it."""
    with hive_db(HivePaths(root).db_path) as conn:
        pr = pr_queries.get_pull_request(conn, args.pr_id)
        if pr is None:
            print(f"ERROR: PR not found: {args.pr_id}")
            return 1
        try:
            _start_review(conn, pr, args.from_session)
            pr_queries.update_pr_status(
                conn, pr["id"], PRStatus.REJECTED,
                reviewed_by=args.from_session or pr["reviewed_by"], review_notes=args.reason,
            )
        except InvalidTransition as e:
            print(f"ERROR: {e}")
            return 1

        story_id = pr["story_id"] or github.extract_story_id_from_branch(pr["branch_name"])
        story = story_queries.get_story(conn, story_id) if story_id else None
        if story is not None and story["status"] in queue.REJECTABLE_STORY_STATUSES:
            story_queries.update_story_status(conn, story_id, StoryStatus.QA_FAILED, recovery="qa_reject")
        logs.create_log(conn, args.from_session or logs.CLI_ACTOR, "PR_REJECTED",
                        f"Rejected PR {pr['id']}: {args.reason}", story_id=story_id,
                        metadata={"pr_id": pr["id"], "branch": pr["branch_name"]})

    print(f"PR {args.pr_id} rejected.")
    print(f"Reason: {args.reason}")
    return 0
