"""Tests for the merge queue, auto-merge and GitHub reconciliation."""

import pytest

from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.lib import github
from hive.lib.config import HiveConfig, MergeQueueConfig
from hive.lib.types import PRStatus, StoryStatus
from hive.merge import automerge, queue, sync


def story_in(conn, team, status, title="Story"):
    return story_queries.create_story(conn, title, team_id=team["id"], status=status)


def pr_in(conn, team, status=PRStatus.QUEUED, story_id=None, branch="feature/x", number=None,
          github_pr_url=None, submitted_by=None, **fields):
    pr_id = pr_queries.create_pull_request(conn, branch, story_id=story_id, team_id=team["id"],
                                           github_pr_number=number, github_pr_url=github_pr_url,
                                           submitted_by=submitted_by)
    pr_queries.update_pull_request(conn, pr_id, **fields)
    if status == PRStatus.QUEUED:
        return pr_id
    path = {
        PRStatus.REVIEWING: [PRStatus.REVIEWING],
        PRStatus.APPROVED: [PRStatus.REVIEWING, PRStatus.APPROVED],
        PRStatus.REJECTED: [PRStatus.REVIEWING, PRStatus.REJECTED],
    }[status]
    for step in path:
        pr_queries.update_pr_status(conn, pr_id, step)
    return pr_id


class TestCheckMergeQueue:

    def test_spawns_qa_for_queued_work(self, conn, team, runtime, root, config):
        pr_in(conn, team)
        spawned = queue.check_merge_queue(conn, config, runtime, root)
        assert len(spawned) == 1
        assert agent_queries.get_agent(conn, spawned[0])["type"] == "qa"
        assert runtime.spawned[0][0] == "hive-qa-alpha"

    def test_no_spawn_when_qa_exists(self, conn, team, runtime, root, config, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        pr_in(conn, team)
        assert queue.check_merge_queue(conn, config, runtime, root) == []

    def test_empty_queue(self, conn, team, runtime, root, config):
        assert queue.check_merge_queue(conn, config, runtime, root) == []
        assert runtime.spawned == []


class TestDispatch:

    def test_one_pr_per_idle_qa(self, conn, team, runtime, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        first = pr_in(conn, team, branch="feature/a")
        second = pr_in(conn, team, branch="feature/b")

        result = queue.dispatch_queued_prs(conn, runtime, ["hive-qa-alpha"])
        assert result.dispatched == [(first, "hive-qa-alpha")]
        assert pr_queries.get_pull_request(conn, first)["status"] == "reviewing"
        assert pr_queries.get_pull_request(conn, first)["reviewed_by"] == "hive-qa-alpha"
        assert pr_queries.get_pull_request(conn, second)["status"] == "queued"
        assert "PR review request" in runtime.texts_to("hive-qa-alpha")[0]

    def test_busy_reviewer_gets_reminder(self, conn, team, runtime, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        pr_in(conn, team, PRStatus.REVIEWING, branch="feature/a", reviewed_by="hive-qa-alpha")
        pr_in(conn, team, branch="feature/b")

        result = queue.dispatch_queued_prs(conn, runtime, ["hive-qa-alpha"])
        assert result.dispatched == []
        assert result.reminded == ["hive-qa-alpha"]
        assert "1 PR(s) waiting" in runtime.texts_to("hive-qa-alpha")[0]

    def test_dead_qa_session_ignored(self, conn, team, runtime, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        pr_in(conn, team)
        result = queue.dispatch_queued_prs(conn, runtime, [])
        assert result.dispatched == []
        assert runtime.sent == []


class TestRejections:

    def test_rejected_pr_returns_story_and_notifies(self, conn, team, runtime):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_id = pr_in(conn, team, PRStatus.REJECTED, story_id=story_id, submitted_by="hive-junior-alpha",
                      review_notes="tests fail")

        handled = queue.handle_rejected_prs(conn, runtime, ["hive-junior-alpha"])
        assert handled == [pr_id]
        assert story_queries.get_story(conn, story_id)["status"] == "qa_failed"
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "closed"
        message = runtime.texts_to("hive-junior-alpha")[0]
        assert "was rejected by QA" in message
        assert "tests fail" in message
        assert runtime.enters == ["hive-junior-alpha"]

    def test_rejected_pr_for_merged_story_only_closes(self, conn, team, runtime):
        story_id = story_in(conn, team, StoryStatus.MERGED)
        pr_id = pr_in(conn, team, PRStatus.REJECTED, story_id=story_id)
        queue.handle_rejected_prs(conn, runtime, [])
        assert story_queries.get_story(conn, story_id)["status"] == "merged"
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "closed"

    def test_unassigned_qa_failed_recovered(self, conn, team, make_agent):
        loose = story_in(conn, team, StoryStatus.QA_FAILED)
        owned = story_in(conn, team, StoryStatus.QA_FAILED)
        agent = make_agent("junior")
        story_queries.update_story(conn, owned, assigned_agent_id=agent["id"])

        assert queue.recover_unassigned_qa_failed(conn) == [loose]
        assert story_queries.get_story(conn, loose)["status"] == "planned"
        assert story_queries.get_story(conn, owned)["status"] == "qa_failed"


class TestOrphanedReviews:

    def test_requeue_when_reviewer_gone(self, conn, team, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        pr_id = pr_in(conn, team, PRStatus.REVIEWING)
        pr_queries.update_pull_request(conn, pr_id, reviewed_by="hive-qa-alpha")

        result = queue.recover_orphaned_review_assignments(conn, [])
        assert result["requeued"] == [pr_id]
        pr = pr_queries.get_pull_request(conn, pr_id)
        assert pr["status"] == "queued"
        assert pr["reviewed_by"] is None

    def test_live_reviewer_kept(self, conn, team, make_agent):
        make_agent("qa", session="hive-qa-alpha")
        pr_id = pr_in(conn, team, PRStatus.REVIEWING)
        pr_queries.update_pull_request(conn, pr_id, reviewed_by="hive-qa-alpha")
        assert queue.recover_orphaned_review_assignments(conn, ["hive-qa-alpha"])["requeued"] == []

    def test_close_pr_of_merged_story(self, conn, team):
        story_id = story_in(conn, team, StoryStatus.MERGED)
        pr_id = pr_in(conn, team, story_id=story_id)
        assert queue.recover_orphaned_review_assignments(conn, [])["closed"] == [pr_id]
        pr = pr_queries.get_pull_request(conn, pr_id)
        assert pr["status"] == "closed"
        assert pr["review_notes"] == queue.STORY_MERGED_CLOSE_NOTE


class TestAutoMerge:

    @pytest.fixture
    def gh(self, monkeypatch):
        calls = {"merged": [], "state": github.PRState(github.GH_STATE_OPEN, True), "merge_ok": (True, "")}
        monkeypatch.setattr(github, "get_pr_state", lambda number, repo_dir, slug=None: calls["state"])

        def merge(number, repo_dir, slug=None):
            calls["merged"].append((number, slug))
            return calls["merge_ok"]
        monkeypatch.setattr(github, "merge_pr", merge)
        return calls

    def test_merges_approved(self, conn, team, root, config, gh, make_agent):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        agent = make_agent("junior", status="working", story_id=story_id)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])
        pr_id = pr_in(conn, team, PRStatus.APPROVED, story_id=story_id, number=12)

        result = automerge.auto_merge_approved_prs(conn, config, root)
        assert result.merged == [pr_id]
        assert gh["merged"] == [(12, "acme/alpha")]
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "merged"
        story = story_queries.get_story(conn, story_id)
        assert story["status"] == "merged"
        assert story["assigned_agent_id"] is None
        assert agent_queries.get_agent(conn, agent["id"])["status"] == "idle"
        assert logs.get_logs(conn, event_type="PR_MERGED")

    def test_partial_autonomy_leaves_approved(self, conn, team, root, gh):
        pr_id = pr_in(conn, team, PRStatus.APPROVED, number=12)
        config = HiveConfig(merge_queue=MergeQueueConfig(autonomy="partial"))
        assert automerge.auto_merge_approved_prs(conn, config, root).merged == []
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "approved"
        assert gh["merged"] == []

    def test_missing_number_skipped(self, conn, team, root, config, gh):
        pr_id = pr_in(conn, team, PRStatus.APPROVED)
        assert automerge.auto_merge_approved_prs(conn, config, root).skipped == [pr_id]

    def test_not_mergeable_skipped(self, conn, team, root, config, gh):
        gh["state"] = github.PRState(github.GH_STATE_OPEN, False)
        pr_id = pr_in(conn, team, PRStatus.APPROVED, number=3)
        assert automerge.auto_merge_approved_prs(conn, config, root).skipped == [pr_id]
        assert gh["merged"] == []

    def test_already_merged_on_github(self, conn, team, root, config, gh):
        gh["state"] = github.PRState(github.GH_STATE_MERGED, False)
        pr_id = pr_in(conn, team, PRStatus.APPROVED, number=3)
        assert automerge.auto_merge_approved_prs(conn, config, root).merged == [pr_id]
        assert gh["merged"] == []

    def test_failed_merge_stays_approved(self, conn, team, root, config, gh):
        gh["merge_ok"] = (False, "conflict")
        pr_id = pr_in(conn, team, PRStatus.APPROVED, number=3)
        assert automerge.auto_merge_approved_prs(conn, config, root).failed == [pr_id]
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "approved"
        assert logs.get_logs(conn, event_type="PR_MERGE_FAILED")[0]["message"] == "conflict"


def gh_pr(number, branch, created_at="2026-01-01T00:00:00Z"):
    return github.GitHubPR(number=number, branch=branch, url=f"https://github.com/acme/alpha/pull/{number}",
                           title=branch, created_at=created_at)


class TestSync:

    def test_sync_merged(self, conn, team, root, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_id = pr_in(conn, team, PRStatus.REVIEWING, story_id=story_id, number=7,
                      branch=f"feature/{story_id.lower()}")
        monkeypatch.setattr(github, "list_prs", lambda repo_dir, state="open", slug=None, limit=None:
                            [gh_pr(7, f"feature/{story_id.lower()}")])

        assert sync.sync_merged_prs(conn, root) == [story_id]
        assert story_queries.get_story(conn, story_id)["status"] == "merged"
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "merged"
        # Already merged locally, nothing left to do
        assert sync.sync_merged_prs(conn, root) == []

    def test_sync_merged_skips_on_gh_error(self, conn, team, root, monkeypatch):
        def fail(*args, **kwargs):
            raise github.GitHubError("gh missing")
        monkeypatch.setattr(github, "list_prs", fail)
        assert sync.sync_merged_prs(conn, root) == []

    def test_import_open_pr(self, conn, team, root, make_agent, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.IN_PROGRESS)
        agent = make_agent("junior", session="hive-junior-alpha", story_id=story_id)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])
        monkeypatch.setattr(github, "list_prs", lambda repo_dir, state="open", slug=None, limit=None: [
            gh_pr(9, f"feature/{story_id}"), gh_pr(10, "feature/no-story"),
        ])

        imported = sync.sync_open_prs(conn, root)
        assert len(imported) == 1
        pr = pr_queries.get_pull_request(conn, imported[0])
        assert pr["github_pr_number"] == 9
        assert pr["submitted_by"] == "hive-junior-alpha"
        assert pr["status"] == "queued"
        assert sync.sync_open_prs(conn, root) == []

    def test_import_respects_age(self, conn, team, root, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.IN_PROGRESS)
        monkeypatch.setattr(github, "list_prs", lambda repo_dir, state="open", slug=None, limit=None:
                            [gh_pr(9, f"feature/{story_id}", created_at="2020-01-01T00:00:00Z")])
        assert sync.sync_open_prs(conn, root, max_age_hours=24) == []

    def test_close_superseded(self, conn, team, root, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_in(conn, team, story_id=story_id, number=5)
        closed_calls = []
        monkeypatch.setattr(github, "list_prs", lambda repo_dir, state="open", slug=None, limit=None: [
            gh_pr(4, f"old/{story_id}"), gh_pr(5, f"feature/{story_id}"),
        ])
        monkeypatch.setattr(github, "close_pr", lambda number, repo_dir, slug=None, comment=None:
                            closed_calls.append((number, comment)) or (True, ""))

        assert sync.close_stale_prs(conn, root) == [4]
        assert closed_calls == [(4, "Superseded by #5")]

    @pytest.mark.parametrize("gh_state,pr_status,story_status", [
        (github.GH_STATE_MERGED, "merged", "merged"),
        (github.GH_STATE_CLOSED, "rejected", "pr_submitted"),
        (github.GH_STATE_OPEN, "reviewing", "pr_submitted"),
    ])
    def test_stale_reviews(self, conn, team, root, monkeypatch, gh_state, pr_status, story_status):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_id = pr_in(conn, team, PRStatus.REVIEWING, story_id=story_id, number=8)
        monkeypatch.setattr(github, "get_pr_state", lambda number, repo_dir, slug=None:
                            github.PRState(gh_state, False))

        sync.reconcile_stale_reviews(conn, root, min_age_ms=0)
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == pr_status
        assert story_queries.get_story(conn, story_id)["status"] == story_status

    def test_stale_review_for_missing_pr_rejected(self, conn, team, root, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_id = pr_in(conn, team, PRStatus.REVIEWING, story_id=story_id, number=8)
        monkeypatch.setattr(github, "get_pr_state", lambda number, repo_dir, slug=None: github.PRState(
            "", False, error="GraphQL: Could not resolve to a PullRequest with the number of 8.", not_found=True,
        ))

        assert sync.reconcile_stale_reviews(conn, root, min_age_ms=0)["rejected"] == [pr_id]
        pr = pr_queries.get_pull_request(conn, pr_id)
        assert pr["status"] == "rejected"
        assert pr["review_notes"] == sync.STALE_REVIEW_MISSING_NOTE

    def test_stale_review_lookup_failure_left_alone(self, conn, team, root, monkeypatch):
        story_id = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        pr_id = pr_in(conn, team, PRStatus.REVIEWING, story_id=story_id, number=8)
        monkeypatch.setattr(github, "get_pr_state", lambda number, repo_dir, slug=None:
                            github.PRState("", False, error="Timed out after 30s"))

        assert sync.reconcile_stale_reviews(conn, root, min_age_ms=0) == {"merged": [], "rejected": []}
        assert pr_queries.get_pull_request(conn, pr_id)["status"] == "reviewing"

    def test_backfill(self, conn, team, make_agent):
        merged = story_in(conn, team, StoryStatus.MERGED)
        live = story_in(conn, team, StoryStatus.PR_SUBMITTED)
        stale_merged = pr_in(conn, team, story_id=merged)
        older = pr_in(conn, team, story_id=live, branch="feature/old",
                      github_pr_url="https://github.com/acme/alpha/pull/31")
        newer = pr_in(conn, team, story_id=live, branch="feature/new")
        agent = make_agent("junior", status="working", story_id=merged)

        result = sync.backfill(conn)
        assert result.pr_numbers == [older]
        assert pr_queries.get_pull_request(conn, older)["github_pr_number"] == 31
        assert result.closed_for_merged == [stale_merged]
        assert result.superseded == [older]
        assert pr_queries.get_pull_request(conn, newer)["status"] == "queued"
        assert result.agents_cleared == [agent["id"]]
