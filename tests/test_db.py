"""Tests for hive.db client and accessor modules."""

import json
import sqlite3

import pytest

from hive.db.client import age_ms, hive_db, is_busy_error, parse_ts, ts_ago
from hive.db.queries import agents as agent_queries
from hive.db.queries import escalations as escalation_queries
from hive.db.queries import logs
from hive.db.queries import messages as message_queries
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.lib.config import HivePaths
from hive.lib.types import AgentStatus, PRStatus, StoryStatus
from hive.workflow.fsm import InvalidTransition


class TestClient:

    def test_connect_uses_wal_and_rows(self, conn):
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert isinstance(conn.execute("SELECT 1 AS one").fetchone(), sqlite3.Row)

    def test_hive_db_commits(self, root):
        db_path = HivePaths(root).db_path
        with hive_db(db_path) as conn:
            story_queries.create_story(conn, "Persisted", story_id="STORY-1")
        with hive_db(db_path) as conn:
            assert story_queries.get_story(conn, "STORY-1") is not None

    def test_hive_db_rolls_back_on_error(self, root):
        db_path = HivePaths(root).db_path
        with pytest.raises(RuntimeError):
            with hive_db(db_path) as conn:
                story_queries.create_story(conn, "Lost", story_id="STORY-2")
                raise RuntimeError("boom")
        with hive_db(db_path) as conn:
            assert story_queries.get_story(conn, "STORY-2") is None

    def test_busy_error_detection(self):
        assert is_busy_error(sqlite3.OperationalError("database is locked"))
        assert not is_busy_error(sqlite3.OperationalError("no such table: x"))
        assert not is_busy_error(ValueError("database is locked"))

    def test_timestamps(self):
        assert parse_ts(None) is None
        assert parse_ts("2024-01-02 03:04:05").tzinfo is not None
        assert parse_ts("2024-01-02T03:04:05Z").hour == 3
        assert 59_000 <= age_ms(ts_ago(60_000)) <= 62_000


class TestStories:

    def test_create_defaults_to_draft(self, conn):
        story_id = story_queries.create_story(conn, "Thing")
        story = story_queries.get_story(conn, story_id)
        assert story_id.startswith("STORY-")
        assert story["status"] == "draft"

    def test_status_update_goes_through_fsm(self, conn):
        story_id = story_queries.create_story(conn, "Thing", status=StoryStatus.PLANNED)
        assert story_queries.update_story_status(conn, story_id, StoryStatus.IN_PROGRESS) == "start"
        assert story_queries.get_story(conn, story_id)["status"] == "in_progress"

    def test_illegal_status_update_leaves_row(self, conn):
        story_id = story_queries.create_story(conn, "Thing", status=StoryStatus.PLANNED)
        with pytest.raises(InvalidTransition):
            story_queries.update_story_status(conn, story_id, StoryStatus.MERGED)
        assert story_queries.get_story(conn, story_id)["status"] == "planned"

    def test_update_rejects_unknown_fields(self, conn):
        story_id = story_queries.create_story(conn, "Thing")
        with pytest.raises(ValueError):
            story_queries.update_story(conn, story_id, status="merged")

    def test_planned_excludes_assigned(self, conn, make_agent):
        agent = make_agent()
        free = story_queries.create_story(conn, "Free", status=StoryStatus.PLANNED)
        taken = story_queries.create_story(conn, "Taken", status=StoryStatus.PLANNED)
        story_queries.update_story(conn, taken, assigned_agent_id=agent["id"])
        assert [s["id"] for s in story_queries.get_planned_stories(conn)] == [free]

    def test_dependencies(self, conn):
        a = story_queries.create_story(conn, "A", status=StoryStatus.PLANNED)
        b = story_queries.create_story(conn, "B", status=StoryStatus.PLANNED)
        story_queries.add_dependency(conn, b, a)
        story_queries.add_dependency(conn, b, a)
        assert story_queries.get_dependency_ids(conn, b) == [a]


class TestAgents:

    def test_tech_lead_has_fixed_id(self, conn):
        assert agent_queries.create_agent(conn, "tech_lead") == agent_queries.TECH_LEAD_ID

    def test_by_session_skips_terminated(self, conn, make_agent):
        old = make_agent(session="hive-junior-alpha", status="terminated")
        assert agent_queries.get_agent_by_session(conn, "hive-junior-alpha") is None
        new = make_agent(session="hive-junior-alpha")
        assert agent_queries.get_agent_by_session(conn, "hive-junior-alpha")["id"] == new["id"]
        assert old["id"] != new["id"]

    def test_release_skips_terminated(self, conn, make_agent):
        agent = make_agent(status="terminated")
        agent_queries.release_agent(conn, agent["id"])
        assert agent_queries.get_agent(conn, agent["id"])["status"] == AgentStatus.TERMINATED.value

    def test_count_active_stories(self, conn, make_agent):
        agent = make_agent()
        for status in (StoryStatus.IN_PROGRESS, StoryStatus.QA, StoryStatus.MERGED):
            story_id = story_queries.create_story(conn, "S", status=status)
            story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])
        assert agent_queries.count_active_stories(conn, agent["id"]) == 2


class TestPullRequests:

    def test_queue_order_and_membership(self, conn):
        first = pr_queries.create_pull_request(conn, "feature/a")
        second = pr_queries.create_pull_request(conn, "feature/b")
        third = pr_queries.create_pull_request(conn, "feature/c")
        pr_queries.update_pr_status(conn, second, PRStatus.REVIEWING)
        pr_queries.update_pr_status(conn, third, PRStatus.CLOSED)
        assert [p["id"] for p in pr_queries.get_merge_queue(conn)] == [first, second]

    def test_open_pr_for_story(self, conn):
        pr_id = pr_queries.create_pull_request(conn, "feature/x", story_id="STORY-X")
        assert pr_queries.get_open_pr_for_story(conn, "STORY-X")["id"] == pr_id
        pr_queries.update_pr_status(conn, pr_id, PRStatus.CLOSED)
        assert pr_queries.get_open_pr_for_story(conn, "STORY-X") is None

    def test_status_update_sets_fields(self, conn):
        pr_id = pr_queries.create_pull_request(conn, "feature/x")
        pr_queries.update_pr_status(conn, pr_id, PRStatus.REVIEWING, reviewed_by="hive-qa-alpha")
        assert pr_queries.get_pull_request(conn, pr_id)["reviewed_by"] == "hive-qa-alpha"

    def test_missing_pr(self, conn):
        with pytest.raises(KeyError):
            pr_queries.update_pr_status(conn, "PR-missing", PRStatus.CLOSED)


class TestEscalationsMessagesLogs:

    def test_escalation_lifecycle(self, conn):
        esc_id = escalation_queries.create_escalation(conn, "Need a human", from_agent_id="junior-1")
        assert [e["id"] for e in escalation_queries.get_pending_human_escalations(conn)] == [esc_id]
        escalation_queries.acknowledge_escalation(conn, esc_id)
        assert escalation_queries.get_active_escalations_from(conn, "junior-1")[0]["status"] == "acknowledged"
        escalation_queries.resolve_escalation(conn, esc_id, "done")
        assert escalation_queries.get_active_escalations(conn) == []
        assert escalation_queries.get_escalation(conn, esc_id)["resolved_at"] is not None

    def test_recent_escalations_include_resolved(self, conn):
        esc_id = escalation_queries.create_escalation(conn, "x", from_agent_id="hive-junior-alpha")
        escalation_queries.resolve_escalation(conn, esc_id, "ok")
        recent = escalation_queries.get_recent_escalations_from(conn, "hive-junior-alpha", ts_ago(60_000))
        assert [e["id"] for e in recent] == [esc_id]

    def test_mailbox(self, conn):
        msg_id = message_queries.create_message(conn, "hive-senior-alpha", "hive-junior-alpha", "hi", "greeting")
        pending = message_queries.get_pending_messages(conn, "hive-junior-alpha")
        assert [m["id"] for m in pending] == [msg_id]
        message_queries.mark_messages_read(conn, [msg_id])
        assert message_queries.get_pending_messages(conn, "hive-junior-alpha") == []
        message_queries.mark_message_replied(conn, msg_id)
        assert message_queries.get_message(conn, msg_id)["status"] == "replied"

    def test_log_metadata_is_json(self, conn):
        logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_ASSIGNED", "msg", story_id="S-1", metadata={"b": 1})
        entry = logs.get_logs(conn, event_type="STORY_ASSIGNED")[0]
        assert json.loads(entry["metadata"]) == {"b": 1}
        assert entry["agent_id"] == "manager"
